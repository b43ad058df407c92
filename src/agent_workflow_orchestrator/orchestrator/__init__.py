"""Local-first workflow orchestration components.

- Settings loaded from .env
- Structured logging
- Ledger persistence and the transition engine
- Agent subprocess supervision and IPC
- A small CLI surface
"""
