"""Explicit workflow domain concepts.

This package holds first-class types for:
- The workflow graph (states and their reachable next states)
- The persisted ledger of one run
- Verdict heuristics applied to reviewer output
- The transition engine that drives a ledger through the graph

The intent is to make long-horizon execution restartable, inspectable, and
deterministic in its control flow.
"""

__all__: list[str] = []
