"""CLI entrypoint for the workflow orchestrator.

Workflow and agent definitions are read as already-parsed JSON documents;
authoring formats are handled upstream.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from agent_workflow_orchestrator import __version__
from agent_workflow_orchestrator.orchestrator.agents.ipc import (
    ENV_IPC_DIR,
    ENV_QUESTIONS_FILE,
    ENV_SESSION_ID,
    ENV_STATE,
    AgentQuestion,
    ask_operator,
)
from agent_workflow_orchestrator.orchestrator.agents.resolver import AgentProfile
from agent_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from agent_workflow_orchestrator.orchestrator.interaction import ConsoleInteraction, HeadlessInteraction, Interaction
from agent_workflow_orchestrator.orchestrator.logging import configure_logging
from agent_workflow_orchestrator.orchestrator.session import OrchestratorContext, resume_session, start_session
from agent_workflow_orchestrator.orchestrator.workflow import engine, events
from agent_workflow_orchestrator.orchestrator.workflow.definition import WorkflowDefinition
from agent_workflow_orchestrator.orchestrator.workflow.events import WorkflowEvent
from agent_workflow_orchestrator.orchestrator.workflow.ledger import (
    CorruptLedgerError,
    LedgerNotFoundError,
    LedgerStore,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_UNKNOWN_SESSION = 3
EXIT_NOT_COMPLETED = 4


def _load_profiles(path: Path | None) -> dict[str, AgentProfile]:
    """Read agent profiles from a JSON list or a `{name: profile}` mapping."""

    if path is None:
        return {}
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        entries = [{"name": name, **body} for name, body in raw.items()]
    else:
        entries = raw
    profiles = [AgentProfile.model_validate(entry) for entry in entries]
    return {p.name: p for p in profiles}


def _print_event(event: WorkflowEvent) -> None:
    if event.type == events.STATE_STARTED:
        print(f"-> {event.state} [{event.payload.get('agent')}]", file=sys.stderr)
    elif event.type == events.AGENT_PROGRESS:
        print(f"   {event.payload.get('last_line', '')}", file=sys.stderr)
    elif event.type == events.LOOP_BREAKER_RETRY:
        print("   execution-approval loop detected, retrying with override", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-orchestrator",
        description="Drive agent workflows through a persisted state machine",
    )
    parser.add_argument(
        "--version", action="version", version=f"agent-workflow-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a new workflow session")
    start.add_argument("--workflow", type=Path, required=True, help="Workflow definition (JSON)")
    start.add_argument("--task", default="", help="Initial task for the whole workflow")
    start.add_argument("--session-id", default=None, help="Explicit session id (default: random)")

    subparsers.add_parser("list", help="List sessions, most recently updated first")

    status = subparsers.add_parser("status", help="Show a session's ledger")
    status.add_argument("session_id")
    status.add_argument("--json", action="store_true", help="Print the status as JSON")

    transition = subparsers.add_parser(
        "transition",
        help="Move a session to a state and run its agent (Ctrl-C kills the running agent)",
    )
    transition.add_argument("session_id")
    transition.add_argument("to_state")
    transition.add_argument("--task", required=True, help="Task for the target state's agent")
    transition.add_argument(
        "--summary", default="", help="What the current state accomplished (stored in history)"
    )
    transition.add_argument("--agents", type=Path, default=None, help="Agent profiles (JSON)")
    transition.add_argument(
        "--headless",
        action="store_true",
        help="Auto-approve gates and answer agent questions with a no-operator notice",
    )

    snapshot = subparsers.add_parser("snapshot", help="Add to a session's snapshot")
    snapshot.add_argument("session_id")
    snapshot.add_argument("--finding", action="append", default=[], help="Key finding (repeatable)")
    snapshot.add_argument("--file", action="append", default=[], help="Modified file (repeatable)")
    snapshot.add_argument("--pending", action="append", default=[], help="Pending task (repeatable)")
    snapshot.add_argument("--custom", default=None, help="JSON object merged into custom data")

    ask = subparsers.add_parser(
        "ask",
        help="Agent side: ask the operator a question and print the answer",
    )
    ask.add_argument("question")
    ask.add_argument("--option", action="append", default=[], help="Answer option (repeatable)")
    ask.add_argument(
        "--no-free-text", action="store_true", help="Only the listed options are valid answers"
    )

    return parser


async def _run_transition(ctx: OrchestratorContext, args: argparse.Namespace) -> engine.TransitionResult:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.kill_running_agent, ctx)
    except NotImplementedError:
        logger.debug("Signal handlers unavailable; Ctrl-C will abort the orchestrator")
    try:
        return await engine.transition(ctx, args.to_state, args.task, args.summary)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


def _ask(args: argparse.Namespace) -> int:
    missing = [name for name in (ENV_IPC_DIR, ENV_SESSION_ID, ENV_STATE) if not os.environ.get(name)]
    if missing:
        print(f"Not running under the orchestrator (missing {', '.join(missing)})", file=sys.stderr)
        return EXIT_CONFIG

    question = AgentQuestion(
        question=args.question,
        options=tuple(args.option),
        allow_free_text=not args.no_free_text,
    )
    # With a questions file, stdout carries only the answer.
    questions_file = os.environ.get(ENV_QUESTIONS_FILE)
    answer = ask_operator(
        question,
        ipc_dir=Path(os.environ[ENV_IPC_DIR]),
        session_id=os.environ[ENV_SESSION_ID],
        state=os.environ[ENV_STATE],
        questions_file=Path(questions_file) if questions_file else None,
    )
    print(answer)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "ask":
        # Runs inside an agent: no settings needed.
        return _ask(args)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level)

    try:
        if args.command == "start":
            try:
                workflow = WorkflowDefinition.model_validate_json(args.workflow.read_text(encoding="utf-8"))
            except ValidationError as e:
                print(f"Invalid workflow definition {args.workflow}:", file=sys.stderr)
                print(e, file=sys.stderr)
                return EXIT_CONFIG
            ctx = start_session(settings, workflow, initial_task=args.task, session_id=args.session_id)
            print(f"Started session {ctx.session_id} ({workflow.name}) at {ctx.ledger.current_state}")
            return EXIT_OK

        if args.command == "list":
            ledgers = LedgerStore(settings.ledger_dir).list()
            if not ledgers:
                print("No sessions.")
            for ledger in ledgers:
                print(
                    f"{ledger.id}  {ledger.workflow_name}  {ledger.current_state}  "
                    f"{ledger.status.value}  {ledger.last_updated.isoformat()}"
                )
            return EXIT_OK

        if args.command == "status":
            ctx = resume_session(settings, args.session_id)
            projection = engine.status(ctx)
            print(projection.model_dump_json(indent=2) if args.json else projection.render())
            return EXIT_OK

        if args.command == "snapshot":
            custom = json.loads(args.custom) if args.custom else None
            if custom is not None and not isinstance(custom, dict):
                print("--custom must be a JSON object", file=sys.stderr)
                return EXIT_CONFIG
            ctx = resume_session(settings, args.session_id)
            print(
                engine.update_snapshot(
                    ctx,
                    findings=args.finding,
                    modified_files=args.file,
                    pending_tasks=args.pending,
                    custom=custom,
                )
            )
            return EXIT_OK

        if args.command == "transition":
            interaction: Interaction
            if args.headless or not sys.stdin.isatty():
                interaction = HeadlessInteraction()
            else:
                interaction = ConsoleInteraction()
            ctx = resume_session(
                settings,
                args.session_id,
                interaction=interaction,
                profiles=_load_profiles(args.agents),
                events=_print_event,
            )
            result = asyncio.run(_run_transition(ctx, args))
            print(result.render())
            if result.options:
                print(f"\nOptions: {', '.join(result.options)}")
            return EXIT_OK if result.completed else EXIT_NOT_COMPLETED

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_CONFIG

    except LedgerNotFoundError as e:
        print(str(e), file=sys.stderr)
        return EXIT_UNKNOWN_SESSION

    except CorruptLedgerError as e:
        logger.error("Corrupt ledger", extra={"path": str(e.path)})
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG

    except (json.JSONDecodeError, ValidationError) as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return EXIT_CONFIG

    except Exception:
        logger.exception("Command failed")
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
