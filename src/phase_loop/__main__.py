"""Entry point for `python -m phase_loop` and the `phase-loop` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from phase_loop import DriverLoop, GitContext, SnapshotStore, build_runner
from phase_loop.errors import InvalidTransitionError, PersistenceError
from phase_loop.loops import LoopStatus
from phase_loop.settings import RuntimeSettings

PHASE_CHOICES = ["PLAN", "BUILD", "REVIEW", "END"]

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_BUDGET_EXHAUSTED = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a coding agent through PLAN -> BUILD -> REVIEW cycles")
    parser.add_argument("--repo", type=Path, default=None, help="Path inside the target git repository (default: cwd)")
    parser.add_argument("--target-doc", default=None, help="Planning document the agent consults every phase")
    parser.add_argument("--max-retries", type=int, default=None, help="Maximum phase attempts before aborting")
    parser.add_argument("--max-turns", type=int, default=None, help="Turn budget forwarded to each agent session")
    parser.add_argument("--dry-run", action="store_true", default=None, help="Instruct the agent not to apply edits")
    parser.add_argument(
        "--start-phase",
        type=lambda value: value.upper(),
        default=None,
        choices=PHASE_CHOICES,
        help="Resume from this phase instead of the persisted one",
    )
    parser.add_argument("--agent", default=None, choices=["claude", "deepagent"], help="Agent backend")
    parser.add_argument("--model", default=None, help="Model passed to the agent backend")
    parser.add_argument("--state-path", default=None, help="Snapshot path, relative to the repository root")
    parser.add_argument("--no-commit", dest="auto_commit", action="store_false", default=None, help="Never commit")
    parser.add_argument("--commit", dest="auto_commit", action="store_true", default=None, help="Commit after every transition")
    parser.add_argument("--quiet", action="store_true", help="Do not echo agent output while it streams")
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--status", action="store_true", help="Print the persisted snapshot and exit")
    actions.add_argument("--reset", action="store_true", help="Reset the snapshot to defaults and exit")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> RuntimeSettings:
    return RuntimeSettings.from_env().with_overrides(
        target_doc=args.target_doc,
        max_retries=args.max_retries,
        max_turns=args.max_turns,
        dry_run=args.dry_run,
        start_phase=args.start_phase,
        agent_backend=args.agent,
        model=args.model,
        state_path=args.state_path,
        auto_commit=args.auto_commit,
        echo_agent_output=False if args.quiet else None,
    )


def _echo(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args)
        vcs = GitContext(
            args.repo.resolve() if args.repo is not None else None,
            exclude_paths=(settings.state_path,),
        )
        repo_root = vcs.root()
        store = SnapshotStore.for_repo(repo_root, settings)
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to initialise the loop: %s", exc)
        return EXIT_FAILED

    try:
        if args.status:
            print(store.read().to_json())
            return EXIT_COMPLETED
        if args.reset:
            snapshot = store.reset()
            print(f"reset snapshot at {store.path} (phase={snapshot.phase.value})")
            return EXIT_COMPLETED
    except PersistenceError as exc:
        logging.error("%s", exc)
        return EXIT_FAILED

    logging.info(
        "Phase loop starting: repo=%s target_doc=%s max_retries=%d max_turns=%d dry_run=%s agent=%s",
        repo_root,
        settings.target_doc,
        settings.max_retries,
        settings.max_turns,
        settings.dry_run,
        settings.agent_backend,
    )
    loop = DriverLoop(
        store=store,
        runner=build_runner(settings),
        vcs=vcs,
        settings=settings,
        on_text=_echo if settings.echo_agent_output else None,
    )
    try:
        result = loop.run()
    except (InvalidTransitionError, PersistenceError) as exc:
        logging.error("Loop halted: %s", exc)
        return EXIT_FAILED
    except Exception as exc:  # noqa: BLE001
        logging.exception("Loop execution failed: %s", exc)
        return EXIT_FAILED

    print()
    print(f"status={result.status.value}")
    print(f"phase={result.snapshot.phase.value} iteration={result.snapshot.iteration}")
    print(f"attempts={result.attempts} failures={result.failures}")
    if result.last_error:
        print(f"last_error={result.last_error}")
    print("history:")
    print(json.dumps([entry.model_dump(mode="json", by_alias=True) for entry in result.snapshot.history[-5:]], indent=2))

    if result.status == LoopStatus.COMPLETED:
        return EXIT_COMPLETED
    return EXIT_BUDGET_EXHAUSTED


if __name__ == "__main__":
    raise SystemExit(main())
