"""Command-line entry point.

    hostupgrade preflight
    hostupgrade start [--source-dir DIR] [-- INSTALL_ARGS...]
    hostupgrade resume            # run by hostupgrade-resume.service at boot
    hostupgrade status
    hostupgrade needs-upgrade     # exit 0 when an upgrade is needed
    hostupgrade serve [--host H] [--port P]
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from hostupgrade.models.config import UpgradeConfig
from hostupgrade.models.errors import (
    HopFailure,
    InfrastructureFailure,
    LockContention,
    NoPathError,
    UpgradeError,
    ValidationFailure,
)
from hostupgrade.models.status import SequenceOutcome
from hostupgrade.services.orchestrator import Orchestrator
from hostupgrade.utils.logging import setup_logger

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_LOCKED = 3
EXIT_HOP_FAILED = 4
EXIT_INFRASTRUCTURE = 5
EXIT_NO_PATH = 6

_OUTCOME_MESSAGES = {
    SequenceOutcome.UP_TO_DATE: "Ubuntu is already at or above the target version.",
    SequenceOutcome.SKIPPED: "Ubuntu upgrade skipped.",
    SequenceOutcome.REBOOT_SCHEDULED: "Upgrade step complete. The system reboots shortly and continues automatically.",
    SequenceOutcome.COMPLETED: "Ubuntu release upgrade complete.",
    SequenceOutcome.HANDED_OFF: "Pre-upgrade reboot complete; installation continues.",
    SequenceOutcome.NOTHING_TO_RESUME: "No upgrade in progress.",
}


def _print_failures(error: ValidationFailure) -> None:
    print("Preflight checks failed:", file=sys.stderr)
    for failure in error.failures:
        print(f"  ✗ {failure.name}: {failure.detail}", file=sys.stderr)


def _report_outcome(outcome: SequenceOutcome, orchestrator: Orchestrator) -> None:
    if outcome == SequenceOutcome.DEGRADED:
        state = orchestrator.state_store.state or orchestrator.state_store.peek_state()
        version = state.original_version if state else "the current release"
        print(
            f"WARNING: Ubuntu upgrade failed. Continuing on Ubuntu {version}; "
            "some features may not work optimally.",
            file=sys.stderr,
        )
        print(f"See {orchestrator.config.log_dir} for the diagnostic dump.", file=sys.stderr)
        return
    print(_OUTCOME_MESSAGES[outcome])


async def _run_sequence(orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    try:
        if args.command == "resume":
            outcome = await orchestrator.resume()
        else:
            outcome = await orchestrator.start_sequence(args.source_dir, args.install_args)
    except ValidationFailure as e:
        _print_failures(e)
        return EXIT_VALIDATION
    except LockContention as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_LOCKED
    except HopFailure as e:
        print(f"ERROR: {e}", file=sys.stderr)
        if e.dump_path:
            print(f"Diagnostic dump: {e.dump_path}", file=sys.stderr)
        return EXIT_HOP_FAILED
    except InfrastructureFailure as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INFRASTRUCTURE
    except NoPathError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_NO_PATH
    except UpgradeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILURE

    _report_outcome(outcome, orchestrator)
    return EXIT_OK


async def _run_preflight(orchestrator: Orchestrator) -> int:
    results = await orchestrator.preflight()
    for result in results:
        mark = "✓" if result.passed else "✗"
        print(f"  {mark} {result.name}: {result.detail}")
    failed = [r for r in results if not r.passed]
    if failed:
        print(f"{len(failed)} check(s) failed", file=sys.stderr)
        return EXIT_VALIDATION
    print("All preflight checks passed")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hostupgrade", description="Ubuntu release upgrade orchestrator")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("preflight", help="Run go/no-go checks and list every result")

    start = sub.add_parser("start", help="Start a new upgrade sequence")
    start.add_argument("--source-dir", default=os.getcwd(), help="Installer directory for the continuation")
    start.add_argument("install_args", nargs=argparse.REMAINDER, help="Installer arguments (after --)")

    sub.add_parser("resume", help="Continue after reboot (boot-time entry point)")
    sub.add_parser("status", help="Show upgrade status (read-only)")
    sub.add_parser("needs-upgrade", help="Exit 0 if the running release is below target")

    serve = sub.add_parser("serve", help="Run the read-only status HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if getattr(args, "install_args", None) and args.install_args[0] == "--":
        args.install_args = args.install_args[1:]

    config = UpgradeConfig.from_env()
    level = logging.DEBUG if args.verbose else logging.INFO

    if args.command in ("status", "needs-upgrade"):
        # Observers must work without write access to the log directory
        logging.basicConfig(level=logging.WARNING)
        orchestrator = Orchestrator(config)
        if args.command == "status":
            print(asyncio.run(orchestrator.status()))
            return EXIT_OK
        needed = orchestrator.needs_upgrade()
        print("yes" if needed else "no")
        return EXIT_OK if needed else EXIT_FAILURE

    setup_logger("hostupgrade", config.log_file, level=level)

    if args.command == "serve":
        from hostupgrade.main import DEFAULT_HOST, DEFAULT_PORT, main as serve_main

        serve_main(host=args.host or DEFAULT_HOST, port=args.port or DEFAULT_PORT)
        return EXIT_OK

    orchestrator = Orchestrator(config)
    if args.command == "preflight":
        return asyncio.run(_run_preflight(orchestrator))
    return asyncio.run(_run_sequence(orchestrator, args))


if __name__ == "__main__":
    sys.exit(main())
