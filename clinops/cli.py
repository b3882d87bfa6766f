"""Command line entry point for the clinops worker and one-off operations."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, List, Optional

from clinops.observability import configure_logging, start_metrics_server
from clinops.worker import Runtime, Worker, build_runtime


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run_worker(runtime: Runtime) -> None:
    worker = Worker(runtime)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass
    await worker.run_forever()


def cmd_worker(runtime: Runtime, args: argparse.Namespace) -> int:
    start_metrics_server(args.metrics_port or runtime.settings.metrics_port)
    asyncio.run(_run_worker(runtime))
    return 0


def cmd_discover(runtime: Runtime, args: argparse.Namespace) -> int:
    if args.workflow == "eligibility":
        report = asyncio.run(runtime.discovery.run_eligibility_discovery_cycle())
    elif args.workflow == "vitals":
        report = asyncio.run(runtime.vitals.run_cycle())
    else:
        report = asyncio.run(runtime.discovery.run_note_discovery_cycle())
    _print(report.as_dict())
    return 0


def cmd_check(runtime: Runtime, args: argparse.Namespace) -> int:
    stored = asyncio.run(
        runtime.orchestrator.analyze_encounter(args.encounter_id, force=args.force, checked_by="cli")
    )
    _print(
        {
            "encounterId": stored.encounter_id,
            "status": stored.result_status,
            "summary": stored.summary,
            "issues": stored.issues,
            "fingerprint": stored.fingerprint,
        }
    )
    return 0


def cmd_poll_tasks(runtime: Runtime, args: argparse.Namespace) -> int:
    report = asyncio.run(runtime.tracker.poll_completions())
    _print(report.as_dict())
    return 0


def cmd_set_credentials(runtime: Runtime, args: argparse.Namespace) -> int:
    runtime.repository.store_credentials(args.identity, args.password)
    print(f"Stored credentials for {args.identity}")
    return 0


def cmd_stats(runtime: Runtime, args: argparse.Namespace) -> int:
    _print(
        {
            "noteChecks": runtime.repository.check_stats(),
            "eligibility": runtime.eligibility.stats(),
            "vitalSigns": runtime.vitals.stats(),
            "pendingJobs": runtime.queue.pending_count(),
        }
    )
    return 0


def cmd_issues(runtime: Runtime, args: argparse.Namespace) -> int:
    repository = runtime.repository
    check = repository.get_check_result(args.encounter_id)
    if check is None:
        print(f"No check result stored for encounter {args.encounter_id}", file=sys.stderr)
        return 1
    invalid = repository.invalid_issue_indexes(check.encounter_id, check.id)
    resolved = {override.issue_index for override in repository.resolved_issues(check.encounter_id)}
    _print(
        [
            {
                "index": index,
                "assessment": issue.get("assessment"),
                "issue": issue.get("issue"),
                "invalid": index in invalid,
                "resolved": index in resolved,
            }
            for index, issue in enumerate(check.issues)
        ]
    )
    return 0


def cmd_mark_issue(runtime: Runtime, args: argparse.Namespace) -> int:
    repository = runtime.repository
    check = repository.get_check_result(args.encounter_id)
    if check is None:
        print(f"No check result stored for encounter {args.encounter_id}", file=sys.stderr)
        return 1
    if args.undo:
        unmark = repository.unmark_issue_invalid if args.mark == "invalid" else repository.unmark_issue_resolved
        removed = unmark(check.encounter_id, check.id, args.index)
        print(f"{'Removed' if removed else 'No'} {args.mark} mark on issue {args.index}")
        return 0
    mark = repository.mark_issue_invalid if args.mark == "invalid" else repository.mark_issue_resolved
    try:
        mark(check.encounter_id, check.id, args.index, marked_by=args.marked_by, reason=args.reason)
    except LookupError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"Marked issue {args.index} of {check.encounter_id} as {args.mark}")
    return 0


def cmd_init_db(runtime: Runtime, args: argparse.Namespace) -> int:
    print(f"Database initialised ({runtime.database.dialect})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clinops",
        description="Clinical documentation review and insurance eligibility job runner.",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run recurring discovery and the job consumers")
    worker.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
    worker.set_defaults(func=cmd_worker)

    discover = sub.add_parser("discover", help="Run one discovery cycle and enqueue jobs")
    discover.add_argument("workflow", choices=("notes", "eligibility", "vitals"), nargs="?", default="notes")
    discover.set_defaults(func=cmd_discover)

    check = sub.add_parser("check", help="Analyse a single encounter immediately")
    check.add_argument("encounter_id")
    check.add_argument("--force", action="store_true", help="Ignore fingerprint reuse")
    check.set_defaults(func=cmd_check)

    poll = sub.add_parser("poll-tasks", help="Poll remediation tasks for completion once")
    poll.set_defaults(func=cmd_poll_tasks)

    creds = sub.add_parser("set-credentials", help="Store EHR login credentials for an identity")
    creds.add_argument("identity")
    creds.add_argument("password")
    creds.set_defaults(func=cmd_set_credentials)

    stats = sub.add_parser("stats", help="Print note check, eligibility and vital-signs statistics")
    stats.set_defaults(func=cmd_stats)

    issues = sub.add_parser("issues", help="List the stored issues of an encounter and their marks")
    issues.add_argument("encounter_id")
    issues.set_defaults(func=cmd_issues)

    mark = sub.add_parser("mark-issue", help="Mark a stored issue invalid or resolved")
    mark.add_argument("encounter_id")
    mark.add_argument("index", type=int)
    mark.add_argument("--as", dest="mark", choices=("invalid", "resolved"), default="invalid")
    mark.add_argument("--by", dest="marked_by", default="cli")
    mark.add_argument("--reason", default=None)
    mark.add_argument("--undo", action="store_true", help="Remove the mark instead")
    mark.set_defaults(func=cmd_mark_issue)

    init_db = sub.add_parser("init-db", help="Create any missing tables")
    init_db.set_defaults(func=cmd_init_db)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    runtime = build_runtime()
    try:
        runtime.database.create_all()
        return args.func(runtime, args)
    finally:
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
