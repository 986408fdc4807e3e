"""CLI entry point: pull, sessions, status, access, scheduler."""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from typing import Optional

from orgsync.cancellation import CancelToken
from orgsync.config import SyncConfig, load_config, parse_duration
from orgsync.db import Database
from orgsync.errors import RemoteAPIError, SyncError
from orgsync.logging_config import configure_logging
from orgsync.permissions import merge_repository_access
from orgsync.session import SessionStore, SessionStoreError
from orgsync.targets import DB_DRIVEN_KINDS, KINDS, SyncTarget, validate_user_login

logger = logging.getLogger("orgsync.cli")

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _install_signal_handlers(token: CancelToken) -> None:
    def _handler(signum, frame) -> None:
        logger.warning("Received %s, cancelling pull", signal.Signals(signum).name)
        token.cancel()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _open_database(config: SyncConfig) -> Database:
    logger.debug("Opening database %s", config.database_path)
    return Database(config.database_path)


def cmd_pull(args: argparse.Namespace) -> int:
    """Pull one target from GitHub, resuming an interrupted session if possible."""
    from orgsync.github_client import GitHubClient
    from orgsync.runner import run_pull
    from orgsync.sync import OrgSync

    config = load_config()
    target = SyncTarget(args.target, args.team or "", args.repo or "", args.user or "").validate()
    store = not args.no_store
    interval = parse_duration(args.interval) if args.interval else config.pull_interval

    db: Optional[Database] = None
    if store or target.kind in DB_DRIVEN_KINDS:
        db = _open_database(config)

    client = GitHubClient(config.github)
    token = CancelToken(timeout=parse_duration(args.timeout) if args.timeout else None)
    _install_signal_handlers(token)

    try:
        syncer = OrgSync(client, db, config.github.organization)
        outcome = run_pull(
            syncer,
            SessionStore(config.session_path),
            target,
            store=store,
            stdout=args.stdout,
            interval=interval,
            streaming=args.streaming,
            per_page=config.github.per_page,
            cancel=token,
        )
    except RemoteAPIError as exc:
        logger.error("Pull failed: %s", exc, extra={"target": target.kind, "page": exc.page})
        if exc.is_scope_error:
            logger.error("The token may be missing a scope: %s", ", ".join(exc.diagnostic.scopes) or exc.diagnostic)
        return EXIT_FAILURE
    except (SyncError, SessionStoreError, ValueError) as exc:
        logger.error("Pull failed: %s", exc, extra={"target": target.kind})
        return EXIT_FAILURE
    finally:
        client.close()
        if db is not None:
            db.close()

    if outcome.cancelled:
        print(
            f"Pull interrupted ({outcome.reason}); {outcome.count} items fetched. "
            f"Re-run the same command to resume.",
            file=sys.stderr,
        )
        return EXIT_INTERRUPTED
    logger.info("Pull results for %s: %d items", target.kind, outcome.count)
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    """List or clear stored pull sessions."""
    config = load_config(require_credentials=False)
    sessions = SessionStore(config.session_path)

    if args.clear:
        sessions.remove(args.clear)
        print(f"Removed session {args.clear}")
        return 0

    stored = sessions.list_sessions()
    if not stored:
        print("No pull sessions found.")
        return 0

    fmt = "{:<20}  {:<16}  {:>6}  {:>8}  {:<20}  {}"
    print(fmt.format("UPDATED", "ENDPOINT", "PAGE", "FETCHED", "METADATA", "KEY"))
    print("-" * 120)
    for s in stored:
        metadata = ",".join(f"{k}={v}" for k, v in sorted(s.metadata.items()))
        print(fmt.format(s.updated_at[:20], s.endpoint or "-", s.last_page, s.fetched_count, metadata[:20], s.key))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show recent pull runs."""
    config = load_config(require_credentials=False)
    db = _open_database(config)

    try:
        runs = db.get_recent_runs(
            target=args.target if args.target != "all" else None,
            limit=args.limit,
        )
        if not runs:
            print("No pull runs found.")
            return 0

        fmt = "{:<36}  {:<16}  {:<9}  {:<20}  {:<20}  {:>8}  {}"
        print(fmt.format("RUN ID", "TARGET", "STATUS", "STARTED", "FINISHED", "RECORDS", "ERROR"))
        print("-" * 140)
        for r in runs:
            started = str(r["started_at"])[:19] if r["started_at"] else ""
            finished = str(r["finished_at"])[:19] if r["finished_at"] else ""
            error = (r.get("error_message") or "")[:40]
            print(fmt.format(
                str(r["id"])[:36],
                r["target"],
                r["status"],
                started,
                finished,
                r.get("records") or 0,
                error,
            ))
    finally:
        db.close()
    return 0


def cmd_access(args: argparse.Namespace) -> int:
    """Print a user's effective repository access from the local store as JSON."""
    login = validate_user_login(args.user)
    config = load_config(require_credentials=False)
    db = _open_database(config)
    try:
        direct, team = db.fetch_user_access_rows(login)
    finally:
        db.close()

    entries = merge_repository_access(direct, team)
    if not entries:
        logger.info("No repository access recorded for %s", login)
    print(json.dumps(entries, indent=2))
    return 0


def cmd_scheduler(args: argparse.Namespace) -> int:
    """Start the APScheduler-based scheduling loop."""
    from orgsync.scheduler import start_scheduler

    config = load_config()
    db = _open_database(config)
    try:
        start_scheduler(config, db)
    finally:
        db.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orgsync",
        description="Resumable GitHub organization sync into a local SQLite store",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # pull command
    pull_parser = subparsers.add_parser("pull", help="Pull one target from GitHub")
    pull_parser.add_argument("--target", "-t", choices=KINDS, required=True, help="What to pull")
    pull_parser.add_argument("--team", help="Team slug (team-user)")
    pull_parser.add_argument("--repo", help="Repository name (repos-users, repos-teams)")
    pull_parser.add_argument("--user", help="User login recorded with the session")
    pull_parser.add_argument("--no-store", action="store_true", help="Do not write to the database")
    pull_parser.add_argument("--stdout", action="store_true", help="Print fetched data as JSON")
    pull_parser.add_argument("--interval", help="Pause between page requests, e.g. 1s or 500ms")
    pull_parser.add_argument(
        "--streaming",
        action="store_true",
        help="Commit each page as it arrives (all-* targets)",
    )
    pull_parser.add_argument("--timeout", help="Cancel the pull after this duration, e.g. 30m")
    pull_parser.set_defaults(func=cmd_pull)

    # sessions command
    sessions_parser = subparsers.add_parser("sessions", help="List stored pull sessions")
    sessions_parser.add_argument("--clear", metavar="KEY", help="Remove the session with this key")
    sessions_parser.set_defaults(func=cmd_sessions)

    # status command
    status_parser = subparsers.add_parser("status", help="Show recent pull runs")
    status_parser.add_argument(
        "--target", "-t",
        choices=("all",) + KINDS,
        default="all",
        help="Filter by target",
    )
    status_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=10,
        help="Number of runs to show (default: 10)",
    )
    status_parser.set_defaults(func=cmd_status)

    # access command
    access_parser = subparsers.add_parser("access", help="Show a user's repository access")
    access_parser.add_argument("--user", "-u", required=True, help="User login")
    access_parser.set_defaults(func=cmd_access)

    # scheduler command
    sched_parser = subparsers.add_parser("scheduler", help="Start scheduled pull loop")
    sched_parser.set_defaults(func=cmd_scheduler)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main CLI entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("LOG_FORMAT", "json"))

    args = build_parser().parse_args(argv)
    try:
        code = args.func(args)
    except (ValueError, SessionStoreError) as exc:
        logger.error("%s", exc)
        code = EXIT_FAILURE
    sys.exit(code)
