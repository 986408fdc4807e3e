"""APScheduler-based interval scheduling for organization pulls."""

from __future__ import annotations

import logging

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler

from orgsync.config import SyncConfig
from orgsync.db import Database
from orgsync.errors import SyncError
from orgsync.session import SessionStore
from orgsync.targets import SyncTarget

logger = logging.getLogger("orgsync.scheduler")


def _pull_target(kind: str, config: SyncConfig, db: Database) -> None:
    """Run one scheduled pull. A cancelled run leaves its session for the next tick."""
    from orgsync.github_client import GitHubClient
    from orgsync.runner import run_pull
    from orgsync.sync import OrgSync

    client = GitHubClient(config.github)
    try:
        outcome = run_pull(
            OrgSync(client, db, config.github.organization),
            SessionStore(config.session_path),
            SyncTarget(kind),
            interval=config.pull_interval,
            per_page=config.github.per_page,
        )
        logger.info("Scheduled pull %s finished: %d items", kind, outcome.count, extra={"target": kind})
    except SyncError as exc:
        logger.error("Scheduled pull %s failed: %s", kind, exc, extra={"target": kind})
    finally:
        client.close()


def _on_job_error(event) -> None:
    """Log job execution errors."""
    logger.error(
        "Job %s raised an exception: %s",
        event.job_id,
        event.exception,
    )


def build_scheduler(config: SyncConfig, db: Database) -> BlockingScheduler:
    """Create the scheduler with one interval job per configured target."""
    # One worker: jobs share a single SQLite connection and must not overlap.
    scheduler = BlockingScheduler(executors={"default": ThreadPoolExecutor(1)})
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    sched = config.scheduler

    for kind in sched.targets:
        SyncTarget(kind).validate()
        scheduler.add_job(
            _pull_target,
            "interval",
            minutes=sched.interval_min,
            args=[kind, config, db],
            id=kind,
            max_instances=1,
            misfire_grace_time=sched.misfire_grace_time,
        )
    return scheduler


def start_scheduler(config: SyncConfig, db: Database) -> None:
    """Start the blocking scheduler."""
    scheduler = build_scheduler(config, db)
    logger.info("Starting scheduler with jobs: %s",
                [j.id for j in scheduler.get_jobs()])
    scheduler.start()
