"""Session-aware pull invocation shared by the CLI and the scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from orgsync.cancellation import CancelToken
from orgsync.config import format_duration, parse_duration
from orgsync.errors import PullCancelled
from orgsync.resume import PullOptions, ResumeState
from orgsync.session import ProgressRecorder, PullSession, SessionNotFound, SessionStore
from orgsync.sync import OrgSync
from orgsync.targets import SyncTarget

logger = logging.getLogger("orgsync.runner")


@dataclass
class PullOutcome:
    target: str
    session_key: str
    items: list = field(default_factory=list)
    cancelled: bool = False
    reason: str = ""
    resumed: bool = False

    @property
    def count(self) -> int:
        return len(self.items)


def _compatible(
    session: PullSession, target: SyncTarget, store: bool, stdout: bool, interval: float, streaming: bool
) -> bool:
    """A stored session may resume this invocation only if every option agrees."""
    if session.target != target.kind or session.store != store or session.stdout != stdout:
        return False
    if session.streaming != streaming:
        return False
    if session.team_slug != target.team_slug or session.repo_name != target.repo_name:
        return False
    try:
        stored_interval = parse_duration(session.interval)
    except ValueError:
        return False
    return format_duration(stored_interval) == format_duration(interval)


def _load_or_create(
    sessions: SessionStore,
    key: str,
    target: SyncTarget,
    store: bool,
    stdout: bool,
    interval: float,
    streaming: bool,
) -> tuple[PullSession, bool]:
    try:
        existing = sessions.load(key)
    except SessionNotFound:
        existing = None

    if existing is not None and _compatible(existing, target, store, stdout, interval, streaming):
        return existing, True

    if existing is not None:
        logger.info("Stored session %s does not match current options; starting over", key)

    session = PullSession(
        key=key,
        target=target.kind,
        store=store,
        stdout=stdout,
        interval=format_duration(interval),
        streaming=streaming,
        team_slug=target.team_slug,
        repo_name=target.repo_name,
        user_login=target.user_login,
    )
    sessions.save(session)
    return session, False


def run_pull(
    syncer: OrgSync,
    sessions: SessionStore,
    target: SyncTarget,
    store: bool = True,
    stdout: bool = False,
    interval: float = 1.0,
    streaming: bool = False,
    per_page: int = 100,
    cancel: Optional[CancelToken] = None,
) -> PullOutcome:
    """Run one pull, resuming a matching interrupted session if there is one.

    The session is removed when the pull completes and kept when it is
    cancelled, so the next identical invocation continues where this one
    stopped. Other failures propagate with the session left in place.
    """
    target = target.validate()
    key = target.session_key(store, stdout, interval, streaming)
    session, resumed = _load_or_create(sessions, key, target, store, stdout, interval, streaming)

    resume = ResumeState()
    if resumed and session.endpoint:
        resume = ResumeState(
            endpoint=session.endpoint,
            metadata=dict(session.metadata or {}),
            last_page=session.last_page,
            count=session.fetched_count,
            cleared=session.table_cleared,
        )
        logger.info(
            "Resuming %s from page %d (%d items fetched)",
            target.kind,
            session.last_page + 1,
            session.fetched_count,
            extra={"target": target.kind, "endpoint": session.endpoint, "metadata": session.metadata},
        )

    opts = PullOptions(
        store=store,
        stdout=stdout,
        interval=interval,
        streaming=streaming,
        per_page=per_page,
        resume=resume,
        progress=ProgressRecorder(sessions, session),
        cancel=cancel or CancelToken(),
    )

    outcome = PullOutcome(target=target.kind, session_key=key, resumed=resumed)
    try:
        outcome.items = syncer.pull_with_tracking(target, opts, session_key=key)
    except PullCancelled as exc:
        outcome.items = exc.items
        outcome.cancelled = True
        outcome.reason = exc.reason
        logger.warning(
            "Pull interrupted (%s): %d items fetched in this run; session %s kept for resume",
            exc.reason,
            len(exc.items),
            key,
            extra={"target": target.kind, "records": len(exc.items)},
        )
        return outcome

    sessions.remove(key)
    logger.info("Pull finished, session removed", extra={"target": target.kind, "records": outcome.count})
    return outcome
