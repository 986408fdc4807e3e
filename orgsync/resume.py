"""Resume decisions for paginated pulls.

A pull that was interrupted leaves a ResumeState behind (endpoint, scoping
metadata, last completed page, running item count). The next invocation hands
it to the drivers, and each driver asks ``PullOptions.for_endpoint`` where its
own page walk should start.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Mapping, NamedTuple, Optional, Protocol, Sequence

from orgsync.cancellation import CancelToken


class ProgressReporter(Protocol):
    def start(self, endpoint: str, metadata: Optional[dict], page: int, count: int) -> None: ...

    def page(self, endpoint: str, metadata: Optional[dict], page: int, count: int) -> None: ...

    def cleared(self, endpoint: str, metadata: Optional[dict]) -> None: ...


@dataclass(frozen=True)
class ResumeState:
    endpoint: str = ""
    metadata: Optional[Mapping[str, str]] = None
    last_page: int = 0
    count: int = 0
    # the interrupted run deleted this scope's rows before its first page
    cleared: bool = False

    def matches(self, endpoint: str, metadata: Optional[Mapping[str, str]]) -> bool:
        # dict equality is order-independent; None and {} compare equal
        return self.endpoint == endpoint and dict(self.metadata or {}) == dict(metadata or {})


@dataclass(frozen=True)
class PullOptions:
    """How fetched data is handled and where a page walk starts."""

    store: bool = True
    stdout: bool = False
    interval: float = 1.0
    streaming: bool = False
    start_page: int = 1
    initial_count: int = 0
    per_page: int = 100
    resume: ResumeState = field(default_factory=ResumeState)
    progress: Optional[ProgressReporter] = None
    cancel: CancelToken = field(default_factory=CancelToken)

    def for_endpoint(self, endpoint: str, metadata: Optional[Mapping[str, str]] = None) -> "PullOptions":
        """Options for one page walk, resuming only on an exact endpoint/metadata match.

        The returned options never carry a resume state, so a nested or
        subsequent walk cannot match the same state again.
        """
        start_page, initial_count = 1, 0
        if self.resume.matches(endpoint, metadata):
            start_page = max(1, self.resume.last_page + 1)
            initial_count = self.resume.count
        return replace(self, start_page=start_page, initial_count=initial_count, resume=ResumeState())

    def with_resume(self, resume: ResumeState) -> "PullOptions":
        return replace(self, resume=resume)


class ResumePlan(NamedTuple):
    state: ResumeState
    index: int
    message: str
    name: str


def prepare_resume(
    names: Sequence[str],
    state: ResumeState,
    endpoint: str,
    name_key: str,
    index_key: str,
    label: str,
    identifier: str,
) -> ResumePlan:
    """Locate the candidate an "every repo/team" driver should resume from.

    A stored name that is no longer in ``names``, or metadata that only has the
    list index, is stale: the state is dropped and the returned message says
    why the driver is restarting from the first candidate.
    """
    if state.endpoint != endpoint:
        return ResumePlan(state, -1, "", "")

    meta = state.metadata or {}
    name = (meta.get(name_key) or "").strip()
    if name:
        for idx, current in enumerate(names):
            if current == name:
                return ResumePlan(state, idx, "", name)
        return ResumePlan(
            ResumeState(),
            -1,
            f"resume target {label} '{name}' not found in current list; restarting from first {label}",
            "",
        )

    stored_index = (meta.get(index_key) or "").strip()
    if stored_index:
        return ResumePlan(
            ResumeState(),
            -1,
            f"resume metadata missing {identifier}; restarting from first {label} "
            f"(stored index={stored_index})",
            "",
        )

    return ResumePlan(ResumeState(), -1, "", "")
