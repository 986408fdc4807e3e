"""Generic page walker shared by every sync target."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from orgsync.errors import PullCancelled, RemoteAPIError, ScopeDiagnostic, StorageError, SyncError
from orgsync.resume import PullOptions

logger = logging.getLogger("orgsync.pager")


@dataclass(frozen=True)
class PageRequest:
    page: int
    per_page: int = 100


@dataclass
class Page:
    """One page of a listing. ``next_page`` is 0 on the last page."""

    items: list
    next_page: int = 0
    headers: Mapping[str, Any] = field(default_factory=dict)


ListFunc = Callable[[str, PageRequest], Page]
StoreFunc = Callable[[list], Any]


def fetch_pages(
    list_func: ListFunc,
    scope: str,
    opts: PullOptions,
    endpoint: str,
    metadata: Optional[Mapping[str, str]] = None,
    store_func: Optional[StoreFunc] = None,
) -> list:
    """Walk a paginated listing from ``opts.start_page`` to the last page.

    ``store_func`` (streaming mode) receives each non-empty page as soon as it
    arrives. Progress is reported after every stored page. On cancellation the
    items gathered so far travel on the raised PullCancelled.
    """
    all_items: list = []
    page = max(1, opts.start_page)
    count = opts.initial_count
    meta = dict(metadata) if metadata else None

    if opts.progress is not None:
        opts.progress.start(endpoint, meta, page - 1, count)

    while True:
        opts.cancel.raise_if_cancelled(all_items)

        try:
            result = list_func(scope, PageRequest(page=page, per_page=opts.per_page))
        except PullCancelled as exc:
            raise PullCancelled(exc.reason, all_items) from None
        except SyncError:
            raise
        except Exception as exc:
            if opts.cancel.cancelled:
                raise PullCancelled(opts.cancel.reason or "canceled", all_items) from None
            headers = getattr(exc, "headers", None)
            raise RemoteAPIError(
                endpoint,
                page,
                exc,
                status_code=getattr(exc, "status_code", None),
                diagnostic=ScopeDiagnostic.from_headers(headers),
            ) from exc

        if result.items:
            all_items.extend(result.items)
            count += len(result.items)
            logger.info(
                "%d items fetched",
                count,
                extra={"endpoint": endpoint, "metadata": meta, "page": page, "records": count},
            )

            if store_func is not None:
                try:
                    store_func(result.items)
                except SyncError:
                    raise
                except Exception as exc:
                    raise StorageError(f"store page {page}", _describe(endpoint, meta), exc) from exc

            if opts.progress is not None:
                opts.progress.page(endpoint, meta, page, count)

        if not result.next_page:
            break
        page = result.next_page

        opts.cancel.wait(opts.interval, all_items)

    return all_items


def _describe(endpoint: str, metadata: Optional[Mapping[str, str]]) -> str:
    if not metadata:
        return endpoint
    scope = ", ".join(f"{k}={v}" for k, v in sorted(metadata.items()))
    return f"{endpoint} ({scope})"
