"""Exception types raised by the sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

ACCEPTED_OAUTH_SCOPES_HEADER = "X-Accepted-OAuth-Scopes"
ACCEPTED_GITHUB_PERMISSIONS_HEADER = "X-Accepted-GitHub-Permissions"


class SyncError(Exception):
    """Base class for sync failures."""


class PullCancelled(SyncError):
    """The pull was cancelled or hit its deadline.

    ``items`` holds whatever was fetched before the cancellation so callers can
    still persist partial progress.
    """

    def __init__(self, reason: str = "canceled", items: Optional[list] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.items: list = list(items or [])

    @property
    def deadline_exceeded(self) -> bool:
        return self.reason == "deadline exceeded"


@dataclass(frozen=True)
class ScopeDiagnostic:
    """OAuth scopes / fine-grained permissions the API said it would accept."""

    accepted_oauth_scopes: str = ""
    accepted_github_permissions: str = ""

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, Any]]) -> Optional["ScopeDiagnostic"]:
        if not headers:
            return None
        # requests' CaseInsensitiveDict handles case; plain dicts need a scan
        lowered = {str(k).lower(): v for k, v in headers.items()}
        scopes = str(lowered.get(ACCEPTED_OAUTH_SCOPES_HEADER.lower(), "") or "").strip()
        perms = str(lowered.get(ACCEPTED_GITHUB_PERMISSIONS_HEADER.lower(), "") or "").strip()
        if not scopes and not perms:
            return None
        return cls(accepted_oauth_scopes=scopes, accepted_github_permissions=perms)

    @property
    def scopes(self) -> list[str]:
        return [s.strip() for s in self.accepted_oauth_scopes.split(",") if s.strip()]

    def __str__(self) -> str:
        return (
            f"{ACCEPTED_OAUTH_SCOPES_HEADER}:{self.accepted_oauth_scopes}, "
            f"{ACCEPTED_GITHUB_PERMISSIONS_HEADER}:{self.accepted_github_permissions}"
        )


class RemoteAPIError(SyncError):
    """A listing call failed for a reason other than cancellation."""

    def __init__(
        self,
        endpoint: str,
        page: int,
        cause: BaseException,
        status_code: Optional[int] = None,
        diagnostic: Optional[ScopeDiagnostic] = None,
    ) -> None:
        self.endpoint = endpoint
        self.page = page
        self.cause = cause
        self.status_code = status_code
        self.diagnostic = diagnostic
        message = f"failed to fetch page {page} of {endpoint}: {cause}"
        if diagnostic is not None:
            message += f", required permission scope: {diagnostic}"
        super().__init__(message)

    @property
    def is_scope_error(self) -> bool:
        """True when the credential most likely lacks a scope or permission."""
        return self.diagnostic is not None and self.status_code in (401, 403, 404)


class StorageError(SyncError):
    """A database operation failed; the surrounding transaction was rolled back."""

    def __init__(
        self,
        operation: str,
        scope: str,
        cause: Optional[BaseException] = None,
        message: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.scope = scope
        self.cause = cause
        if message is None:
            message = f"failed to {operation} for {scope}"
            if cause is not None:
                message += f": {cause}"
        super().__init__(message)


class BatchSizeError(StorageError):
    """A single row needs more bound parameters than the engine allows."""

    def __init__(self, table: str, column_count: int, limit: int) -> None:
        self.table = table
        self.column_count = column_count
        self.limit = limit
        super().__init__(
            "insert",
            table,
            message=f"column count {column_count} exceeds SQLite limit {limit} for {table}",
        )
