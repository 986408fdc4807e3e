"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables and .env files (local use)
  - AWS Secrets Manager token references (aws-secret://name#key)
  - GCP Secret Manager token references (gcp-secret://name)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from orgsync.secrets import resolve_secret

APP_NAME = "orgsync"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def default_config_dir() -> str:
    home = os.path.expanduser("~")
    if home and home != "~":
        return os.path.join(home, ".config", APP_NAME)
    return "."


def parse_duration(value: str) -> float:
    """Parse "1s", "500ms", "2m", "1h" or a bare number of seconds."""
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _UNIT_SECONDS[unit or "s"]


def format_duration(seconds: float) -> str:
    if seconds > 0 and seconds < 1:
        return f"{round(seconds * 1000):d}ms"
    return f"{seconds:g}s"


@dataclass(frozen=True)
class GitHubConfig:
    token: str
    organization: str
    api_base_url: str = "https://api.github.com"
    per_page: int = 100
    request_timeout: float = 30.0


@dataclass(frozen=True)
class SchedulerConfig:
    targets: list[str] = field(default_factory=lambda: ["users", "teams", "repos"])
    interval_min: int = 60
    misfire_grace_time: int = 300


@dataclass(frozen=True)
class SyncConfig:
    github: GitHubConfig
    database_path: str
    session_path: Optional[str] = None  # None = per-user default
    pull_interval: float = 1.0
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    log_level: str = "INFO"


def load_config(require_credentials: bool = True) -> SyncConfig:
    """Load configuration from environment variables (and a .env file if present).

    Commands that only read local state pass ``require_credentials=False`` so
    they work without an organization or token configured.
    """
    load_dotenv()

    organization = os.environ.get("ORGSYNC_ORGANIZATION", "").strip()
    if not organization and require_credentials:
        raise ValueError("ORGSYNC_ORGANIZATION environment variable is required")

    token_raw = os.environ.get("ORGSYNC_GITHUB_TOKEN") or os.environ.get("GITHUB_TOKEN", "")
    if not token_raw and require_credentials:
        raise ValueError("ORGSYNC_GITHUB_TOKEN (or GITHUB_TOKEN) environment variable is required")

    github = GitHubConfig(
        token=resolve_secret(token_raw) if require_credentials else token_raw,
        organization=organization,
        api_base_url=os.environ.get("ORGSYNC_API_BASE_URL", "https://api.github.com"),
        per_page=int(os.environ.get("ORGSYNC_PER_PAGE", "100")),
        request_timeout=float(os.environ.get("ORGSYNC_REQUEST_TIMEOUT", "30")),
    )

    targets_raw = os.environ.get("ORGSYNC_SCHEDULE_TARGETS", "users,teams,repos")
    scheduler = SchedulerConfig(
        targets=[t.strip() for t in targets_raw.split(",") if t.strip()],
        interval_min=int(os.environ.get("ORGSYNC_SCHEDULE_INTERVAL_MIN", "60")),
        misfire_grace_time=int(os.environ.get("ORGSYNC_MISFIRE_GRACE_TIME", "300")),
    )

    return SyncConfig(
        github=github,
        database_path=os.environ.get(
            "ORGSYNC_DB_PATH", os.path.join(default_config_dir(), f"{APP_NAME}.db")
        ),
        session_path=os.environ.get("ORGSYNC_SESSION_PATH") or None,
        pull_interval=parse_duration(os.environ.get("ORGSYNC_PULL_INTERVAL", "1s")),
        scheduler=scheduler,
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )
