"""Sync target kinds, identifier validation and session keys."""

from __future__ import annotations

import re
from dataclasses import dataclass

from orgsync.config import format_duration

USERS = "users"
DETAIL_USERS = "detail-users"
TEAMS = "teams"
REPOS = "repos"
OUTSIDE_USERS = "outside-users"
TOKEN_PERMISSION = "token-permission"
REPOS_USERS = "repos-users"
REPOS_TEAMS = "repos-teams"
TEAM_USER = "team-user"
ALL_REPOS_USERS = "all-repos-users"
ALL_REPOS_TEAMS = "all-repos-teams"
ALL_TEAMS_USERS = "all-teams-users"

KINDS = (
    USERS,
    DETAIL_USERS,
    TEAMS,
    REPOS,
    OUTSIDE_USERS,
    TOKEN_PERMISSION,
    REPOS_USERS,
    REPOS_TEAMS,
    TEAM_USER,
    ALL_REPOS_USERS,
    ALL_REPOS_TEAMS,
    ALL_TEAMS_USERS,
)

# Kinds that read their candidate list from the local store.
DB_DRIVEN_KINDS = (ALL_REPOS_USERS, ALL_REPOS_TEAMS, ALL_TEAMS_USERS)

_USER_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,37}[A-Za-z0-9])?$")
_TEAM_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
_REPO_RE = re.compile(r"^[A-Za-z0-9._-]{1,100}$")


def validate_user_login(value: str) -> str:
    login = (value or "").strip()
    if not _USER_RE.match(login):
        raise ValueError(
            f"invalid username {value!r}: 1-39 chars alnum or hyphen, no leading/trailing hyphen"
        )
    return login


def validate_team_slug(value: str) -> str:
    slug = (value or "").strip()
    if not (1 <= len(slug) <= 100) or not _TEAM_RE.match(slug):
        raise ValueError(
            f"invalid team slug {value!r}: lowercase alnum and hyphen only, "
            "no leading/trailing hyphen, length 1-100"
        )
    return slug


def validate_repo_name(value: str) -> str:
    name = (value or "").strip()
    if not _REPO_RE.match(name):
        raise ValueError(
            f"invalid repository name {value!r}: 1-100 chars, alnum, dot, underscore, or hyphen only"
        )
    return name


@dataclass(frozen=True)
class SyncTarget:
    kind: str
    team_slug: str = ""
    repo_name: str = ""
    user_login: str = ""

    def validate(self) -> "SyncTarget":
        """Check the kind and its required scoping fields; return a normalized copy."""
        if self.kind not in KINDS:
            raise ValueError(f"unknown target: {self.kind}")
        team_slug, repo_name, user_login = self.team_slug, self.repo_name, self.user_login
        if self.kind in (REPOS_USERS, REPOS_TEAMS):
            if not repo_name:
                raise ValueError(f"repository name must be specified when using {self.kind} target")
            repo_name = validate_repo_name(repo_name)
        if self.kind == TEAM_USER:
            if not team_slug:
                raise ValueError(f"team slug must be specified when using {self.kind} target")
            team_slug = validate_team_slug(team_slug)
        if user_login:
            user_login = validate_user_login(user_login)
        return SyncTarget(self.kind, team_slug, repo_name, user_login)

    def session_key(self, store: bool, stdout: bool, interval: float, streaming: bool = False) -> str:
        parts = [self.kind]
        if self.team_slug:
            parts.append(f"team:{self.team_slug}")
        if self.repo_name:
            parts.append(f"repo:{self.repo_name}")
        if self.user_login:
            parts.append(f"user:{self.user_login}")
        parts.extend([
            f"store:{str(store).lower()}",
            f"stdout:{str(stdout).lower()}",
            f"interval:{format_duration(interval)}",
        ])
        if streaming:
            parts.append("streaming:true")
        return "|".join(parts)
