"""GitHub organisation sync: users, teams, repos, and their relations.

Two replace policies keep the local tables consistent:

* full replace (org-wide lists): fetch every page, then delete the whole table
  and insert the fresh set in one transaction;
* scoped replace (relations of one repo or team): delete only that scope's
  rows and insert the fresh set in one transaction.

The "every repo/team" drivers can instead stream: the scope is cleared once and
each page is committed as it arrives. That bounds memory and lets an
interrupted scope resume at page granularity, at the cost of the scope being
partially replaced if the walk fails midway. Scopes finished earlier are never
affected.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import sys
import time
from typing import Any, Callable, Mapping, Optional, TextIO

import requests

from orgsync import targets as t
from orgsync.db import Database, utc_now
from orgsync.errors import PullCancelled, RemoteAPIError, ScopeDiagnostic, StorageError, SyncError
from orgsync.github_client import GitHubAPIError
from orgsync.pager import ListFunc, fetch_pages
from orgsync.permissions import normalize_permission, resolve_permission
from orgsync.resume import PullOptions, ResumeState, prepare_resume
from orgsync.targets import SyncTarget

logger = logging.getLogger("orgsync.sync")

RowWriter = Callable[[Any, list], int]


class OrgSync:
    """Runs pulls for one organisation against one local store."""

    def __init__(self, client, db: Optional[Database], org: str, out: Optional[TextIO] = None) -> None:
        self.client = client
        self.db = db
        self.org = org
        self.out = out or sys.stdout

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def pull(self, target: SyncTarget, opts: PullOptions) -> list:
        """Run the driver for ``target.kind``. Returns every item fetched."""
        target = target.validate()
        kind = target.kind
        if kind == t.USERS:
            return self.pull_users(opts)
        if kind == t.DETAIL_USERS:
            return self.pull_detail_users(opts)
        if kind == t.TEAMS:
            return self.pull_teams(opts)
        if kind == t.REPOS:
            return self.pull_repositories(opts)
        if kind == t.OUTSIDE_USERS:
            return self.pull_outside_users(opts)
        if kind == t.TOKEN_PERMISSION:
            return self.pull_token_permission(opts)
        if kind == t.REPOS_USERS:
            return self.pull_repo_users(target.repo_name, opts)
        if kind == t.REPOS_TEAMS:
            return self.pull_repo_teams(target.repo_name, opts)
        if kind == t.TEAM_USER:
            return self.pull_team_users(target.team_slug, opts)
        if kind == t.ALL_REPOS_USERS:
            return self.pull_all_repos_users(opts)
        if kind == t.ALL_REPOS_TEAMS:
            return self.pull_all_repos_teams(opts)
        if kind == t.ALL_TEAMS_USERS:
            return self.pull_all_teams_users(opts)
        raise ValueError(f"unknown target: {kind}")

    def pull_with_tracking(self, target: SyncTarget, opts: PullOptions, session_key: Optional[str] = None) -> list:
        """Wrap pull() with sync_runs bookkeeping."""
        if self.db is None:
            return self.pull(target, opts)

        run_id = self.db.record_run_start(target.kind, session_key)
        started = time.monotonic()
        try:
            items = self.pull(target, opts)
        except PullCancelled as exc:
            self.db.record_run_end(run_id, "CANCELLED", len(exc.items), exc.reason)
            raise
        except Exception as exc:
            self.db.record_run_end(run_id, "FAILED", error_message=str(exc)[:1000])
            logger.error("Pull failed: %s", exc, extra={"target": target.kind, "run_id": run_id})
            raise

        self.db.record_run_end(run_id, "SUCCESS", len(items))
        logger.info(
            "Pull complete",
            extra={
                "target": target.kind,
                "records": len(items),
                "run_id": run_id,
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        return items

    # ------------------------------------------------------------------
    # Replace policies
    # ------------------------------------------------------------------

    def _storing(self, opts: PullOptions) -> bool:
        return opts.store and self.db is not None

    def _buffered_options(
        self, opts: PullOptions, endpoint: str, metadata: Optional[Mapping[str, str]] = None
    ) -> PullOptions:
        """Page options for a walk whose result is written only after the last page.

        Earlier pages of an interrupted buffered walk were never written, so
        resuming mid-listing would replace the rows with a partial set; such
        walks restart from page 1 when storing.
        """
        local = opts.for_endpoint(endpoint, metadata)
        if self._storing(local) and local.start_page > 1:
            logger.info(
                "Buffered replace cannot resume mid-listing; restarting from page 1",
                extra={"endpoint": endpoint, "metadata": dict(metadata or {}), "page": local.start_page},
            )
            local = local.for_endpoint(endpoint, metadata)
        return local

    def _replace(self, table: str, items: list, writer: RowWriter, scope: Optional[str] = None) -> int:
        """Delete the table (or one scope of it) and insert ``items`` in one transaction."""
        label = f"{table} ({scope})" if scope is not None else table
        try:
            with self.db.transaction() as cur:
                if scope is None:
                    deleted = self.db.clear_table(cur, table)
                else:
                    deleted = self.db.delete_scope(cur, table, scope)
                written = writer(cur, items)
        except SyncError:
            raise
        except sqlite3.Error as exc:
            raise StorageError(f"replace {table}", label, exc) from exc
        logger.info("Replaced %s: %d removed, %d written", label, deleted, written, extra={"records": written})
        return written

    def _sync_all(self, opts: PullOptions, endpoint: str, table: str, list_func: ListFunc, writer: RowWriter) -> list:
        local = self._buffered_options(opts, endpoint)
        items = fetch_pages(list_func, self.org, local, endpoint)
        if self._storing(local):
            self._replace(table, items, writer)
        if opts.stdout:
            self._emit(items)
        return items

    def _sync_scoped(
        self,
        opts: PullOptions,
        endpoint: str,
        metadata: Mapping[str, str],
        table: str,
        scope: str,
        list_func: ListFunc,
        writer: RowWriter,
    ) -> list:
        local = self._buffered_options(opts, endpoint, metadata)
        items = fetch_pages(list_func, self.org, local, endpoint, metadata)
        if self._storing(local):
            self._replace(table, items, writer, scope=scope)
        return items

    def _sync_streaming(
        self,
        opts: PullOptions,
        endpoint: str,
        metadata: Mapping[str, str],
        table: str,
        scope: str,
        list_func: ListFunc,
        writer: RowWriter,
    ) -> list:
        local = opts.for_endpoint(endpoint, metadata)
        if not self._storing(local):
            return fetch_pages(list_func, self.org, local, endpoint, metadata)

        # Pages before start_page count as committed only if the interrupted
        # run cleared this scope and streamed into it.
        if local.start_page > 1 and not opts.resume.cleared:
            logger.info(
                "Scope was not cleared by the interrupted run; restarting from page 1",
                extra={"endpoint": endpoint, "metadata": dict(metadata), "page": local.start_page},
            )
            local = local.for_endpoint(endpoint, metadata)
        if local.start_page == 1:
            try:
                with self.db.transaction() as cur:
                    self.db.delete_scope(cur, table, scope)
            except sqlite3.Error as exc:
                raise StorageError(f"clear {table}", f"{table} ({scope})", exc) from exc
            if local.progress is not None:
                local.progress.cleared(endpoint, dict(metadata))

        def store_page(items: list) -> None:
            with self.db.transaction() as cur:
                writer(cur, items)

        return fetch_pages(list_func, self.org, local, endpoint, metadata, store_page)

    def _emit(self, payload: Any) -> None:
        self.out.write(json.dumps(payload, indent=2, default=str))
        self.out.write("\n")
        self.out.flush()

    # ------------------------------------------------------------------
    # Org-wide targets (full replace)
    # ------------------------------------------------------------------

    def pull_users(self, opts: PullOptions) -> list:
        return self._sync_all(opts, t.USERS, "users", self.client.list_org_members, self._write_users)

    def pull_teams(self, opts: PullOptions) -> list:
        return self._sync_all(opts, t.TEAMS, "teams", self.client.list_org_teams, self._write_teams)

    def pull_repositories(self, opts: PullOptions) -> list:
        return self._sync_all(opts, t.REPOS, "repositories", self.client.list_org_repos, self._write_repos)

    def pull_outside_users(self, opts: PullOptions) -> list:
        logger.info("Fetching outside collaborators")
        return self._sync_all(
            opts,
            t.OUTSIDE_USERS,
            "outside_users",
            self.client.list_outside_collaborators,
            self._write_outside_users,
        )

    def pull_detail_users(self, opts: PullOptions) -> list:
        """Members list plus one profile request per member, then full replace."""
        local = self._buffered_options(opts, t.DETAIL_USERS)
        members = fetch_pages(self.client.list_org_members, self.org, local, t.DETAIL_USERS)

        detailed: list = []
        for idx, member in enumerate(members):
            local.cancel.raise_if_cancelled(detailed)
            login = member.get("login", "")
            logger.info("Fetching details for user %d/%d: %s", idx + 1, len(members), login)
            try:
                detailed.append(self.client.get_user(login))
            except (GitHubAPIError, requests.RequestException) as exc:
                logger.warning("Failed to fetch details for user %s, keeping list entry: %s", login, exc)
                detailed.append(member)
            if idx + 1 < len(members):
                local.cancel.wait(local.interval, detailed)

        if self._storing(local):
            self._replace("users", detailed, self._write_users)
        if opts.stdout:
            self._emit(detailed)
        return detailed

    def pull_token_permission(self, opts: PullOptions) -> list:
        opts.cancel.raise_if_cancelled()
        try:
            _, headers = self.client.get_authenticated_user()
        except (GitHubAPIError, requests.RequestException) as exc:
            raise RemoteAPIError(
                t.TOKEN_PERMISSION,
                1,
                exc,
                status_code=getattr(exc, "status_code", None),
                diagnostic=ScopeDiagnostic.from_headers(getattr(exc, "headers", None)),
            ) from exc

        record = {
            "oauth_scopes": headers.get("X-OAuth-Scopes", ""),
            "accepted_oauth_scopes": headers.get("X-Accepted-OAuth-Scopes", ""),
            "accepted_github_permissions": headers.get("X-Accepted-GitHub-Permissions", ""),
            "github_media_type": headers.get("X-GitHub-Media-Type", ""),
            "rate_limit": _to_int(headers.get("X-RateLimit-Limit")),
            "rate_remaining": _to_int(headers.get("X-RateLimit-Remaining")),
            "rate_reset": _to_int(headers.get("X-RateLimit-Reset")),
        }
        if self._storing(opts):
            self._replace("token_permissions", [record], self._write_token_permission)
            logger.info("Token permission information stored")
        if opts.stdout:
            self._emit(record)
        return [record]

    # ------------------------------------------------------------------
    # Single-scope relation targets (scoped replace)
    # ------------------------------------------------------------------

    def pull_repo_users(self, repo_name: str, opts: PullOptions) -> list:
        users = self._repo_users(repo_name, {"repo": repo_name}, opts)
        if opts.stdout:
            self._emit(users)
        return users

    def pull_repo_teams(self, repo_name: str, opts: PullOptions) -> list:
        teams = self._repo_teams(repo_name, {"repo": repo_name}, opts)
        if opts.stdout:
            self._emit(teams)
        return teams

    def pull_team_users(self, team_slug: str, opts: PullOptions) -> list:
        users = self._team_users(team_slug, {"team": team_slug}, opts)
        if opts.stdout:
            self._emit({"team": team_slug, "users": users})
        return users

    def _repo_users(self, repo_name: str, metadata: Mapping[str, str], opts: PullOptions) -> list:
        sync = self._sync_streaming if opts.streaming else self._sync_scoped
        return sync(
            opts,
            t.REPOS_USERS,
            metadata,
            "repo_users",
            repo_name,
            lambda org, req: self.client.list_repo_collaborators(org, repo_name, req),
            lambda cur, items: self._write_repo_users(cur, repo_name, items),
        )

    def _repo_teams(self, repo_name: str, metadata: Mapping[str, str], opts: PullOptions) -> list:
        sync = self._sync_streaming if opts.streaming else self._sync_scoped
        return sync(
            opts,
            t.REPOS_TEAMS,
            metadata,
            "repo_teams",
            repo_name,
            lambda org, req: self.client.list_repo_teams(org, repo_name, req),
            lambda cur, items: self._write_repo_teams(cur, repo_name, items),
        )

    def _team_users(self, team_slug: str, metadata: Mapping[str, str], opts: PullOptions) -> list:
        sync = self._sync_streaming if opts.streaming else self._sync_scoped
        return sync(
            opts,
            t.TEAM_USER,
            metadata,
            "team_users",
            team_slug,
            lambda org, req: self.client.list_team_members(org, team_slug, req),
            lambda cur, items: self._write_team_users(cur, team_slug, items),
        )

    # ------------------------------------------------------------------
    # Every-repo / every-team drivers
    # ------------------------------------------------------------------

    def _require_db(self, kind: str) -> Database:
        if self.db is None:
            raise ValueError(f"database connection is required for {kind}")
        return self.db

    def pull_all_repos_users(self, opts: PullOptions) -> list:
        names = _unique_names(self._require_db(t.ALL_REPOS_USERS).list_repository_names())
        if not names:
            logger.info("No repositories found in database; pull repos first")
            return []
        return self._pull_each(
            opts, names, t.REPOS_USERS, "repo", "repo_index", "repository", "repository name",
            self._repo_users, "users",
        )

    def pull_all_repos_teams(self, opts: PullOptions) -> list:
        names = _unique_names(self._require_db(t.ALL_REPOS_TEAMS).list_repository_names())
        if not names:
            logger.info("No repositories found in database; pull repos first")
            return []
        return self._pull_each(
            opts, names, t.REPOS_TEAMS, "repo", "repo_index", "repository", "repository name",
            self._repo_teams, "teams",
        )

    def pull_all_teams_users(self, opts: PullOptions) -> list:
        slugs = _unique_names(self._require_db(t.ALL_TEAMS_USERS).list_team_slugs())
        if not slugs:
            logger.info("No teams found in database; pull teams first")
            return []
        return self._pull_each(
            opts, slugs, t.TEAM_USER, "team", "team_index", "team", "team slug",
            self._team_users, "users", continue_on_remote_error=True,
        )

    def _pull_each(
        self,
        opts: PullOptions,
        names: list[str],
        endpoint: str,
        name_key: str,
        index_key: str,
        label: str,
        identifier: str,
        pull_one: Callable[[str, Mapping[str, str], PullOptions], list],
        payload_key: str,
        continue_on_remote_error: bool = False,
    ) -> list:
        plan = prepare_resume(names, opts.resume, endpoint, name_key, index_key, label, identifier)
        if plan.message:
            logger.info(plan.message, extra={"endpoint": endpoint})
        resume_state, resume_index = plan.state, plan.index
        if resume_index >= 0:
            logger.info("Resuming from %s %s", label, plan.name, extra={"endpoint": endpoint})

        logger.info("Fetching %s for %d %ss", payload_key, len(names), label, extra={"endpoint": endpoint})
        all_items: list = []
        payload: list = []
        for idx, name in enumerate(names):
            if resume_index >= 0 and idx < resume_index:
                continue

            logger.info("Processing %s %d/%d: %s", label, idx + 1, len(names), name)
            metadata = {name_key: name, index_key: str(idx)}
            try:
                items = pull_one(name, metadata, opts.with_resume(resume_state))
            except PullCancelled as exc:
                raise PullCancelled(exc.reason, all_items + exc.items) from None
            except RemoteAPIError as exc:
                if not continue_on_remote_error:
                    logger.error("Failed to fetch %s for %s %s: %s", payload_key, label, name, exc)
                    raise
                logger.warning("Failed to fetch %s for %s %s, skipping: %s", payload_key, label, name, exc)
                continue

            if resume_index >= 0 and idx == resume_index:
                resume_state, resume_index = ResumeState(), -1

            all_items.extend(items)
            if opts.stdout:
                payload.append({name_key: name, payload_key: items})

        logger.info("Completed fetching %s for all %ss", payload_key, label, extra={"records": len(all_items)})
        if opts.stdout:
            self._emit(payload)
        return all_items

    # ------------------------------------------------------------------
    # Row writers
    # ------------------------------------------------------------------

    _USER_COLUMNS = ["id", "login", "name", "email", "company", "location", "created_at", "updated_at"]

    def _user_rows(self, users: list) -> list[tuple]:
        now = utc_now()
        return [
            (
                u.get("id"),
                u.get("login"),
                u.get("name"),
                u.get("email"),
                u.get("company"),
                u.get("location"),
                now,
                now,
            )
            for u in users
        ]

    def _write_users(self, cur, users: list) -> int:
        return self.db.insert_or_replace_batch(cur, "users", self._USER_COLUMNS, self._user_rows(users))

    def _write_outside_users(self, cur, users: list) -> int:
        return self.db.insert_or_replace_batch(cur, "outside_users", self._USER_COLUMNS, self._user_rows(users))

    def _write_teams(self, cur, teams: list) -> int:
        columns = ["id", "name", "slug", "description", "privacy", "permission", "created_at", "updated_at"]
        now = utc_now()
        rows = []
        for team in teams:
            rows.append((
                team.get("id"),
                team.get("name"),
                team.get("slug"),
                team.get("description"),
                team.get("privacy"),
                normalize_permission(team.get("permission")),
                now,
                now,
            ))
        return self.db.insert_or_replace_batch(cur, "teams", columns, rows)

    def _write_repos(self, cur, repos: list) -> int:
        columns = [
            "id", "name", "full_name", "description", "private", "language", "size",
            "stargazers_count", "watchers_count", "forks_count",
            "created_at", "updated_at", "pushed_at",
        ]
        rows = []
        for repo in repos:
            rows.append((
                repo.get("id"),
                repo.get("name"),
                repo.get("full_name"),
                repo.get("description"),
                bool(repo.get("private", False)),
                repo.get("language"),
                repo.get("size", 0),
                repo.get("stargazers_count", 0),
                repo.get("watchers_count", 0),
                repo.get("forks_count", 0),
                repo.get("created_at"),
                repo.get("updated_at"),
                repo.get("pushed_at"),
            ))
        return self.db.insert_or_replace_batch(cur, "repositories", columns, rows)

    def _write_repo_users(self, cur, repo_name: str, users: list) -> int:
        columns = ["repo_name", "user_id", "user_login", "permission", "created_at", "updated_at"]
        now = utc_now()
        rows = []
        for user in users:
            # Collaborators carry a permissions object; pick the highest flag
            permission = resolve_permission(user.get("permissions")) or normalize_permission(user.get("role_name"))
            rows.append((repo_name, user.get("id"), user.get("login"), permission, now, now))
        return self.db.insert_or_replace_batch(cur, "repo_users", columns, rows)

    def _write_repo_teams(self, cur, repo_name: str, teams: list) -> int:
        columns = [
            "repo_name", "team_id", "team_slug", "team_name", "permission",
            "privacy", "description", "created_at", "updated_at",
        ]
        now = utc_now()
        rows = []
        for team in teams:
            permission = resolve_permission(team.get("permissions")) or normalize_permission(team.get("permission"))
            rows.append((
                repo_name,
                team.get("id"),
                team.get("slug"),
                team.get("name"),
                permission,
                team.get("privacy"),
                team.get("description"),
                now,
                now,
            ))
        return self.db.insert_or_replace_batch(cur, "repo_teams", columns, rows)

    def _write_team_users(self, cur, team_slug: str, users: list) -> int:
        columns = ["team_id", "team_slug", "user_id", "user_login", "role", "created_at"]
        team_id = self.db.team_id_for_slug(cur, team_slug)
        now = utc_now()
        rows = [
            (team_id, team_slug, u.get("id"), u.get("login"), u.get("role", "member"), now)
            for u in users
        ]
        return self.db.insert_or_replace_batch(cur, "team_users", columns, rows)

    def _write_token_permission(self, cur, records: list) -> int:
        columns = [
            "scopes", "x_oauth_scopes", "x_accepted_oauth_scopes", "x_accepted_github_permissions",
            "x_github_media_type", "x_ratelimit_limit", "x_ratelimit_remaining", "x_ratelimit_reset",
            "created_at", "updated_at",
        ]
        now = utc_now()
        rows = [
            (
                r["oauth_scopes"],
                r["oauth_scopes"],
                r["accepted_oauth_scopes"],
                r["accepted_github_permissions"],
                r["github_media_type"],
                r["rate_limit"],
                r["rate_remaining"],
                r["rate_reset"],
                now,
                now,
            )
            for r in records
        ]
        return self.db.insert_or_replace_batch(cur, "token_permissions", columns, rows)


def _unique_names(names: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for name in names:
        trimmed = (name or "").strip()
        if trimmed and trimmed not in seen:
            seen.add(trimmed)
            out.append(trimmed)
    return out


def _to_int(value: Optional[str]) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
