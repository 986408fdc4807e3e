"""Database helpers: SQLite schema, transactions, batched upserts, run tracking."""

from __future__ import annotations

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, Optional, Sequence

from orgsync.errors import BatchSizeError

logger = logging.getLogger("orgsync.db")

# SQLite's historic SQLITE_MAX_VARIABLE_NUMBER; newer builds allow more, but
# this is the ceiling every build honours.
SQLITE_MAX_VARIABLES = 999

SCHEMA: dict[str, str] = {
    "users": """CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY,
        login TEXT NOT NULL UNIQUE,
        name TEXT,
        email TEXT,
        company TEXT,
        location TEXT,
        created_at TEXT,
        updated_at TEXT
    )""",
    "teams": """CREATE TABLE IF NOT EXISTS teams (
        id INTEGER PRIMARY KEY,
        name TEXT,
        slug TEXT NOT NULL UNIQUE,
        description TEXT,
        privacy TEXT,
        permission TEXT,
        created_at TEXT,
        updated_at TEXT
    )""",
    "repositories": """CREATE TABLE IF NOT EXISTS repositories (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        full_name TEXT,
        description TEXT,
        private BOOLEAN,
        language TEXT,
        size INTEGER,
        stargazers_count INTEGER,
        watchers_count INTEGER,
        forks_count INTEGER,
        created_at TEXT,
        updated_at TEXT,
        pushed_at TEXT
    )""",
    "repo_users": """CREATE TABLE IF NOT EXISTS repo_users (
        repo_name TEXT NOT NULL,
        user_id INTEGER,
        user_login TEXT NOT NULL,
        permission TEXT,
        created_at TEXT,
        updated_at TEXT,
        UNIQUE (repo_name, user_login)
    )""",
    "repo_teams": """CREATE TABLE IF NOT EXISTS repo_teams (
        repo_name TEXT NOT NULL,
        team_id INTEGER,
        team_slug TEXT NOT NULL,
        team_name TEXT,
        permission TEXT,
        privacy TEXT,
        description TEXT,
        created_at TEXT,
        updated_at TEXT,
        UNIQUE (repo_name, team_slug)
    )""",
    "team_users": """CREATE TABLE IF NOT EXISTS team_users (
        team_id INTEGER,
        team_slug TEXT NOT NULL,
        user_id INTEGER,
        user_login TEXT NOT NULL,
        role TEXT,
        created_at TEXT,
        UNIQUE (team_slug, user_login)
    )""",
    "outside_users": """CREATE TABLE IF NOT EXISTS outside_users (
        id INTEGER PRIMARY KEY,
        login TEXT NOT NULL UNIQUE,
        name TEXT,
        email TEXT,
        company TEXT,
        location TEXT,
        created_at TEXT,
        updated_at TEXT
    )""",
    "token_permissions": """CREATE TABLE IF NOT EXISTS token_permissions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scopes TEXT,
        x_oauth_scopes TEXT,
        x_accepted_oauth_scopes TEXT,
        x_accepted_github_permissions TEXT,
        x_github_media_type TEXT,
        x_ratelimit_limit INTEGER,
        x_ratelimit_remaining INTEGER,
        x_ratelimit_reset INTEGER,
        created_at TEXT,
        updated_at TEXT
    )""",
    "sync_runs": """CREATE TABLE IF NOT EXISTS sync_runs (
        id TEXT PRIMARY KEY,
        target TEXT NOT NULL,
        session_key TEXT,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        records INTEGER DEFAULT 0,
        error_message TEXT
    )""",
}

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_repo_users_repo_name ON repo_users (repo_name)",
    "CREATE INDEX IF NOT EXISTS idx_repo_teams_repo_name ON repo_teams (repo_name)",
    "CREATE INDEX IF NOT EXISTS idx_team_users_team_slug ON team_users (team_slug)",
    "CREATE INDEX IF NOT EXISTS idx_team_users_user_login ON team_users (user_login)",
    "CREATE INDEX IF NOT EXISTS idx_repo_users_user_login ON repo_users (user_login)",
)

# Columns a scoped replace may filter on, per table.
SCOPE_COLUMNS: dict[str, str] = {
    "repo_users": "repo_name",
    "repo_teams": "repo_name",
    "team_users": "team_slug",
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _check_table(table: str) -> None:
    if table not in SCHEMA:
        raise ValueError(f"unknown table: {table}")


class Database:
    """Thin wrapper around one SQLite connection with replace/upsert helpers.

    The connection runs in autocommit mode; ``transaction()`` issues explicit
    BEGIN/COMMIT/ROLLBACK so every replace is all-or-nothing.
    """

    def __init__(self, path: str) -> None:
        if path != ":memory:":
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
        self.path = path
        self._conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self.create_tables()

    def close(self) -> None:
        self._conn.close()

    def create_tables(self) -> None:
        cur = self._conn.cursor()
        try:
            for ddl in SCHEMA.values():
                cur.execute(ddl)
            for ddl in INDEXES:
                cur.execute(ddl)
        finally:
            cur.close()

    @contextmanager
    def cursor(self) -> Generator:
        cur = self._conn.cursor()
        try:
            yield cur
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Generator:
        """Yield a cursor inside a BEGIN ... COMMIT block, rolling back on error."""
        cur = self._conn.cursor()
        try:
            cur.execute("BEGIN")
            try:
                yield cur
                cur.execute("COMMIT")
            except BaseException:
                self._conn.rollback()
                raise
        finally:
            cur.close()

    def insert_or_replace_batch(
        self,
        cur,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        max_variables: int = SQLITE_MAX_VARIABLES,
    ) -> int:
        """Write rows with multi-row INSERT OR REPLACE statements.

        Each statement binds at most ``max_variables`` parameters. Everything is
        validated before the first statement runs. Returns the number of rows
        written.
        """
        _check_table(table)
        if not columns:
            raise ValueError(f"no columns given for {table}")
        column_count = len(columns)
        if column_count > max_variables:
            raise BatchSizeError(table, column_count, max_variables)
        for idx, row in enumerate(rows):
            if len(row) != column_count:
                raise ValueError(
                    f"row {idx} for {table} has {len(row)} values, expected {column_count}"
                )
        if not rows:
            return 0

        batch_size = max(1, max_variables // column_count)
        col_list = ", ".join(columns)
        placeholder = "(" + ", ".join("?" for _ in columns) + ")"

        written = 0
        for start in range(0, len(rows), batch_size):
            batch = rows[start : start + batch_size]
            sql = (
                f"INSERT OR REPLACE INTO {table} ({col_list}) VALUES "
                + ", ".join(placeholder for _ in batch)
            )
            params = [value for row in batch for value in row]
            logger.debug("SQL: %s rows=%d", sql[:120], len(batch))
            cur.execute(sql, params)
            written += len(batch)
        return written

    def clear_table(self, cur, table: str) -> int:
        _check_table(table)
        logger.debug("SQL: DELETE FROM %s", table)
        cur.execute(f"DELETE FROM {table}")
        return cur.rowcount

    def delete_scope(self, cur, table: str, value: str) -> int:
        """Delete the rows of a relation table that belong to one repo or team."""
        column = SCOPE_COLUMNS.get(table)
        if column is None:
            raise ValueError(f"table {table} has no scope column")
        logger.debug("SQL: DELETE FROM %s WHERE %s = ? ARGS: [%s]", table, column, value)
        cur.execute(f"DELETE FROM {table} WHERE {column} = ?", (value,))
        return cur.rowcount

    # ------------------------------------------------------------------
    # Reads used by the sync drivers
    # ------------------------------------------------------------------

    def list_repository_names(self) -> list[str]:
        with self.cursor() as cur:
            cur.execute("SELECT name FROM repositories ORDER BY name")
            return [row[0] for row in cur.fetchall()]

    def list_team_slugs(self) -> list[str]:
        with self.cursor() as cur:
            cur.execute("SELECT slug FROM teams ORDER BY slug")
            return [row[0] for row in cur.fetchall()]

    def team_id_for_slug(self, cur, slug: str) -> Optional[int]:
        cur.execute("SELECT id FROM teams WHERE slug = ?", (slug,))
        row = cur.fetchone()
        return row[0] if row else None

    def count_rows(self, table: str, where: str = "", params: Sequence[Any] = ()) -> int:
        _check_table(table)
        with self.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {table} {where}", tuple(params))
            return cur.fetchone()[0]

    def fetch_user_access_rows(
        self, login: str
    ) -> tuple[list[tuple[str, str]], list[tuple[str, str, str, str]]]:
        """Return (direct, team-derived) repository access rows for a user."""
        with self.cursor() as cur:
            cur.execute(
                """SELECT repo_name, COALESCE(permission, '')
                   FROM repo_users WHERE user_login = ?""",
                (login,),
            )
            direct = [(r[0], r[1]) for r in cur.fetchall()]
            cur.execute(
                """SELECT rt.repo_name, rt.team_slug, COALESCE(rt.team_name, ''),
                          COALESCE(rt.permission, '')
                   FROM team_users tu
                   JOIN repo_teams rt ON rt.team_slug = tu.team_slug
                   WHERE tu.user_login = ?""",
                (login,),
            )
            team = [(r[0], r[1], r[2], r[3]) for r in cur.fetchall()]
        return direct, team

    # ------------------------------------------------------------------
    # Sync run tracking
    # ------------------------------------------------------------------

    def record_run_start(self, target: str, session_key: Optional[str] = None) -> str:
        """Insert a sync_runs row with status RUNNING. Returns the run id."""
        run_id = str(uuid.uuid4())
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO sync_runs (id, target, session_key, status, started_at)
                   VALUES (?, ?, ?, 'RUNNING', ?)""",
                (run_id, target, session_key, utc_now()),
            )
        return run_id

    def record_run_end(
        self,
        run_id: str,
        status: str,
        records: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        with self.transaction() as cur:
            cur.execute(
                """UPDATE sync_runs
                   SET status = ?, finished_at = ?, records = ?, error_message = ?
                   WHERE id = ?""",
                (status, utc_now(), records, error_message, run_id),
            )

    def get_recent_runs(self, target: Optional[str] = None, limit: int = 10) -> list[dict[str, Any]]:
        with self.cursor() as cur:
            if target:
                cur.execute(
                    """SELECT id, target, session_key, status, started_at, finished_at,
                              records, error_message
                       FROM sync_runs WHERE target = ?
                       ORDER BY started_at DESC LIMIT ?""",
                    (target, limit),
                )
            else:
                cur.execute(
                    """SELECT id, target, session_key, status, started_at, finished_at,
                              records, error_message
                       FROM sync_runs
                       ORDER BY started_at DESC LIMIT ?""",
                    (limit,),
                )
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, row)) for row in cur.fetchall()]
