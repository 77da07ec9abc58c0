from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
import sqlite3
import threading
from typing import cast

from repowarden.models import BUILD_STATUSES, BuildState, BuildStatus, IssueCursor


@dataclass(frozen=True)
class BuildRunRecord:
    repo_full_name: str
    issue_number: int
    branch: str
    status: BuildStatus
    commit_sha: str | None
    started_at: str
    pr_number: int | None
    pr_url: str | None
    detail: str | None
    updated_at: str

    def as_build_state(self) -> BuildState:
        return BuildState(
            issue_number=self.issue_number,
            branch=self.branch,
            status=self.status,
            commit_sha=self.commit_sha,
            started_at=self.started_at,
        )


class StateStore:
    """Local cache of processed events, retry counts, build runs and cursors.

    Everything here can be rebuilt from GitHub; losing the file only costs a
    round of re-reads and resets retry budgets.
    """

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_events (
                    repo_full_name TEXT NOT NULL,
                    event_key TEXT NOT NULL,
                    issue_number INTEGER NOT NULL,
                    label TEXT NOT NULL,
                    route TEXT NOT NULL,
                    processed_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, event_key)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS event_attempts (
                    repo_full_name TEXT NOT NULL,
                    event_key TEXT NOT NULL,
                    issue_number INTEGER NOT NULL,
                    failures INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, event_key)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS build_runs (
                    repo_full_name TEXT NOT NULL,
                    issue_number INTEGER NOT NULL,
                    branch TEXT NOT NULL,
                    status TEXT NOT NULL,
                    commit_sha TEXT,
                    started_at TEXT NOT NULL,
                    pr_number INTEGER,
                    pr_url TEXT,
                    detail TEXT,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, issue_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issue_cursors (
                    repo_full_name TEXT NOT NULL,
                    issue_number INTEGER NOT NULL,
                    last_comment_at TEXT,
                    last_event_key TEXT,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, issue_number)
                )
                """
            )

    def is_processed(self, event_key: str, *, repo_full_name: str) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1
                FROM processed_events
                WHERE repo_full_name = ? AND event_key = ?
                """,
                (repo_full_name, event_key),
            ).fetchone()
        return row is not None

    def mark_processed(
        self,
        event_key: str,
        *,
        repo_full_name: str,
        issue_number: int,
        label: str,
        route: str,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO processed_events(repo_full_name, event_key, issue_number, label, route)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(repo_full_name, event_key) DO NOTHING
                """,
                (repo_full_name, event_key, issue_number, label, route),
            )
            conn.execute(
                """
                DELETE FROM event_attempts
                WHERE repo_full_name = ? AND event_key = ?
                """,
                (repo_full_name, event_key),
            )

    def failure_count(self, event_key: str, *, repo_full_name: str) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT failures
                FROM event_attempts
                WHERE repo_full_name = ? AND event_key = ?
                """,
                (repo_full_name, event_key),
            ).fetchone()
        if row is None:
            return 0
        return int(row[0])

    def record_failure(
        self,
        event_key: str,
        *,
        repo_full_name: str,
        issue_number: int,
        error: str,
    ) -> int:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO event_attempts(repo_full_name, event_key, issue_number, failures, last_error)
                VALUES(?, ?, ?, 1, ?)
                ON CONFLICT(repo_full_name, event_key) DO UPDATE SET
                    failures=event_attempts.failures + 1,
                    last_error=excluded.last_error,
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (repo_full_name, event_key, issue_number, error),
            )
            row = conn.execute(
                """
                SELECT failures
                FROM event_attempts
                WHERE repo_full_name = ? AND event_key = ?
                """,
                (repo_full_name, event_key),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def save_build_run(
        self,
        state: BuildState,
        *,
        repo_full_name: str,
        pr_number: int | None = None,
        pr_url: str | None = None,
        detail: str | None = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO build_runs(
                    repo_full_name,
                    issue_number,
                    branch,
                    status,
                    commit_sha,
                    started_at,
                    pr_number,
                    pr_url,
                    detail
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_full_name, issue_number) DO UPDATE SET
                    branch=excluded.branch,
                    status=excluded.status,
                    commit_sha=excluded.commit_sha,
                    started_at=excluded.started_at,
                    pr_number=COALESCE(excluded.pr_number, build_runs.pr_number),
                    pr_url=COALESCE(excluded.pr_url, build_runs.pr_url),
                    detail=excluded.detail,
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (
                    repo_full_name,
                    state.issue_number,
                    state.branch,
                    state.status,
                    state.commit_sha,
                    state.started_at,
                    pr_number,
                    pr_url,
                    detail,
                ),
            )

    def get_build_run(self, issue_number: int, *, repo_full_name: str) -> BuildRunRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_BUILD_RUN_COLUMNS}
                FROM build_runs
                WHERE repo_full_name = ? AND issue_number = ?
                """,
                (repo_full_name, issue_number),
            ).fetchone()
        if row is None:
            return None
        return _parse_build_run_row(row)

    def list_build_runs(self, *, repo_full_name: str | None = None) -> tuple[BuildRunRecord, ...]:
        with self._lock, self._connect() as conn:
            if repo_full_name is None:
                rows = conn.execute(
                    f"""
                    SELECT {_BUILD_RUN_COLUMNS}
                    FROM build_runs
                    ORDER BY updated_at DESC, repo_full_name ASC, issue_number ASC
                    """
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT {_BUILD_RUN_COLUMNS}
                    FROM build_runs
                    WHERE repo_full_name = ?
                    ORDER BY updated_at DESC, issue_number ASC
                    """,
                    (repo_full_name,),
                ).fetchall()
        return tuple(_parse_build_run_row(row) for row in rows)

    def save_cursor(self, cursor: IssueCursor, *, repo_full_name: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO issue_cursors(repo_full_name, issue_number, last_comment_at, last_event_key)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(repo_full_name, issue_number) DO UPDATE SET
                    last_comment_at=COALESCE(excluded.last_comment_at, issue_cursors.last_comment_at),
                    last_event_key=COALESCE(excluded.last_event_key, issue_cursors.last_event_key),
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (
                    repo_full_name,
                    cursor.issue_number,
                    cursor.last_comment_at,
                    cursor.last_event_key,
                ),
            )

    def list_cursors(self, *, repo_full_name: str) -> tuple[IssueCursor, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT issue_number, last_comment_at, last_event_key
                FROM issue_cursors
                WHERE repo_full_name = ?
                ORDER BY issue_number ASC
                """,
                (repo_full_name,),
            ).fetchall()
        return tuple(
            IssueCursor(
                issue_number=int(issue_number),
                last_comment_at=str(last_comment_at) if isinstance(last_comment_at, str) else None,
                last_event_key=str(last_event_key) if isinstance(last_event_key, str) else None,
            )
            for issue_number, last_comment_at, last_event_key in rows
        )


_BUILD_RUN_COLUMNS = (
    "repo_full_name, issue_number, branch, status, commit_sha, started_at, "
    "pr_number, pr_url, detail, updated_at"
)


def _parse_build_run_row(row: tuple[object, ...]) -> BuildRunRecord:
    (
        repo_full_name,
        issue_number,
        branch,
        status,
        commit_sha,
        started_at,
        pr_number,
        pr_url,
        detail,
        updated_at,
    ) = row
    status_value = str(status)
    if status_value not in BUILD_STATUSES:
        raise RuntimeError(f"Invalid build status in state DB: {status_value!r}")
    return BuildRunRecord(
        repo_full_name=str(repo_full_name),
        issue_number=int(cast(int, issue_number)),
        branch=str(branch),
        status=cast(BuildStatus, status_value),
        commit_sha=str(commit_sha) if isinstance(commit_sha, str) else None,
        started_at=str(started_at),
        pr_number=int(pr_number) if isinstance(pr_number, int) else None,
        pr_url=str(pr_url) if isinstance(pr_url, str) else None,
        detail=str(detail) if isinstance(detail, str) else None,
        updated_at=str(updated_at),
    )
