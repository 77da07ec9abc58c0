from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Literal

from repowarden.git_ops import GitRepository, is_push_rejection
from repowarden.models import FileChange
from repowarden.observability import log_event
from repowarden.shell import CommandError


LOGGER = logging.getLogger("repowarden.sync_client")

SyncStatus = Literal["nothing_to_sync", "committed", "pushed", "push_rejected"]


@dataclass(frozen=True)
class SyncResult:
    status: SyncStatus
    commit_sha: str | None
    message: str
    detail: str = ""

    @property
    def has_commit(self) -> bool:
        return self.commit_sha is not None


class SyncClient:
    def __init__(self, git: GitRepository) -> None:
        self._git = git

    def sync(
        self,
        *,
        worktree: Path,
        branch: str,
        message_prefix: str,
        summary: str,
        changes: tuple[FileChange, ...] = (),
        requested_by: str | None = None,
    ) -> SyncResult:
        committed = self.commit(
            worktree=worktree,
            message_prefix=message_prefix,
            summary=summary,
            changes=changes,
            requested_by=requested_by,
        )
        if committed.status == "nothing_to_sync":
            return committed
        pushed = self.push(worktree=worktree, branch=branch)
        if pushed.status == "push_rejected":
            return SyncResult(
                status="push_rejected",
                commit_sha=committed.commit_sha,
                message=committed.message,
                detail=pushed.detail,
            )
        return SyncResult(
            status="pushed",
            commit_sha=committed.commit_sha,
            message=committed.message,
        )

    def commit(
        self,
        *,
        worktree: Path,
        message_prefix: str,
        summary: str,
        changes: tuple[FileChange, ...] = (),
        requested_by: str | None = None,
    ) -> SyncResult:
        dirty = self._git.status_porcelain(worktree)
        if not dirty:
            log_event(LOGGER, "sync_nothing_to_sync", worktree=str(worktree))
            return SyncResult(status="nothing_to_sync", commit_sha=None, message="")

        message = build_commit_message(
            prefix=message_prefix,
            summary=summary,
            changes=changes,
            paths=dirty,
            requested_by=requested_by,
        )
        self._git.stage_all(worktree)
        sha = self._git.commit(worktree, message)
        log_event(
            LOGGER,
            "sync_committed",
            worktree=str(worktree),
            commit_sha=sha,
            file_count=len(changes) or len(dirty),
        )
        return SyncResult(status="committed", commit_sha=sha, message=message)

    def push(self, *, worktree: Path, branch: str) -> SyncResult:
        try:
            self._git.push_branch(worktree, branch)
        except CommandError as exc:
            if not is_push_rejection(exc):
                raise
            sha = self._git.current_head_sha(worktree)
            log_event(LOGGER, "sync_push_rejected", branch=branch, commit_sha=sha)
            return SyncResult(
                status="push_rejected",
                commit_sha=sha,
                message="",
                detail=(exc.stderr or exc.stdout).strip(),
            )
        sha = self._git.current_head_sha(worktree)
        log_event(LOGGER, "sync_pushed", branch=branch, commit_sha=sha)
        return SyncResult(status="pushed", commit_sha=sha, message="")


def build_commit_message(
    *,
    prefix: str,
    summary: str,
    changes: tuple[FileChange, ...] = (),
    paths: tuple[str, ...] = (),
    requested_by: str | None = None,
) -> str:
    subject_summary = " ".join(summary.split()) or "update files"
    lines = [f"{prefix}: {subject_summary}"]

    body: list[str] = []
    if changes:
        for change in changes:
            description = " ".join(change.description.split()) or change.action
            body.append(f"- {change.path}: {description}")
    else:
        body.extend(f"- {path}" for path in paths)
    if body:
        lines.append("")
        lines.extend(body)

    login = (requested_by or "").strip().lstrip("@")
    if login:
        lines.append("")
        lines.append(f"Co-authored-by: {login} <{login}@users.noreply.github.com>")
    return "\n".join(lines) + "\n"
