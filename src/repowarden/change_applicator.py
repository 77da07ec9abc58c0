from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path, PurePosixPath

from repowarden.models import FILE_ACTIONS, FileChange
from repowarden.observability import log_event


LOGGER = logging.getLogger("repowarden.change_applicator")


class PathValidationError(ValueError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Invalid change path {path!r}: {reason}")
        self.path = path
        self.reason = reason


@dataclass(frozen=True)
class ApplyResult:
    success: bool
    applied: tuple[str, ...]
    rolled_back: tuple[str, ...] = ()
    failed_path: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class _Snapshot:
    target: Path
    rel_path: str
    previous: bytes | None
    created_dirs: tuple[Path, ...]


class ChangeApplicator:
    """Applies a batch of file changes to a worktree as a single unit.

    Every path is validated before anything is touched. During application each
    change is preceded by a snapshot, and a failure restores the snapshots in
    reverse order so the tree ends up exactly as it started.
    """

    def __init__(self, root: Path) -> None:
        self._root = root.resolve()

    @property
    def root(self) -> Path:
        return self._root

    def validate(self, changes: tuple[FileChange, ...]) -> None:
        for change in changes:
            self._validate_change(change)

    def apply(self, changes: tuple[FileChange, ...]) -> ApplyResult:
        try:
            self.validate(changes)
        except PathValidationError as exc:
            log_event(
                LOGGER,
                "change_batch_rejected",
                path=exc.path,
                reason=exc.reason,
                change_count=len(changes),
            )
            return ApplyResult(success=False, applied=(), failed_path=exc.path, error=str(exc))

        snapshots: list[_Snapshot] = []
        for change in changes:
            target = self._target(change.path)
            try:
                snapshot = _take_snapshot(target, change.path, root=self._root)
                snapshots.append(snapshot)
                _apply_one(target, change)
            except Exception as exc:  # noqa: BLE001
                rolled_back = self._rollback(snapshots)
                log_event(
                    LOGGER,
                    "change_batch_rolled_back",
                    failed_path=change.path,
                    error_type=type(exc).__name__,
                    rolled_back_count=len(rolled_back),
                )
                return ApplyResult(
                    success=False,
                    applied=tuple(item.rel_path for item in snapshots[:-1]),
                    rolled_back=rolled_back,
                    failed_path=change.path,
                    error=f"{type(exc).__name__}: {exc}",
                )

        log_event(LOGGER, "change_batch_applied", change_count=len(changes))
        return ApplyResult(success=True, applied=tuple(change.path for change in changes))

    def _validate_change(self, change: FileChange) -> None:
        path = change.path
        if not path or not path.strip():
            raise PathValidationError(path, "path is empty")
        if "\x00" in path:
            raise PathValidationError(path, "path contains a NUL byte")
        posix = PurePosixPath(path.replace("\\", "/"))
        if posix.is_absolute() or os.path.isabs(path):
            raise PathValidationError(path, "path must be relative")
        if ".." in posix.parts:
            raise PathValidationError(path, "path must not contain '..'")
        if posix.parts and posix.parts[0] == ".git":
            raise PathValidationError(path, "path must not point into .git")
        resolved = (self._root / posix).resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise PathValidationError(path, "path resolves outside the worktree")
        if resolved == self._root:
            raise PathValidationError(path, "path must name a file")
        if change.action not in FILE_ACTIONS:
            raise PathValidationError(path, f"unknown action {change.action!r}")
        if change.action in ("create", "edit") and change.content is None:
            raise PathValidationError(path, f"{change.action} requires content")
        if change.content is not None:
            try:
                change.content.encode("utf-8")
            except UnicodeEncodeError:
                raise PathValidationError(path, "content is not valid UTF-8") from None

    def _target(self, path: str) -> Path:
        return self._root / PurePosixPath(path.replace("\\", "/"))

    def _rollback(self, snapshots: list[_Snapshot]) -> tuple[str, ...]:
        restored: list[str] = []
        for snapshot in reversed(snapshots):
            if snapshot.previous is None:
                if snapshot.target.is_file() or snapshot.target.is_symlink():
                    snapshot.target.unlink()
            else:
                snapshot.target.parent.mkdir(parents=True, exist_ok=True)
                snapshot.target.write_bytes(snapshot.previous)
            for directory in reversed(snapshot.created_dirs):
                if directory.is_dir() and not any(directory.iterdir()):
                    directory.rmdir()
            restored.append(snapshot.rel_path)
        return tuple(restored)


def _take_snapshot(target: Path, rel_path: str, *, root: Path) -> _Snapshot:
    previous = target.read_bytes() if target.is_file() else None
    missing: list[Path] = []
    parent = target.parent
    while parent != root and not parent.exists():
        missing.append(parent)
        parent = parent.parent
    missing.reverse()
    return _Snapshot(
        target=target,
        rel_path=rel_path,
        previous=previous,
        created_dirs=tuple(missing),
    )


def _apply_one(target: Path, change: FileChange) -> None:
    data = (change.content or "").encode("utf-8")
    if change.action == "create":
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return
    if not target.is_file():
        raise FileNotFoundError(f"{change.action} target does not exist: {change.path}")
    if change.action == "edit":
        target.write_bytes(data)
        return
    target.unlink()
