from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import json
import logging
from pathlib import Path
import sys
import time
from typing import Callable, NoReturn, cast

from packaging.version import InvalidVersion, Version

from repowarden import __version__
from repowarden.atomic_file import atomic_write_json
from repowarden.audit_log import AuditLog
from repowarden.config import AutoUpdateConfig
from repowarden.models import UpdatePolicyName, WatchState
from repowarden.observability import log_event, log_warning_event
from repowarden.shell import CommandError, run


LOGGER = logging.getLogger("repowarden.self_update")

UPDATE_EXIT_CODE = 75
CHECKPOINT_FILENAME = "watch_checkpoint.json"
SEQUENCE_FILENAME = "sequence.json"
FAILURE_TRACKER_FILENAME = "auto_update_failures.json"


class CheckpointError(ValueError):
    pass


class UpdateError(RuntimeError):
    pass


class UpdateLoopError(UpdateError):
    """Too many consecutive update failures; an operator must reset the tracker."""


class UpdateExitRequested(Exception):
    def __init__(self, checkpoint: Checkpoint, *, exit_code: int = UPDATE_EXIT_CODE) -> None:
        super().__init__(
            f"self-update requested (checkpoint {checkpoint.checkpoint_id}, exit {exit_code})"
        )
        self.checkpoint = checkpoint
        self.exit_code = exit_code


@dataclass(frozen=True)
class UpdatePolicy:
    name: UpdatePolicyName
    pinned_version: str | None = None
    allow_prerelease: bool = False

    @classmethod
    def from_config(cls, config: AutoUpdateConfig) -> UpdatePolicy:
        return cls(
            name=config.policy,
            pinned_version=config.pinned_version,
            allow_prerelease=config.allow_prerelease,
        )

    def permits(self, current: str, candidate: str) -> bool:
        if self.name == "off":
            return False
        try:
            current_version = Version(current)
            candidate_version = Version(candidate)
        except InvalidVersion:
            return False
        if candidate_version.is_prerelease and not self.allow_prerelease:
            return False
        if self.name == "exact":
            if self.pinned_version is None:
                return False
            try:
                pinned = Version(self.pinned_version)
            except InvalidVersion:
                return False
            return candidate_version == pinned and candidate_version != current_version
        if candidate_version <= current_version:
            return False
        if self.name == "patch":
            return (candidate_version.major, candidate_version.minor) == (
                current_version.major,
                current_version.minor,
            )
        if self.name == "minor":
            return candidate_version.major == current_version.major
        return True

    def select(self, current: str, available: Iterable[str]) -> str | None:
        permitted: list[Version] = []
        for candidate in available:
            if not self.permits(current, candidate):
                continue
            permitted.append(Version(candidate))
        if not permitted:
            return None
        return str(max(permitted))


class VersionSource(ABC):
    @abstractmethod
    def available_versions(self, package_name: str) -> tuple[str, ...]:
        """Return every published version of package_name."""


class PipIndexVersionSource(VersionSource):
    def __init__(self, python_executable: str | None = None) -> None:
        self._python = python_executable or sys.executable

    def available_versions(self, package_name: str) -> tuple[str, ...]:
        output = run(
            [self._python, "-m", "pip", "index", "versions", package_name],
            timeout_seconds=120,
        )
        return parse_pip_index_versions(output)


def parse_pip_index_versions(output: str) -> tuple[str, ...]:
    for line in output.splitlines():
        prefix, sep, rest = line.partition(":")
        if sep and prefix.strip().lower() == "available versions":
            return tuple(item.strip() for item in rest.split(",") if item.strip())
    return ()


@dataclass(frozen=True)
class Checkpoint:
    checkpoint_id: int
    created_at: str
    tool_version: str
    watch_state: WatchState
    metadata: dict[str, object] = field(default_factory=dict)
    checksum: str = ""

    def payload(self) -> dict[str, object]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "created_at": self.created_at,
            "tool_version": self.tool_version,
            "watch_state": self.watch_state.to_dict(),
            "metadata": self.metadata,
        }

    def to_dict(self) -> dict[str, object]:
        return {**self.payload(), "checksum": self.checksum}

    def with_checksum(self) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=self.checkpoint_id,
            created_at=self.created_at,
            tool_version=self.tool_version,
            watch_state=self.watch_state,
            metadata=self.metadata,
            checksum=compute_checksum(self.payload()),
        )

    def is_valid(self) -> bool:
        return bool(self.checksum) and self.checksum == compute_checksum(self.payload())

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> Checkpoint:
        checkpoint_id = payload.get("checkpoint_id")
        created_at = payload.get("created_at")
        tool_version = payload.get("tool_version")
        raw_state = payload.get("watch_state")
        metadata = payload.get("metadata", {})
        checksum = payload.get("checksum")
        if isinstance(checkpoint_id, bool) or not isinstance(checkpoint_id, int):
            raise CheckpointError("checkpoint_id must be an integer")
        if not isinstance(created_at, str) or not isinstance(tool_version, str):
            raise CheckpointError("created_at and tool_version must be strings")
        if not isinstance(raw_state, dict):
            raise CheckpointError("watch_state must be an object")
        if not isinstance(metadata, dict):
            raise CheckpointError("metadata must be an object")
        if not isinstance(checksum, str):
            raise CheckpointError("checksum must be a string")
        try:
            watch_state = WatchState.from_dict(cast(dict[str, object], raw_state))
        except ValueError as exc:
            raise CheckpointError(f"watch_state is invalid: {exc}") from exc
        return cls(
            checkpoint_id=checkpoint_id,
            created_at=created_at,
            tool_version=tool_version,
            watch_state=watch_state,
            metadata=cast(dict[str, object], metadata),
            checksum=checksum,
        )


def compute_checksum(payload: dict[str, object]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CheckpointStore:
    def __init__(self, base_dir: Path, *, now: Callable[[], str] | None = None) -> None:
        self._dir = base_dir / "checkpoints"
        self._now = now or _utc_now_iso8601

    @property
    def path(self) -> Path:
        return self._dir / CHECKPOINT_FILENAME

    @property
    def sequence_path(self) -> Path:
        return self._dir / SEQUENCE_FILENAME

    def exists(self) -> bool:
        return self.path.exists()

    def create(
        self,
        *,
        tool_version: str,
        watch_state: WatchState,
        metadata: dict[str, object] | None = None,
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            checkpoint_id=self._next_id(),
            created_at=self._now(),
            tool_version=tool_version,
            watch_state=watch_state,
            metadata=dict(metadata or {}),
        ).with_checksum()
        self.save(checkpoint)
        return checkpoint

    def save(self, checkpoint: Checkpoint) -> None:
        atomic_write_json(self.path, checkpoint.to_dict())

    def load(self) -> Checkpoint | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CheckpointError(f"checkpoint is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise CheckpointError("checkpoint must be a JSON object")
        return Checkpoint.from_dict(cast(dict[str, object], payload))

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)

    def _next_id(self) -> int:
        last = 0
        if self.sequence_path.exists():
            try:
                payload = json.loads(self.sequence_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                payload = {}
            value = payload.get("last_checkpoint_id") if isinstance(payload, dict) else None
            if isinstance(value, int) and not isinstance(value, bool):
                last = value
        next_id = last + 1
        atomic_write_json(self.sequence_path, {"last_checkpoint_id": next_id})
        return next_id


@dataclass(frozen=True)
class FailureStatus:
    consecutive_failures: int
    max_consecutive_failures: int
    last_success: str | None
    last_success_version: str | None
    last_failure_reason: str | None
    last_failure_at: str | None

    @property
    def too_many_failures(self) -> bool:
        return self.consecutive_failures >= self.max_consecutive_failures

    def to_dict(self) -> dict[str, object]:
        return {
            "consecutive_failures": self.consecutive_failures,
            "max_consecutive_failures": self.max_consecutive_failures,
            "last_success": self.last_success,
            "last_success_version": self.last_success_version,
            "last_failure_reason": self.last_failure_reason,
            "last_failure_at": self.last_failure_at,
            "too_many_failures": self.too_many_failures,
        }


class FailureTracker:
    """Counts consecutive failed update cycles across restarts."""

    def __init__(
        self,
        path: Path,
        *,
        max_consecutive_failures: int,
        now: Callable[[], str] | None = None,
    ) -> None:
        self._path = path
        self._max = max_consecutive_failures
        self._now = now or _utc_now_iso8601

    @property
    def path(self) -> Path:
        return self._path

    def record_failure(self, reason: str) -> int:
        status = self.status()
        count = status.consecutive_failures + 1
        self._save(
            FailureStatus(
                consecutive_failures=count,
                max_consecutive_failures=self._max,
                last_success=status.last_success,
                last_success_version=status.last_success_version,
                last_failure_reason=reason,
                last_failure_at=self._now(),
            )
        )
        log_warning_event(
            LOGGER,
            "auto_update_failure_recorded",
            consecutive_failures=count,
            max_consecutive_failures=self._max,
            reason=reason,
        )
        return count

    def reset_on_success(self, version: str) -> None:
        self._save(
            FailureStatus(
                consecutive_failures=0,
                max_consecutive_failures=self._max,
                last_success=self._now(),
                last_success_version=version,
                last_failure_reason=None,
                last_failure_at=None,
            )
        )

    def clear(self) -> None:
        status = self.status()
        self._save(
            FailureStatus(
                consecutive_failures=0,
                max_consecutive_failures=self._max,
                last_success=status.last_success,
                last_success_version=status.last_success_version,
                last_failure_reason=None,
                last_failure_at=None,
            )
        )

    def too_many_failures(self) -> bool:
        return self.status().too_many_failures

    def status(self) -> FailureStatus:
        payload = self._load()
        if payload is None:
            # Stays tripped until clear() rewrites the file.
            return FailureStatus(
                consecutive_failures=self._max,
                max_consecutive_failures=self._max,
                last_success=None,
                last_success_version=None,
                last_failure_reason="failure_tracker_unreadable",
                last_failure_at=None,
            )
        return FailureStatus(
            consecutive_failures=_int_field(payload, "consecutive_failures"),
            max_consecutive_failures=self._max,
            last_success=_str_field(payload, "last_success"),
            last_success_version=_str_field(payload, "last_success_version"),
            last_failure_reason=_str_field(payload, "last_failure_reason"),
            last_failure_at=_str_field(payload, "last_failure_at"),
        )

    def _load(self) -> dict[str, object] | None:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        if not isinstance(payload, dict):
            log_warning_event(LOGGER, "failure_tracker_unreadable", path=str(self._path))
            return None
        return cast(dict[str, object], payload)

    def _save(self, status: FailureStatus) -> None:
        payload = status.to_dict()
        payload.pop("too_many_failures")
        atomic_write_json(self._path, payload)


class SelfUpdateCheckpointer:
    """Brackets the poll loop with checkpoint restore and update checks."""

    def __init__(
        self,
        config: AutoUpdateConfig,
        *,
        base_dir: Path,
        audit: AuditLog,
        version_source: VersionSource | None = None,
        current_version: str = __version__,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._audit = audit
        self._policy = UpdatePolicy.from_config(config)
        self._version_source = version_source or PipIndexVersionSource()
        self._current_version = current_version
        self._clock = clock
        self._store = CheckpointStore(base_dir)
        self._tracker = FailureTracker(
            base_dir / FAILURE_TRACKER_FILENAME,
            max_consecutive_failures=config.max_consecutive_failures,
        )
        self._last_check: float | None = None
        self._disabled_reported = False

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def tracker(self) -> FailureTracker:
        return self._tracker

    @property
    def current_version(self) -> str:
        return self._current_version

    def restore_on_startup(self) -> WatchState | None:
        if not self._store.exists():
            return None
        try:
            checkpoint = self._store.load()
        except CheckpointError as exc:
            self._discard(reason=f"malformed: {exc}", checkpoint_id=None)
            return None
        if checkpoint is None:
            return None
        if not checkpoint.is_valid():
            self._discard(reason="checksum_mismatch", checkpoint_id=checkpoint.checkpoint_id)
            return None
        if not _version_compatible(self._current_version, checkpoint.tool_version):
            self._discard(
                reason=(
                    f"incompatible_version: checkpoint {checkpoint.tool_version}, "
                    f"running {self._current_version}"
                ),
                checkpoint_id=checkpoint.checkpoint_id,
            )
            return None

        self._store.delete()
        self._audit.record(
            "restore",
            valid=True,
            checkpoint_id=checkpoint.checkpoint_id,
            checkpoint_version=checkpoint.tool_version,
            running_version=self._current_version,
        )
        log_event(
            LOGGER,
            "checkpoint_restored",
            checkpoint_id=checkpoint.checkpoint_id,
            checkpoint_version=checkpoint.tool_version,
            running_version=self._current_version,
        )

        target = checkpoint.metadata.get("target_version")
        if isinstance(target, str) and not _version_reached(self._current_version, target):
            self._tracker.record_failure("update_not_applied")
            self._audit.record(
                "failure",
                reason="update_not_applied",
                target_version=target,
                running_version=self._current_version,
            )
        else:
            self._tracker.reset_on_success(self._current_version)
            self._audit.record(
                "success",
                previous_version=checkpoint.tool_version,
                running_version=self._current_version,
            )
        return checkpoint.watch_state

    def maybe_update(self, watch_state: WatchState, *, busy: bool) -> None:
        if not self._config.enabled or self._policy.name == "off":
            return
        now = self._clock()
        if (
            self._last_check is not None
            and now - self._last_check < self._config.check_interval_seconds
        ):
            return
        self._last_check = now

        if self._tracker.too_many_failures():
            if not self._disabled_reported:
                status = self._tracker.status()
                self._audit.record(
                    "auto_update_disabled",
                    consecutive_failures=status.consecutive_failures,
                    max_consecutive_failures=status.max_consecutive_failures,
                )
                log_warning_event(
                    LOGGER,
                    "auto_update_disabled",
                    consecutive_failures=status.consecutive_failures,
                )
                self._disabled_reported = True
            return

        try:
            available = self._version_source.available_versions(self._config.package_name)
        except (CommandError, OSError) as exc:
            self._audit.record(
                "check",
                current_version=self._current_version,
                error=f"{type(exc).__name__}: {exc}",
            )
            log_warning_event(LOGGER, "self_update_check_failed", error_type=type(exc).__name__)
            return

        candidate = self._policy.select(self._current_version, available)
        self._audit.record(
            "check",
            current_version=self._current_version,
            candidate_version=candidate,
            policy=self._policy.name,
            busy=busy,
        )
        if candidate is None:
            return
        if busy:
            log_event(
                LOGGER,
                "self_update_deferred",
                candidate_version=candidate,
                reason="builds_running",
            )
            return
        self.initiate_update(watch_state, target_version=candidate)

    def initiate_update(self, watch_state: WatchState, *, target_version: str) -> NoReturn:
        if not self._config.enabled:
            raise UpdateError("Auto-update is disabled")
        if self._config.supervisor is None:
            raise UpdateError("Auto-update requires a supervisor to restart the process")
        if self._tracker.too_many_failures():
            status = self._tracker.status()
            raise UpdateLoopError(
                "Auto-update disabled after "
                f"{status.consecutive_failures} consecutive failures; reset it with "
                "`repowarden auto-update reset`"
            )
        try:
            checkpoint = self._store.create(
                tool_version=self._current_version,
                watch_state=watch_state,
                metadata={
                    "target_version": target_version,
                    "policy": self._policy.name,
                    "supervisor": self._config.supervisor,
                },
            )
        except OSError as exc:
            self._tracker.record_failure(f"checkpoint_write_failed: {exc}")
            self._audit.record(
                "failure",
                reason="checkpoint_write_failed",
                error=f"{type(exc).__name__}: {exc}",
            )
            raise UpdateError(f"Could not write update checkpoint: {exc}") from exc

        self._audit.record(
            "update_initiated",
            checkpoint_id=checkpoint.checkpoint_id,
            from_version=self._current_version,
            target_version=target_version,
            supervisor=self._config.supervisor,
        )
        log_event(
            LOGGER,
            "self_update_initiated",
            checkpoint_id=checkpoint.checkpoint_id,
            from_version=self._current_version,
            target_version=target_version,
        )
        raise UpdateExitRequested(checkpoint)

    def reset_failures(self, *, actor: str) -> None:
        previous = self._tracker.status()
        self._tracker.clear()
        self._disabled_reported = False
        self._audit.record(
            "failure_tracker_reset",
            actor=actor,
            previous_failures=previous.consecutive_failures,
        )

    def status(self) -> dict[str, object]:
        return {
            "enabled": self._config.enabled,
            "policy": self._policy.name,
            "current_version": self._current_version,
            "supervisor": self._config.supervisor,
            "checkpoint_pending": self._store.exists(),
            "failures": self._tracker.status().to_dict(),
        }

    def _discard(self, *, reason: str, checkpoint_id: int | None) -> None:
        self._store.delete()
        self._tracker.record_failure(f"checkpoint_invalid: {reason}")
        self._audit.record("restore", valid=False, checkpoint_id=checkpoint_id, reason=reason)
        log_warning_event(
            LOGGER,
            "checkpoint_discarded",
            checkpoint_id=checkpoint_id,
            reason=reason,
        )


def _version_compatible(running: str, checkpoint_version: str) -> bool:
    try:
        return Version(running) >= Version(checkpoint_version)
    except InvalidVersion:
        return False


def _version_reached(running: str, target: str) -> bool:
    try:
        return Version(running) >= Version(target)
    except InvalidVersion:
        return False


def _int_field(payload: dict[str, object], key: str) -> int:
    value = payload.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


def _str_field(payload: dict[str, object], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
