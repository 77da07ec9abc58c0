from __future__ import annotations

import json
from pathlib import Path

import pytest
from hypothesis import given, strategies as st

from repowarden.audit_log import AuditLog
from repowarden.config import AutoUpdateConfig
from repowarden.models import IssueCursor, WatchState
from repowarden.self_update import (
    UPDATE_EXIT_CODE,
    Checkpoint,
    CheckpointError,
    CheckpointStore,
    FailureTracker,
    PipIndexVersionSource,
    SelfUpdateCheckpointer,
    UpdateError,
    UpdateExitRequested,
    UpdateLoopError,
    UpdatePolicy,
    VersionSource,
    parse_pip_index_versions,
)
from repowarden.shell import CommandError


def _watch_state() -> WatchState:
    return WatchState(
        repo="acme/widgets",
        poll_interval_seconds=45,
        provider="claude",
        cursors=(
            IssueCursor(issue_number=3, last_comment_at="2026-01-01T00:00:00Z", last_event_key="k3"),
            IssueCursor(issue_number=8, last_comment_at=None, last_event_key=None),
        ),
    )


class FakeVersionSource(VersionSource):
    def __init__(self, versions: tuple[str, ...] = ("1.0.0", "1.0.1", "1.1.0", "2.0.0")) -> None:
        self.versions = versions
        self.calls = 0
        self.error: Exception | None = None

    def available_versions(self, package_name: str) -> tuple[str, ...]:
        assert package_name == "repowarden"
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.versions


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _config(**overrides: object) -> AutoUpdateConfig:
    values: dict[str, object] = {
        "enabled": True,
        "policy": "minor",
        "supervisor": "systemd",
        "check_interval_seconds": 600,
        "max_consecutive_failures": 3,
    }
    values.update(overrides)
    return AutoUpdateConfig(**values)  # type: ignore[arg-type]


def _checkpointer(
    tmp_path: Path,
    *,
    current_version: str = "1.0.0",
    source: FakeVersionSource | None = None,
    clock: FakeClock | None = None,
    **overrides: object,
) -> SelfUpdateCheckpointer:
    return SelfUpdateCheckpointer(
        _config(**overrides),
        base_dir=tmp_path,
        audit=AuditLog(tmp_path / "audit.jsonl"),
        version_source=source or FakeVersionSource(),
        current_version=current_version,
        clock=clock or FakeClock(),
    )


def _audit_events(tmp_path: Path) -> list[str]:
    return [record.event for record in AuditLog(tmp_path / "audit.jsonl").read_recent(1000)]


@pytest.mark.parametrize(
    "policy,pinned,prerelease,current,candidate,expected",
    [
        ("off", None, False, "1.0.0", "1.0.1", False),
        ("patch", None, False, "1.0.0", "1.0.5", True),
        ("patch", None, False, "1.0.0", "1.1.0", False),
        ("minor", None, False, "1.0.0", "1.4.0", True),
        ("minor", None, False, "1.0.0", "2.0.0", False),
        ("major", None, False, "1.0.0", "3.0.0", True),
        ("major", None, False, "1.0.0", "1.0.0", False),
        ("major", None, False, "1.0.0", "0.9.0", False),
        ("minor", None, False, "1.0.0", "1.1.0rc1", False),
        ("minor", None, True, "1.0.0", "1.1.0rc1", True),
        ("exact", "1.2.0", False, "1.0.0", "1.2.0", True),
        ("exact", "1.2.0", False, "1.3.0", "1.2.0", True),
        ("exact", "1.2.0", False, "1.0.0", "1.3.0", False),
        ("exact", "1.2.0", False, "1.2.0", "1.2.0", False),
        ("exact", None, False, "1.0.0", "1.2.0", False),
        ("minor", None, False, "1.0.0", "not-a-version", False),
    ],
)
def test_update_policy_permits(
    policy: str,
    pinned: str | None,
    prerelease: bool,
    current: str,
    candidate: str,
    expected: bool,
) -> None:
    rule = UpdatePolicy(name=policy, pinned_version=pinned, allow_prerelease=prerelease)  # type: ignore[arg-type]
    assert rule.permits(current, candidate) is expected


def test_update_policy_selects_highest_permitted() -> None:
    versions = ("0.9.0", "1.0.1", "1.2.0", "1.10.0", "2.0.0", "1.11.0b1")
    assert UpdatePolicy(name="minor").select("1.0.0", versions) == "1.10.0"
    assert UpdatePolicy(name="patch").select("1.0.0", versions) == "1.0.1"
    assert UpdatePolicy(name="patch").select("1.2.0", versions) is None


def test_parse_pip_index_versions(monkeypatch: pytest.MonkeyPatch) -> None:
    output = "repowarden (1.2.0)\nAvailable versions: 1.2.0, 1.1.0, 1.0.0\n  INSTALLED: 1.0.0\n"
    assert parse_pip_index_versions(output) == ("1.2.0", "1.1.0", "1.0.0")
    assert parse_pip_index_versions("ERROR: No matching distribution") == ()

    seen: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        seen.append(cmd)
        return output

    monkeypatch.setattr("repowarden.self_update.run", fake_run)
    source = PipIndexVersionSource(python_executable="/venv/bin/python")

    assert source.available_versions("repowarden") == ("1.2.0", "1.1.0", "1.0.0")
    assert seen == [["/venv/bin/python", "-m", "pip", "index", "versions", "repowarden"]]


def test_checkpoint_round_trip_preserves_watch_state(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path, now=lambda: "2026-06-01T00:00:00Z")

    created = store.create(
        tool_version="1.0.0", watch_state=_watch_state(), metadata={"target_version": "1.1.0"}
    )
    loaded = store.load()

    assert loaded == created
    assert loaded is not None and loaded.is_valid()
    assert loaded.watch_state == _watch_state()
    assert loaded.checkpoint_id == 1
    assert store.create(tool_version="1.0.0", watch_state=_watch_state()).checkpoint_id == 2


def test_checksum_detects_single_character_change(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    store.create(tool_version="1.0.0", watch_state=_watch_state())
    raw = store.path.read_text(encoding="utf-8")
    index = raw.index('"acme/widgets"') + 1
    flipped = chr(ord(raw[index]) ^ 0x01)
    store.path.write_text(raw[:index] + flipped + raw[index + 1 :], encoding="utf-8")

    loaded = store.load()

    assert loaded is not None
    assert not loaded.is_valid()


def test_checkpoint_from_dict_validation() -> None:
    with pytest.raises(CheckpointError, match="checkpoint_id"):
        Checkpoint.from_dict({"checkpoint_id": "1"})
    with pytest.raises(CheckpointError, match="watch_state is invalid"):
        Checkpoint.from_dict(
            {
                "checkpoint_id": 1,
                "created_at": "t",
                "tool_version": "1.0.0",
                "watch_state": {"repo": "", "poll_interval_seconds": 1, "provider": "codex"},
                "checksum": "x",
            }
        )


def test_failure_tracker_counts_and_resets(tmp_path: Path) -> None:
    tracker = FailureTracker(
        tmp_path / "failures.json", max_consecutive_failures=2, now=lambda: "2026-06-01T00:00:00Z"
    )

    assert tracker.record_failure("install_failed") == 1
    assert not tracker.too_many_failures()
    assert tracker.record_failure("install_failed") == 2
    assert tracker.too_many_failures()
    assert tracker.status().last_failure_reason == "install_failed"

    tracker.reset_on_success("1.1.0")
    status = tracker.status()
    assert status.consecutive_failures == 0
    assert status.last_success_version == "1.1.0"


@pytest.mark.parametrize("content", ["{broken", "[1, 2]", "ÿ"])
def test_unreadable_failure_tracker_stays_tripped_until_cleared(
    tmp_path: Path, content: str
) -> None:
    tracker = FailureTracker(
        tmp_path / "failures.json", max_consecutive_failures=3, now=lambda: "2026-06-01T00:00:00Z"
    )
    tracker.path.write_text(content, encoding="latin-1")

    status = tracker.status()
    assert status.too_many_failures
    assert status.consecutive_failures == 3
    assert status.last_failure_reason == "failure_tracker_unreadable"
    assert tracker.record_failure("install_failed") == 4

    tracker.path.write_text(content, encoding="latin-1")
    tracker.clear()
    assert not tracker.too_many_failures()
    assert tracker.status().consecutive_failures == 0


def test_restore_without_checkpoint_returns_none(tmp_path: Path) -> None:
    assert _checkpointer(tmp_path).restore_on_startup() is None
    assert _audit_events(tmp_path) == []


def test_update_cycle_checkpoints_exits_and_restores(tmp_path: Path) -> None:
    source = FakeVersionSource()
    before = _checkpointer(tmp_path, source=source)

    with pytest.raises(UpdateExitRequested) as exc_info:
        before.maybe_update(_watch_state(), busy=False)

    assert exc_info.value.exit_code == UPDATE_EXIT_CODE
    checkpoint = exc_info.value.checkpoint
    assert checkpoint.metadata["target_version"] == "1.1.0"
    assert before.store.exists()

    after = _checkpointer(tmp_path, current_version="1.1.0")
    restored = after.restore_on_startup()

    assert restored == _watch_state()
    assert not after.store.exists()
    status = after.tracker.status()
    assert status.consecutive_failures == 0
    assert status.last_success_version == "1.1.0"
    assert _audit_events(tmp_path) == ["check", "update_initiated", "restore", "success"]


def test_corrupt_checkpoint_is_discarded_and_counted(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    store.create(tool_version="1.0.0", watch_state=_watch_state())
    payload = json.loads(store.path.read_text(encoding="utf-8"))
    payload["watch_state"]["poll_interval_seconds"] = 46
    store.path.write_text(json.dumps(payload), encoding="utf-8")

    checkpointer = _checkpointer(tmp_path)

    assert checkpointer.restore_on_startup() is None
    assert not store.exists()
    assert checkpointer.tracker.status().consecutive_failures == 1
    (record,) = AuditLog(tmp_path / "audit.jsonl").read_recent()
    assert record.event == "restore"
    assert record.fields["valid"] is False
    assert record.fields["reason"] == "checksum_mismatch"


@pytest.mark.parametrize(
    "content,reason",
    [("{not json", "malformed"), ('{"checkpoint_id": true}', "malformed")],
)
def test_malformed_checkpoint_file_is_discarded(tmp_path: Path, content: str, reason: str) -> None:
    store = CheckpointStore(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text(content, encoding="utf-8")

    checkpointer = _checkpointer(tmp_path)

    assert checkpointer.restore_on_startup() is None
    assert not store.exists()
    (record,) = AuditLog(tmp_path / "audit.jsonl").read_recent()
    assert str(record.fields["reason"]).startswith(reason)


def test_checkpoint_from_newer_version_is_incompatible(tmp_path: Path) -> None:
    CheckpointStore(tmp_path).create(tool_version="2.0.0", watch_state=_watch_state())

    checkpointer = _checkpointer(tmp_path, current_version="1.0.0")

    assert checkpointer.restore_on_startup() is None
    assert checkpointer.tracker.status().consecutive_failures == 1
    assert "incompatible_version" in str(checkpointer.tracker.status().last_failure_reason)


def test_unapplied_update_restores_state_but_counts_failure(tmp_path: Path) -> None:
    CheckpointStore(tmp_path).create(
        tool_version="1.0.0", watch_state=_watch_state(), metadata={"target_version": "1.1.0"}
    )

    checkpointer = _checkpointer(tmp_path, current_version="1.0.0")

    assert checkpointer.restore_on_startup() == _watch_state()
    assert checkpointer.tracker.status().last_failure_reason == "update_not_applied"
    assert _audit_events(tmp_path) == ["restore", "failure"]


def test_three_failed_cycles_disable_auto_update(tmp_path: Path) -> None:
    for _ in range(3):
        cycle = _checkpointer(tmp_path, current_version="1.0.0")
        cycle.restore_on_startup()
        with pytest.raises(UpdateExitRequested):
            cycle.maybe_update(_watch_state(), busy=False)

    source = FakeVersionSource()
    clock = FakeClock()
    stuck = _checkpointer(tmp_path, current_version="1.0.0", source=source, clock=clock)
    assert stuck.restore_on_startup() == _watch_state()
    assert stuck.tracker.status().consecutive_failures == 3

    stuck.maybe_update(_watch_state(), busy=False)
    clock.now += 10_000
    stuck.maybe_update(_watch_state(), busy=False)

    assert source.calls == 0
    assert _audit_events(tmp_path).count("auto_update_disabled") == 1
    with pytest.raises(UpdateLoopError, match="3 consecutive failures"):
        stuck.initiate_update(_watch_state(), target_version="1.1.0")

    stuck.reset_failures(actor="ops")
    assert _audit_events(tmp_path)[-1] == "failure_tracker_reset"
    clock.now += 10_000
    with pytest.raises(UpdateExitRequested):
        stuck.maybe_update(_watch_state(), busy=False)
    assert source.calls == 1


def test_busy_watcher_defers_update(tmp_path: Path) -> None:
    checkpointer = _checkpointer(tmp_path)

    checkpointer.maybe_update(_watch_state(), busy=True)

    assert not checkpointer.store.exists()
    (record,) = AuditLog(tmp_path / "audit.jsonl").read_recent()
    assert record.event == "check"
    assert record.fields["busy"] is True
    assert record.fields["candidate_version"] == "1.1.0"


def test_checks_are_throttled_by_interval(tmp_path: Path) -> None:
    source = FakeVersionSource(versions=("1.0.0",))
    clock = FakeClock()
    checkpointer = _checkpointer(tmp_path, source=source, clock=clock)

    checkpointer.maybe_update(_watch_state(), busy=False)
    clock.now += 599
    checkpointer.maybe_update(_watch_state(), busy=False)
    clock.now += 1
    checkpointer.maybe_update(_watch_state(), busy=False)

    assert source.calls == 2


@pytest.mark.parametrize("overrides", [{"enabled": False}, {"policy": "off"}])
def test_disabled_updates_never_check(tmp_path: Path, overrides: dict[str, object]) -> None:
    source = FakeVersionSource()
    checkpointer = _checkpointer(tmp_path, source=source, **overrides)

    checkpointer.maybe_update(_watch_state(), busy=False)

    assert source.calls == 0


def test_version_source_failure_is_audited(tmp_path: Path) -> None:
    source = FakeVersionSource()
    source.error = CommandError("pip index failed", returncode=1)
    checkpointer = _checkpointer(tmp_path, source=source)

    checkpointer.maybe_update(_watch_state(), busy=False)

    (record,) = AuditLog(tmp_path / "audit.jsonl").read_recent()
    assert record.event == "check"
    assert "CommandError" in str(record.fields["error"])
    assert not checkpointer.store.exists()


def test_initiate_update_requires_supervisor(tmp_path: Path) -> None:
    checkpointer = _checkpointer(tmp_path, supervisor=None)

    with pytest.raises(UpdateError, match="supervisor"):
        checkpointer.initiate_update(_watch_state(), target_version="1.1.0")
    assert not checkpointer.store.exists()


def test_checkpoint_write_failure_counts_as_update_failure(tmp_path: Path) -> None:
    (tmp_path / "checkpoints").write_text("in the way", encoding="utf-8")
    checkpointer = _checkpointer(tmp_path)

    with pytest.raises(UpdateError, match="Could not write update checkpoint"):
        checkpointer.initiate_update(_watch_state(), target_version="1.1.0")

    assert checkpointer.tracker.status().consecutive_failures == 1
    assert _audit_events(tmp_path) == ["failure"]


def test_status_reports_tracker_and_checkpoint(tmp_path: Path) -> None:
    checkpointer = _checkpointer(tmp_path)
    checkpointer.tracker.record_failure("install_failed")

    status = checkpointer.status()

    assert status["enabled"] is True
    assert status["policy"] == "minor"
    assert status["current_version"] == "1.0.0"
    assert status["checkpoint_pending"] is False
    failures = status["failures"]
    assert isinstance(failures, dict)
    assert failures["consecutive_failures"] == 1
    assert failures["too_many_failures"] is False


_SIGNED = Checkpoint(
    checkpoint_id=4,
    created_at="2026-06-01T00:00:00Z",
    tool_version="1.0.0",
    watch_state=WatchState(
        repo="acme/widgets",
        poll_interval_seconds=45,
        provider="codex",
        cursors=(
            IssueCursor(issue_number=3, last_comment_at="2026-01-01T00:00:00Z", last_event_key="k3"),
        ),
    ),
    metadata={"target_version": "1.1.0"},
).with_checksum()
_SIGNED_TEXT = json.dumps(_SIGNED.to_dict())


@given(st.integers(min_value=0, max_value=len(_SIGNED_TEXT) - 1))
def test_any_single_bit_flip_is_detected(index: int) -> None:
    flipped = _SIGNED_TEXT[:index] + chr(ord(_SIGNED_TEXT[index]) ^ 0x01) + _SIGNED_TEXT[index + 1 :]

    try:
        payload = json.loads(flipped)
    except json.JSONDecodeError:
        return
    try:
        checkpoint = Checkpoint.from_dict(payload)
    except CheckpointError:
        return
    assert not checkpoint.is_valid()


def test_signed_checkpoint_survives_json_round_trip() -> None:
    restored = Checkpoint.from_dict(json.loads(_SIGNED_TEXT))

    assert restored == _SIGNED
    assert restored.is_valid()
