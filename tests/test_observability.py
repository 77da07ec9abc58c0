from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import sys

import pytest

from repowarden import observability
from repowarden.observability import (
    configure_logging,
    format_event,
    log_event,
    log_warning_event,
)


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


@pytest.fixture
def root() -> Iterator[logging.Logger]:
    logger = logging.getLogger("repowarden")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    for handler in logger.handlers:
        if handler not in saved[0]:
            handler.close()
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


@pytest.fixture
def captured() -> Iterator[tuple[logging.Logger, io.StringIO]]:
    logger = logging.getLogger("repowarden.tests.captured")
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False
    yield logger, stream
    logger.handlers.clear()


@pytest.mark.parametrize("quiet", [False, None])
def test_quiet_mode_installs_only_a_null_handler(root: logging.Logger, quiet: bool | None) -> None:
    configure_logging(verbose=True)
    configure_logging(verbose=quiet)

    assert [type(handler) for handler in root.handlers] == [logging.NullHandler]
    assert root.level > logging.CRITICAL
    assert root.propagate is False


@pytest.mark.parametrize("verbose", [True, "high", " HIGH "])
def test_verbose_mode_reconfigures_without_stacking_handlers(
    root: logging.Logger, verbose: bool | str
) -> None:
    configure_logging(verbose=verbose)
    configure_logging(verbose=verbose)

    assert root.level == logging.INFO
    (handler,) = root.handlers
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "[%(processName)s]" in (handler.formatter._fmt or "")


def test_low_mode_keeps_lifecycle_events_and_warnings(
    root: logging.Logger, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("repowarden.tests.low")

    log_event(logger, "poll_completed", issues_seen=3)
    log_event(logger, "build_started", issue_number=1)
    logger.info("no event prefix")
    logger.info("event=")
    log_warning_event(logger, "checkpoint_discarded", reason="checksum_mismatch")
    logger.error("event=git_fetch_failed remote=origin")

    lines = capsys.readouterr().err.splitlines()
    assert len(lines) == 3
    assert lines[0].endswith("event=build_started issue_number=1")
    assert "WARNING" in lines[1]
    assert lines[2].endswith("event=git_fetch_failed remote=origin")


def test_unknown_verbose_mode_is_rejected(root: logging.Logger) -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode: 'noisy'"):
        configure_logging(verbose="noisy")


def test_state_dir_adds_a_utc_daily_file(root: logging.Logger, tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    log_event(logging.getLogger("repowarden.tests.file"), "plan_posted", issue_number=2)

    assert len(root.handlers) == 2
    text = (tmp_path / "logs" / f"{_today()}.log").read_text(encoding="utf-8")
    assert text.rstrip().endswith("event=plan_posted issue_number=2")


def test_build_children_write_their_own_daily_file(root: logging.Logger, tmp_path: Path) -> None:
    configure_logging(verbose="low", state_dir=tmp_path, log_name="build-7")
    logger = logging.getLogger("repowarden.tests.child")
    log_event(logger, "build_started", issue_number=7)
    log_event(logger, "agent_invoked", issue_number=7)

    logs = tmp_path / "logs"
    text = (logs / f"build-7-{_today()}.log").read_text(encoding="utf-8")
    assert "event=build_started issue_number=7" in text
    assert "event=agent_invoked" not in text
    assert not (logs / f"{_today()}.log").exists()


def test_daily_file_handler_reports_emit_errors(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    handler = observability._DailyLogFileHandler(tmp_path / "logs")
    failed: list[logging.LogRecord] = []

    def broken_stream() -> None:
        raise OSError("disk full")

    monkeypatch.setattr(handler, "_current_stream", broken_stream)
    monkeypatch.setattr(handler, "handleError", failed.append)

    record = logging.makeLogRecord({"msg": "event=plan_posted issue_number=1"})
    handler.emit(record)

    assert failed == [record]
    assert handler.path_for("2026-01-02") == tmp_path / "logs" / "2026-01-02.log"
    handler.close()


def test_format_event_sorts_fields_and_quotes_awkward_values() -> None:
    message = format_event(
        "sample",
        {
            "b": 2,
            "a": "multi\nline value",
            "none_value": None,
            "flag": True,
            "ratio": 0.5,
            "blank": "   ",
            "long_text": "x" * 121,
            "mapping": {"k": "v"},
            "assignment": "k=v",
        },
    )

    fields = message.split(" ", 1)[1]
    assert message.startswith("event=sample ")
    assert fields.index("a=") < fields.index("b=") < fields.index("blank=")
    assert 'a="multi line value"' in fields
    assert "none_value=null" in fields
    assert "flag=true" in fields
    assert "ratio=0.5" in fields
    assert "blank=<empty>" in fields
    assert f"long_text={'x' * 120}..." in fields
    assert "mapping=<dict>" in fields
    assert 'assignment="k=v"' in fields


def test_format_event_renders_paths_and_short_sequences() -> None:
    message = format_event(
        "worktree_created",
        {
            "path": Path("/base/worktrees/acme/widgets/repowarden-7-fix"),
            "test_command": ("pytest", "-q"),
            "users": frozenset({"bob", "alice"}),
            "issues": list(range(10)),
            "mixed": ("a", 1.5),
            "nothing": (),
        },
    )

    assert "path=/base/worktrees/acme/widgets/repowarden-7-fix" in message
    assert "test_command=pytest,-q" in message
    assert "users=alice,bob" in message
    assert "issues=0,1,2,3,4,5,6,7,+2" in message
    assert "mixed=<tuple>" in message
    assert "nothing=<empty>" in message


def test_log_helpers_pick_the_level(captured: tuple[logging.Logger, io.StringIO]) -> None:
    logger, stream = captured

    log_event(logger, "plan_posted", issue_number=4)
    log_warning_event(logger, "auto_update_disabled", consecutive_failures=3)

    assert stream.getvalue().splitlines() == [
        "INFO event=plan_posted issue_number=4",
        "WARNING event=auto_update_disabled consecutive_failures=3",
    ]
