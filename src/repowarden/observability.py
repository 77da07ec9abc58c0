from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


_ROOT_LOGGER: Final[str] = "repowarden"
_MAX_VALUE_CHARS: Final[int] = 120
_MAX_SEQUENCE_ITEMS: Final[int] = 8
_RECORD_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(processName)s] %(message)s"

# Lifecycle events kept by `--verbose low`; warnings always pass.
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "watch_started",
        "trigger_routed",
        "plan_posted",
        "plan_iterated",
        "build_started",
        "build_finished",
        "build_child_timed_out",
        "change_request_finished",
        "github_pr_created",
        "git_push_failed",
        "sync_push_rejected",
        "self_update_initiated",
        "checkpoint_restored",
        "checkpoint_discarded",
        "auto_update_disabled",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
    log_name: str | None = None,
) -> None:
    """Route ``repowarden.*`` loggers to stderr and optionally to daily files.

    Build children pass ``log_name`` so each writes ``logs/<log_name>-<date>.log``
    instead of interleaving with the watcher's ``logs/<date>.log``.
    """
    mode = _parse_verbose_mode(verbose)
    root = logging.getLogger(_ROOT_LOGGER)
    root.propagate = False
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if mode is None:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(_DailyLogFileHandler(state_dir / "logs", log_name=log_name))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_RECORD_FORMAT))
        if mode == "low":
            handler.addFilter(_LowVerbosityFilter())
        root.addHandler(handler)
    root.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields))


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(format_event(event, fields))


def format_event(event: str, fields: dict[str, object]) -> str:
    rendered = [f"event={_render_value(event)}"]
    rendered.extend(f"{key}={_render_value(fields[key])}" for key in sorted(fields))
    return " ".join(rendered)


def _render_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str | Path):
        text = _collapse(str(value))
    elif isinstance(value, tuple | list | frozenset) and all(
        isinstance(item, str | int) for item in value
    ):
        items = sorted(value, key=str) if isinstance(value, frozenset) else list(value)
        shown = ",".join(str(item) for item in items[:_MAX_SEQUENCE_ITEMS])
        if len(items) > _MAX_SEQUENCE_ITEMS:
            shown = f"{shown},+{len(items) - _MAX_SEQUENCE_ITEMS}"
        text = _collapse(shown)
    else:
        text = f"<{type(value).__name__}>"

    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _collapse(text: str) -> str:
    collapsed = " ".join(text.split())
    if not collapsed:
        return "<empty>"
    if len(collapsed) > _MAX_VALUE_CHARS:
        return f"{collapsed[:_MAX_VALUE_CHARS]}..."
    return collapsed


def _parse_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = str(verbose).strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, mode)


def _event_name(message: str) -> str | None:
    head, _, _ = message.partition(" ")
    if not head.startswith("event="):
        return None
    return head[len("event=") :] or None


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return _event_name(record.getMessage()) in _LOW_VERBOSITY_EVENTS


class _DailyLogFileHandler(logging.Handler):
    """Appends to one file per UTC day, reopening when the date rolls over."""

    def __init__(self, logs_dir: Path, *, log_name: str | None = None) -> None:
        super().__init__()
        self._logs_dir = logs_dir
        self._log_name = log_name
        self._stream: TextIO | None = None
        self._date_key = ""

    def path_for(self, date_key: str) -> Path:
        if self._log_name:
            return self._logs_dir / f"{self._log_name}-{date_key}.log"
        return self._logs_dir / f"{date_key}.log"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self._current_stream()
            stream.write(self.format(record) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
            super().close()
        finally:
            self.release()

    def _current_stream(self) -> TextIO:
        date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._stream is not None and date_key == self._date_key:
            return self._stream
        if self._stream is not None:
            self._stream.close()
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._stream = self.path_for(date_key).open("a", encoding="utf-8")
        self._date_key = date_key
        return self._stream
