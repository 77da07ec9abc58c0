from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from typing import Literal, cast

from repowarden.observability import log_event


LOGGER = logging.getLogger("repowarden.audit_log")

AuditEvent = Literal[
    "check",
    "update_initiated",
    "restore",
    "success",
    "failure",
    "auto_update_disabled",
    "failure_tracker_reset",
]


@dataclass(frozen=True)
class AuditRecord:
    timestamp: str
    event: str
    fields: dict[str, object]


class AuditLog:
    """Append-only JSON-lines log of self-update activity."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def record(self, event: AuditEvent, **fields: object) -> AuditRecord:
        timestamp = _utc_now_iso8601()
        payload: dict[str, object] = {"timestamp": timestamp, "event": event}
        for key, value in fields.items():
            if key in payload:
                raise ValueError(f"Audit field {key!r} is reserved")
            payload[key] = value
        line = json.dumps(payload, sort_keys=True, default=str)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(f"{line}\n")
            fh.flush()
            os.fsync(fh.fileno())
        log_event(LOGGER, "audit_recorded", audit_event=event)
        return AuditRecord(timestamp=timestamp, event=event, fields=dict(fields))

    def read_recent(self, limit: int = 50) -> tuple[AuditRecord, ...]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if not self._path.exists():
            return ()
        recent: deque[AuditRecord] = deque(maxlen=limit)
        with self._path.open("r", encoding="utf-8") as fh:
            for raw_line in fh:
                record = _parse_line(raw_line)
                if record is not None:
                    recent.append(record)
        return tuple(recent)


def _parse_line(raw_line: str) -> AuditRecord | None:
    text = raw_line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    obj = cast(dict[str, object], payload)
    timestamp = obj.pop("timestamp", None)
    event = obj.pop("event", None)
    if not isinstance(timestamp, str) or not isinstance(event, str):
        return None
    return AuditRecord(timestamp=timestamp, event=event, fields=obj)


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
