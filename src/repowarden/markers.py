from __future__ import annotations

from dataclasses import dataclass
import hashlib
import re
from typing import cast

from repowarden.models import BUILD_STATUSES, BuildStatus


ACTION_TOKEN_PATTERN = re.compile(r"<!--\s*repowarden-action:([0-9a-f]{64})\s*-->")
PLAN_MARKER = "<!-- repowarden-plan -->"
# Posted by a reviewer outside repowarden (a person or review bot) once a
# created PR has been reviewed. Nothing in this package writes it.
REVIEW_COMPLETE_MARKER = "<!-- repowarden-review-complete -->"
CLARIFICATION_MARKER = "<!-- repowarden-clarification -->"
FOLLOW_UP_START = "<!-- FOLLOW_UP_TASKS_START -->"
FOLLOW_UP_END = "<!-- FOLLOW_UP_TASKS_END -->"
_STATUS_MARKER_PATTERN = re.compile(
    r"<!--\s*repowarden-status\s+status=([a-z_]+)\s+branch=(\S+)\s+sha=(\S+)\s*-->"
)
_CHANGE_REQUEST_OUTCOME_PATTERN = re.compile(
    r"<!--\s*repowarden-change-request\s+status=([a-z_]+)\s*-->"
)
_CHECKLIST_PATTERN = re.compile(r"^\s*[-*]\s+(?:\[[ xX]\]\s+)?(.+?)\s*$")


@dataclass(frozen=True)
class StatusMarker:
    status: BuildStatus
    branch: str
    commit_sha: str | None


def is_bot_login(login: str) -> bool:
    normalized = login.strip().lower()
    return normalized.endswith("[bot]")


def compute_trigger_token(*, event_key: str) -> str:
    payload = f"trigger:{event_key}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def has_action_token(text: str) -> bool:
    return ACTION_TOKEN_PATTERN.search(text) is not None


def extract_action_tokens(text: str) -> tuple[str, ...]:
    return tuple(match.group(1) for match in ACTION_TOKEN_PATTERN.finditer(text))


def append_action_token(*, body: str, token: str) -> str:
    marker = f"<!-- repowarden-action:{token} -->"
    stripped = body.strip()
    if marker in stripped:
        return stripped
    if not stripped:
        return marker
    return f"{stripped}\n\n{marker}"


def is_repowarden_comment(text: str) -> bool:
    return (
        PLAN_MARKER in text
        or CLARIFICATION_MARKER in text
        or REVIEW_COMPLETE_MARKER in text
        or has_action_token(text)
        or has_change_request_outcome(text)
        or _STATUS_MARKER_PATTERN.search(text) is not None
    )


def render_status_marker(*, status: BuildStatus, branch: str, commit_sha: str | None) -> str:
    if status not in BUILD_STATUSES:
        raise ValueError(f"Unknown build status: {status!r}")
    if not branch or any(ch.isspace() for ch in branch):
        raise ValueError("branch must be a non-empty string without whitespace")
    return f"<!-- repowarden-status status={status} branch={branch} sha={commit_sha or '-'} -->"


def render_change_request_marker(status: str) -> str:
    if not status or not all(ch.islower() or ch == "_" for ch in status):
        raise ValueError(f"Invalid change request status: {status!r}")
    return f"<!-- repowarden-change-request status={status} -->"


def has_change_request_outcome(text: str) -> bool:
    return _CHANGE_REQUEST_OUTCOME_PATTERN.search(text) is not None


def parse_status_markers(text: str) -> tuple[StatusMarker, ...]:
    markers: list[StatusMarker] = []
    for match in _STATUS_MARKER_PATTERN.finditer(text):
        status = match.group(1)
        if status not in BUILD_STATUSES:
            continue
        sha = match.group(3)
        markers.append(
            StatusMarker(
                status=cast(BuildStatus, status),
                branch=match.group(2),
                commit_sha=None if sha == "-" else sha,
            )
        )
    return tuple(markers)


def render_follow_up_tasks(tasks: tuple[str, ...]) -> str:
    lines = [FOLLOW_UP_START]
    lines.extend(f"- [ ] {task}" for task in tasks)
    lines.append(FOLLOW_UP_END)
    return "\n".join(lines)


def extract_follow_up_tasks(text: str) -> tuple[str, ...]:
    start = text.find(FOLLOW_UP_START)
    if start < 0:
        return ()
    end = text.find(FOLLOW_UP_END, start + len(FOLLOW_UP_START))
    if end < 0:
        return ()
    section = text[start + len(FOLLOW_UP_START) : end]
    return parse_checklist(section)


def parse_checklist(section: str) -> tuple[str, ...]:
    items: list[str] = []
    for line in section.splitlines():
        match = _CHECKLIST_PATTERN.match(line)
        if match is not None:
            items.append(match.group(1))
    return tuple(items)
