from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


BuildStatus = Literal[
    "planning",
    "implementing",
    "verifying",
    "incomplete",
    "pr_created",
    "failed",
]
WorkflowState = Literal[
    "idle",
    "planning",
    "plan_posted",
    "building",
    "verifying",
    "incomplete",
    "pr_created",
    "review",
    "change_requested",
    "failed",
]
FileAction = Literal["create", "edit", "delete"]
RouteKind = Literal["plan_create", "plan_iterate", "build", "change_request", "noop"]
AgentProvider = Literal["codex", "claude", "command"]
UpdatePolicyName = Literal["off", "exact", "patch", "minor", "major"]

BUILD_STATUSES: tuple[BuildStatus, ...] = (
    "planning",
    "implementing",
    "verifying",
    "incomplete",
    "pr_created",
    "failed",
)
FILE_ACTIONS: tuple[FileAction, ...] = ("create", "edit", "delete")


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    html_url: str
    labels: tuple[str, ...]
    author_login: str = ""
    is_pull_request: bool = False


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str
    head_ref: str
    head_sha: str
    base_ref: str
    state: str
    merged: bool

    @property
    def is_open(self) -> bool:
        return self.state == "open" and not self.merged


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class LabelEvent:
    event_id: int
    label: str
    actor_login: str
    created_at: str


@dataclass(frozen=True)
class Trigger:
    repo: str
    issue_number: int
    label: str
    event_id: int
    comment_id: int | None
    observed_at: str
    actor_login: str = ""

    @property
    def event_key(self) -> str:
        return f"{self.repo}#{self.issue_number}:{self.label}:{self.event_id}"


@dataclass(frozen=True)
class PlanSnapshot:
    iteration: int
    summary: str
    tasks: tuple[str, ...]
    open_questions: tuple[str, ...]
    archived_at: str


@dataclass(frozen=True)
class PlanDocument:
    issue_number: int
    iteration: int
    summary: str
    tasks: tuple[str, ...]
    open_questions: tuple[str, ...]
    archived_iterations: tuple[PlanSnapshot, ...] = ()


@dataclass(frozen=True)
class FileChange:
    path: str
    action: FileAction
    content: str | None
    description: str


@dataclass(frozen=True)
class ChangeRequest:
    pr_number: int
    requested_by: str
    changes: tuple[FileChange, ...]
    requires_test_run: bool


@dataclass(frozen=True)
class BuildState:
    issue_number: int
    branch: str
    status: BuildStatus
    commit_sha: str | None
    started_at: str


@dataclass(frozen=True)
class IssueCursor:
    issue_number: int
    last_comment_at: str | None
    last_event_key: str | None

    def to_dict(self) -> dict[str, object]:
        return {
            "issue_number": self.issue_number,
            "last_comment_at": self.last_comment_at,
            "last_event_key": self.last_event_key,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> IssueCursor:
        issue_number = payload.get("issue_number")
        if isinstance(issue_number, bool) or not isinstance(issue_number, int):
            raise ValueError("cursor issue_number must be an integer")
        last_comment_at = payload.get("last_comment_at")
        last_event_key = payload.get("last_event_key")
        return cls(
            issue_number=issue_number,
            last_comment_at=last_comment_at if isinstance(last_comment_at, str) else None,
            last_event_key=last_event_key if isinstance(last_event_key, str) else None,
        )


@dataclass(frozen=True)
class WatchState:
    repo: str
    poll_interval_seconds: int
    provider: str
    cursors: tuple[IssueCursor, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "repo": self.repo,
            "poll_interval_seconds": self.poll_interval_seconds,
            "provider": self.provider,
            "cursors": [cursor.to_dict() for cursor in self.cursors],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> WatchState:
        repo = payload.get("repo")
        interval = payload.get("poll_interval_seconds")
        provider = payload.get("provider")
        raw_cursors = payload.get("cursors", [])
        if not isinstance(repo, str) or not repo:
            raise ValueError("watch state repo must be a non-empty string")
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
            raise ValueError("watch state poll_interval_seconds must be a positive integer")
        if not isinstance(provider, str):
            raise ValueError("watch state provider must be a string")
        if not isinstance(raw_cursors, list):
            raise ValueError("watch state cursors must be a list")
        cursors: list[IssueCursor] = []
        for item in raw_cursors:
            if not isinstance(item, dict):
                raise ValueError("watch state cursor must be an object")
            cursors.append(IssueCursor.from_dict(item))
        return cls(
            repo=repo,
            poll_interval_seconds=interval,
            provider=provider,
            cursors=tuple(cursors),
        )
