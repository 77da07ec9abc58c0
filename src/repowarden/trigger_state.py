from __future__ import annotations

from dataclasses import dataclass

from repowarden.config import BuildConfig, RepoConfig
from repowarden.markers import (
    CLARIFICATION_MARKER,
    REVIEW_COMPLETE_MARKER,
    compute_trigger_token,
    extract_action_tokens,
    extract_follow_up_tasks,
    has_change_request_outcome,
    parse_status_markers,
)
from repowarden.models import (
    BuildState,
    IssueComment,
    RouteKind,
    Trigger,
    WorkflowState,
)
from repowarden.plan_document import is_plan_comment


@dataclass(frozen=True)
class ObservedState:
    """Workflow facts recovered from an issue's comment history."""

    plan_comment: IssueComment | None = None
    build_state: BuildState | None = None
    processed_tokens: frozenset[str] = frozenset()
    incomplete_rounds: int = 0
    clarification_rounds: int = 0
    review_complete: bool = False
    follow_up_tasks: tuple[str, ...] = ()
    last_comment_at: str | None = None
    awaiting_clarification: bool = False

    @property
    def workflow_state(self) -> WorkflowState:
        if self.awaiting_clarification:
            return "change_requested"
        if self.build_state is not None:
            status = self.build_state.status
            if status == "implementing":
                return "building"
            if status == "pr_created":
                return "review" if self.review_complete else "pr_created"
            return status
        if self.plan_comment is not None:
            return "plan_posted"
        return "idle"

    def has_processed(self, trigger: Trigger) -> bool:
        return compute_trigger_token(event_key=trigger.event_key) in self.processed_tokens


def derive_state(comments: tuple[IssueComment, ...], *, issue_number: int) -> ObservedState:
    plan_comment: IssueComment | None = None
    build_state: BuildState | None = None
    tokens: set[str] = set()
    incomplete_rounds = 0
    clarification_rounds = 0
    review_complete = False
    follow_up_tasks: tuple[str, ...] = ()
    last_comment_at: str | None = None
    awaiting_clarification = False

    for comment in sorted(comments, key=lambda item: (item.created_at, item.comment_id)):
        body = comment.body
        if last_comment_at is None or comment.updated_at > last_comment_at:
            last_comment_at = comment.updated_at
        tokens.update(extract_action_tokens(body))
        if plan_comment is None and is_plan_comment(body):
            plan_comment = comment
        if REVIEW_COMPLETE_MARKER in body:
            review_complete = True
        if CLARIFICATION_MARKER in body:
            clarification_rounds += 1
            awaiting_clarification = True
            continue
        if has_change_request_outcome(body):
            # A finished request starts the next one with a fresh clarification budget.
            clarification_rounds = 0
            awaiting_clarification = False
            continue
        markers = parse_status_markers(body)
        if markers:
            awaiting_clarification = False
            latest = markers[-1]
            build_state = BuildState(
                issue_number=issue_number,
                branch=latest.branch,
                status=latest.status,
                commit_sha=latest.commit_sha,
                started_at=comment.created_at,
            )
            if latest.status == "incomplete":
                incomplete_rounds += 1
                follow_up_tasks = extract_follow_up_tasks(body)
            elif latest.status == "pr_created":
                follow_up_tasks = ()

    return ObservedState(
        plan_comment=plan_comment,
        build_state=build_state,
        processed_tokens=frozenset(tokens),
        incomplete_rounds=incomplete_rounds,
        clarification_rounds=clarification_rounds,
        review_complete=review_complete,
        follow_up_tasks=follow_up_tasks,
        last_comment_at=last_comment_at,
        awaiting_clarification=awaiting_clarification,
    )


@dataclass(frozen=True)
class Route:
    kind: RouteKind
    reason: str

    @property
    def is_noop(self) -> bool:
        return self.kind == "noop"


class TriggerStateMachine:
    def __init__(self, repo: RepoConfig, build: BuildConfig) -> None:
        self._repo = repo
        self._build = build

    def route(self, trigger: Trigger, observed: ObservedState, *, is_pull_request: bool) -> Route:
        if observed.has_processed(trigger):
            return Route("noop", "already_processed")

        label = trigger.label
        if label == self._repo.plan_label:
            if is_pull_request:
                return Route("noop", "plan_on_pull_request")
            if observed.plan_comment is None:
                return Route("plan_create", "no_plan_comment")
            return Route("plan_iterate", "plan_comment_exists")

        if label == self._repo.build_label:
            if is_pull_request:
                return Route("noop", "build_on_pull_request")
            if observed.plan_comment is None:
                return Route("noop", "no_plan")
            state = observed.build_state
            if state is not None and state.status == "pr_created":
                return Route("noop", "pr_already_created")
            if observed.incomplete_rounds >= self._build.max_incomplete_rounds:
                return Route("noop", "incomplete_round_limit")
            if state is not None and state.status == "incomplete":
                return Route("build", "resume_incomplete")
            return Route("build", "plan_ready")

        if label == self._repo.request_changes_label:
            if not is_pull_request:
                return Route("noop", "not_an_open_pull_request")
            return Route("change_request", "pull_request_open")

        return Route("noop", "unrecognized_label")
