from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from repowarden.agent_executor import (
    AgentExecutor,
    AgentResponseError,
    parse_json_object,
    require_str,
    str_list,
)
from repowarden.config import AppConfig
from repowarden.git_ops import GitRepository
from repowarden.github_gateway import GitHubGateway
from repowarden.markers import compute_trigger_token, extract_action_tokens, is_repowarden_comment
from repowarden.models import Issue, IssueComment, PlanDocument, Trigger
from repowarden.observability import log_event
from repowarden.plan_document import (
    next_plan_iteration,
    parse_plan_comment,
    render_plan_comment,
    render_plan_for_prompt,
)
from repowarden.prompts import build_plan_prompt
from repowarden.trigger_state import ObservedState


LOGGER = logging.getLogger("repowarden.plan_stage")


@dataclass(frozen=True)
class PlanOutcome:
    issue_number: int
    iteration: int
    comment_id: int
    created: bool
    open_questions: tuple[str, ...]


@dataclass(frozen=True)
class _GeneratedPlan:
    summary: str
    tasks: tuple[str, ...]
    open_questions: tuple[str, ...]


class PlanStage:
    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        git: GitRepository,
        executor: AgentExecutor,
        now: Callable[[], str] | None = None,
    ) -> None:
        self._config = config
        self._github = github
        self._git = git
        self._executor = executor
        self._now = now or _utc_now_iso8601

    def run(
        self,
        *,
        issue: Issue,
        trigger: Trigger,
        observed: ObservedState,
        comments: tuple[IssueComment, ...],
    ) -> PlanOutcome:
        token = compute_trigger_token(event_key=trigger.event_key)
        existing = observed.plan_comment
        previous = (
            parse_plan_comment(issue_number=issue.number, body=existing.body)
            if existing is not None
            else None
        )
        plan = self._generate(issue=issue, comments=comments, previous=previous)

        if existing is None or previous is None:
            document = PlanDocument(
                issue_number=issue.number,
                iteration=1,
                summary=plan.summary,
                tasks=plan.tasks,
                open_questions=plan.open_questions,
            )
            posted = self._github.post_issue_comment(
                issue.number, render_plan_comment(document, tokens=(token,))
            )
            comment_id = posted.comment_id
            log_event(LOGGER, "plan_posted", issue_number=issue.number, comment_id=comment_id)
        else:
            document = next_plan_iteration(
                previous,
                summary=plan.summary,
                tasks=plan.tasks,
                open_questions=plan.open_questions,
                archived_at=self._now(),
            )
            tokens = _merge_tokens(extract_action_tokens(existing.body), token)
            self._github.update_issue_comment(
                existing.comment_id, render_plan_comment(document, tokens=tokens)
            )
            comment_id = existing.comment_id
            log_event(
                LOGGER,
                "plan_iterated",
                issue_number=issue.number,
                comment_id=comment_id,
                iteration=document.iteration,
            )

        if self._config.runtime.remove_trigger_labels:
            self._github.remove_label(issue.number, trigger.label)
        return PlanOutcome(
            issue_number=issue.number,
            iteration=document.iteration,
            comment_id=comment_id,
            created=existing is None,
            open_questions=document.open_questions,
        )

    def _generate(
        self,
        *,
        issue: Issue,
        comments: tuple[IssueComment, ...],
        previous: PlanDocument | None,
    ) -> _GeneratedPlan:
        human_comments = tuple(
            comment for comment in comments if not is_repowarden_comment(comment.body)
        )
        prompt = build_plan_prompt(
            issue=issue,
            repo_full_name=self._config.repo.full_name,
            comments=human_comments,
            previous_plan=render_plan_for_prompt(previous) if previous is not None else None,
        )
        result = self._executor.invoke(
            prompt=prompt,
            cwd=self._git.layout.clone_path,
            timeout_seconds=self._config.agent.timeout_seconds,
        )
        payload = parse_json_object(result.text)
        tasks = str_list(payload, "plan_tasks")
        if not tasks:
            raise AgentResponseError("Agent response plan_tasks must be a non-empty list")
        return _GeneratedPlan(
            summary=require_str(payload, "plan_summary"),
            tasks=tasks,
            open_questions=str_list(payload, "clarifying_questions"),
        )


def _merge_tokens(existing: tuple[str, ...], token: str) -> tuple[str, ...]:
    merged: list[str] = []
    for item in (*existing, token):
        if item not in merged:
            merged.append(item)
    return tuple(merged)


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
