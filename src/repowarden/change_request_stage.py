from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Literal, cast

from repowarden.agent_executor import (
    AgentExecutor,
    AgentResponseError,
    optional_str,
    parse_json_object,
    require_bool,
    str_list,
)
from repowarden.change_applicator import ChangeApplicator
from repowarden.config import AppConfig
from repowarden.git_ops import GitRepository
from repowarden.github_gateway import GitHubGateway
from repowarden.markers import (
    CLARIFICATION_MARKER,
    append_action_token,
    compute_trigger_token,
    is_repowarden_comment,
    render_change_request_marker,
)
from repowarden.models import (
    FILE_ACTIONS,
    ChangeRequest,
    FileAction,
    FileChange,
    IssueComment,
    PullRequestSnapshot,
    Trigger,
)
from repowarden.observability import log_event
from repowarden.prompts import build_change_request_prompt
from repowarden.sync_client import SyncClient
from repowarden.trigger_state import ObservedState
from repowarden.work_loop import run_test_command
from repowarden.worktree import BranchInfo, WorktreeManager


LOGGER = logging.getLogger("repowarden.change_request_stage")

ChangeRequestStatus = Literal[
    "pushed",
    "nothing_to_sync",
    "push_rejected",
    "clarification_requested",
    "declined",
    "apply_failed",
    "tests_failed",
    "not_open",
]


@dataclass(frozen=True)
class ChangeRequestAnalysis:
    can_implement: bool
    needs_clarification: bool
    clarifying_questions: tuple[str, ...]
    reason: str
    changes: tuple[FileChange, ...]
    requires_test_run: bool


@dataclass(frozen=True)
class ChangeRequestOutcome:
    pr_number: int
    status: ChangeRequestStatus
    detail: str = ""
    commit_sha: str | None = None


def parse_change_request_analysis(raw: str) -> ChangeRequestAnalysis:
    payload = parse_json_object(raw)
    raw_changes = payload.get("changes", [])
    if raw_changes is None:
        raw_changes = []
    if not isinstance(raw_changes, list):
        raise AgentResponseError("Agent response field changes must be a list")
    changes: list[FileChange] = []
    for item in raw_changes:
        if not isinstance(item, dict):
            raise AgentResponseError("Agent response has invalid changes entry")
        entry = cast(dict[str, object], item)
        path = entry.get("file")
        action = entry.get("action")
        content = entry.get("content")
        description = entry.get("description", "")
        if not isinstance(path, str) or not path.strip():
            raise AgentResponseError("Agent change entry missing file")
        if action not in FILE_ACTIONS:
            raise AgentResponseError(f"Agent change entry has invalid action: {action!r}")
        if content is not None and not isinstance(content, str):
            raise AgentResponseError("Agent change entry content must be a string")
        changes.append(
            FileChange(
                path=path.strip(),
                action=cast(FileAction, action),
                content=content,
                description=description if isinstance(description, str) else "",
            )
        )
    requires_test_run = payload.get("requires_test_run", True)
    return ChangeRequestAnalysis(
        can_implement=require_bool(payload, "can_implement"),
        needs_clarification=bool(payload.get("needs_clarification") is True),
        clarifying_questions=str_list(payload, "clarifying_questions"),
        reason=optional_str(payload, "reason"),
        changes=tuple(changes),
        requires_test_run=requires_test_run if isinstance(requires_test_run, bool) else True,
    )


class ChangeRequestStage:
    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        git: GitRepository,
        worktrees: WorktreeManager,
        executor: AgentExecutor,
        sync: SyncClient | None = None,
    ) -> None:
        self._config = config
        self._github = github
        self._git = git
        self._worktrees = worktrees
        self._executor = executor
        self._sync = sync or SyncClient(git)

    def run(
        self,
        *,
        trigger: Trigger,
        observed: ObservedState,
        comments: tuple[IssueComment, ...],
    ) -> ChangeRequestOutcome:
        pr = self._github.get_pull_request(trigger.issue_number)
        token = compute_trigger_token(event_key=trigger.event_key)
        max_rounds = self._config.change_request.max_clarification_rounds

        if not pr.is_open:
            log_event(LOGGER, "change_request_skipped", pr_number=pr.number, reason="not_open")
            self._remove_label(pr.number, trigger.label)
            return ChangeRequestOutcome(pr_number=pr.number, status="not_open")

        if max_rounds > 0 and observed.clarification_rounds >= max_rounds:
            return self._finish(
                pr,
                trigger,
                status="declined",
                detail="clarification_limit",
                body=(
                    f"Maximum clarification rounds ({max_rounds}) reached. "
                    "Please restate the requested changes in a single comment and re-apply "
                    f"the `{self._config.repo.request_changes_label}` label."
                ),
                token=token,
            )

        context = self._worktrees.ensure(
            BranchInfo(head_ref=pr.head_ref, base_ref=pr.base_ref, pr_number=pr.number),
            create_branch=False,
        )
        diff = self._git.diff_against(context.path, f"origin/{pr.base_ref}")
        authorized = tuple(
            comment
            for comment in comments
            if not is_repowarden_comment(comment.body)
            and self._config.repo.allows(comment.user_login)
        )
        prompt = build_change_request_prompt(
            pull_request=pr,
            repo_full_name=self._config.repo.full_name,
            comments=authorized,
            diff=diff,
            clarification_round=observed.clarification_rounds,
            max_clarification_rounds=max_rounds,
        )
        result = self._executor.invoke(
            prompt=prompt,
            cwd=context.path,
            timeout_seconds=self._config.agent.timeout_seconds,
        )
        analysis = parse_change_request_analysis(result.text)

        if analysis.needs_clarification:
            if observed.clarification_rounds < max_rounds:
                return self._request_clarification(pr, trigger, analysis, observed, token)
            return self._finish(
                pr,
                trigger,
                status="declined",
                detail="clarification_limit",
                body=(
                    "The request is still ambiguous and the clarification limit "
                    f"({max_rounds}) has been reached. No changes were made."
                ),
                token=token,
            )
        if not analysis.can_implement or not analysis.changes:
            reason = analysis.reason or "The agent proposed no changes."
            return self._finish(
                pr,
                trigger,
                status="declined",
                detail=reason,
                body=(
                    f"No changes were made to this pull request.\n\n{reason}\n\n"
                    "Clarify the request and re-apply the "
                    f"`{self._config.repo.request_changes_label}` label to retry."
                ),
                token=token,
            )

        change_request = ChangeRequest(
            pr_number=pr.number,
            requested_by=trigger.actor_login,
            changes=analysis.changes,
            requires_test_run=analysis.requires_test_run,
        )
        applied = ChangeApplicator(context.path).apply(change_request.changes)
        if not applied.success:
            return self._finish(
                pr,
                trigger,
                status="apply_failed",
                detail=applied.error or "",
                body=(
                    "The requested changes could not be applied and the worktree was left "
                    f"unchanged.\n\nFailed path: `{applied.failed_path}`\nError: {applied.error}"
                ),
                token=token,
            )

        summary = analysis.reason or f"apply requested changes to #{pr.number}"
        test_command = self._config.repo.test_command
        if (
            change_request.requires_test_run
            and self._config.change_request.run_tests
            and test_command
        ):
            passed, output = run_test_command(
                test_command,
                cwd=context.path,
                timeout_seconds=self._config.change_request.test_timeout_seconds,
            )
            if not passed:
                committed = self._sync.commit(
                    worktree=context.path,
                    message_prefix=self._config.change_request.commit_message_prefix,
                    summary=summary,
                    changes=change_request.changes,
                    requested_by=change_request.requested_by or None,
                )
                return self._finish(
                    pr,
                    trigger,
                    status="tests_failed",
                    detail="tests_failed",
                    commit_sha=committed.commit_sha,
                    body=(
                        "The requested changes were applied and committed locally, but the "
                        "test command failed, so nothing was pushed.\n\n"
                        f"```\n{output}\n```"
                    ),
                    token=token,
                )

        synced = self._sync.sync(
            worktree=context.path,
            branch=pr.head_ref,
            message_prefix=self._config.change_request.commit_message_prefix,
            summary=summary,
            changes=change_request.changes,
            requested_by=change_request.requested_by or None,
        )
        if synced.status == "nothing_to_sync":
            return self._finish(
                pr,
                trigger,
                status="nothing_to_sync",
                body="The requested changes produced no difference; nothing to sync.",
                token=token,
            )
        if synced.status == "push_rejected":
            return self._finish(
                pr,
                trigger,
                status="push_rejected",
                detail=synced.detail,
                commit_sha=synced.commit_sha,
                body=(
                    f"The push to `{pr.head_ref}` was rejected because the remote branch has "
                    "moved. The commit is preserved locally"
                    f"{_sha_suffix(synced.commit_sha)}; manual resolution is required."
                ),
                token=token,
            )
        files = "\n".join(
            f"- `{change.path}` ({change.action}): {change.description or change.action}"
            for change in change_request.changes
        )
        return self._finish(
            pr,
            trigger,
            status="pushed",
            commit_sha=synced.commit_sha,
            body=f"Pushed the requested changes{_sha_suffix(synced.commit_sha)}.\n\n{files}",
            token=token,
        )

    def _request_clarification(
        self,
        pr: PullRequestSnapshot,
        trigger: Trigger,
        analysis: ChangeRequestAnalysis,
        observed: ObservedState,
        token: str,
    ) -> ChangeRequestOutcome:
        max_rounds = self._config.change_request.max_clarification_rounds
        round_number = observed.clarification_rounds + 1
        questions = analysis.clarifying_questions or (
            analysis.reason or "Could you describe the requested change in more detail?",
        )
        lines = [
            CLARIFICATION_MARKER,
            "Some details are needed before these changes can be made:",
            "",
        ]
        lines.extend(f"{index}. {question}" for index, question in enumerate(questions, start=1))
        lines.extend(
            [
                "",
                "Please answer in a comment, then re-apply the "
                f"`{self._config.repo.request_changes_label}` label.",
                "",
                f"_(Clarification round {round_number} of {max_rounds})_",
            ]
        )
        self._github.post_issue_comment(
            pr.number, append_action_token(body="\n".join(lines), token=token)
        )
        self._github.remove_label(pr.number, trigger.label)
        self._github.add_labels(pr.number, (self._config.repo.needs_input_label,))
        log_event(
            LOGGER,
            "change_request_finished",
            pr_number=pr.number,
            status="clarification_requested",
            round=round_number,
        )
        return ChangeRequestOutcome(pr_number=pr.number, status="clarification_requested")

    def _finish(
        self,
        pr: PullRequestSnapshot,
        trigger: Trigger,
        *,
        status: ChangeRequestStatus,
        body: str,
        token: str,
        detail: str = "",
        commit_sha: str | None = None,
    ) -> ChangeRequestOutcome:
        outcome = f"{render_change_request_marker(status)}\n{body}"
        self._github.post_issue_comment(pr.number, append_action_token(body=outcome, token=token))
        self._remove_label(pr.number, trigger.label)
        log_event(
            LOGGER,
            "change_request_finished",
            pr_number=pr.number,
            status=status,
            commit_sha=commit_sha,
        )
        return ChangeRequestOutcome(
            pr_number=pr.number,
            status=status,
            detail=detail,
            commit_sha=commit_sha,
        )

    def _remove_label(self, pr_number: int, label: str) -> None:
        if self._config.runtime.remove_trigger_labels:
            self._github.remove_label(pr_number, label)


def _sha_suffix(sha: str | None) -> str:
    return f" as `{sha[:12]}`" if sha else ""
