from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
import re
from typing import Any, Callable

from repowarden.agent_executor import AgentExecutionError, AgentExecutor, AgentResponseError
from repowarden.child_process import ChildExit, ChildProcessSupervisor
from repowarden.config import AppConfig
from repowarden.git_ops import GitRepository
from repowarden.github_gateway import GitHubGateway, GitHubPollingError, GitHubResponseError
from repowarden.markers import (
    append_action_token,
    compute_trigger_token,
    render_follow_up_tasks,
    render_status_marker,
)
from repowarden.models import BuildState, BuildStatus, Issue, PullRequest, Trigger
from repowarden.observability import log_event
from repowarden.plan_document import PlanFormatError, parse_plan_comment, render_plan_for_prompt
from repowarden.prompts import build_implementation_prompt
from repowarden.shell import CommandError
from repowarden.state import StateStore
from repowarden.sync_client import SyncClient
from repowarden.trigger_state import ObservedState
from repowarden.verifier import ImplementationVerifier
from repowarden.work_loop import (
    WorkLoopRequest,
    WorkLoopResultError,
    read_work_loop_result,
    work_loop_entrypoint,
)
from repowarden.worktree import BranchInfo, WorktreeError, WorktreeManager


LOGGER = logging.getLogger("repowarden.build_stage")
_MAX_SLUG_CHARS = 40


class BuildStartError(RuntimeError):
    pass


@dataclass(frozen=True)
class BuildJob:
    key: str
    issue: Issue
    trigger: Trigger
    branch: str
    worktree_path: Path
    live_plan: str
    plan_summary: str
    result_path: Path
    started_at: str


@dataclass(frozen=True)
class BuildOutcome:
    issue_number: int
    event_key: str
    status: BuildStatus
    branch: str
    commit_sha: str | None
    reason: str
    pull_request: PullRequest | None = None
    follow_up_tasks: tuple[str, ...] = ()

    @property
    def terminal_success(self) -> bool:
        return self.status == "pr_created"


def build_branch_name(prefix: str, issue_number: int, title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:_MAX_SLUG_CHARS].rstrip("-") or "issue"
    return f"{prefix}/{issue_number}-{slug}"


class BuildStage:
    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        git: GitRepository,
        worktrees: WorktreeManager,
        executor: AgentExecutor,
        state: StateStore,
        supervisor: ChildProcessSupervisor,
        sync: SyncClient | None = None,
        verifier: ImplementationVerifier | None = None,
        entrypoint: Callable[..., Any] = work_loop_entrypoint,
        log_verbose: str | None = None,
        now: Callable[[], str] | None = None,
    ) -> None:
        self._config = config
        self._github = github
        self._git = git
        self._worktrees = worktrees
        self._state = state
        self._supervisor = supervisor
        self._sync = sync or SyncClient(git)
        self._verifier = verifier or ImplementationVerifier(
            executor, timeout_seconds=config.agent.timeout_seconds
        )
        self._entrypoint = entrypoint
        self._log_verbose = log_verbose
        self._now = now or _utc_now_iso8601
        self._jobs: dict[str, BuildJob] = {}

    def is_running(self, issue_number: int) -> bool:
        return _job_key(issue_number) in self._jobs

    def running_count(self) -> int:
        return len(self._jobs)

    def start(self, *, issue: Issue, trigger: Trigger, observed: ObservedState) -> BuildJob:
        if self.is_running(issue.number):
            raise BuildStartError(f"A build is already running for issue #{issue.number}")
        if observed.plan_comment is None:
            raise BuildStartError(f"Issue #{issue.number} has no plan to build from")
        try:
            document = parse_plan_comment(
                issue_number=issue.number, body=observed.plan_comment.body
            )
        except PlanFormatError as exc:
            raise BuildStartError(f"Plan comment for #{issue.number} is unreadable: {exc}") from exc
        live_plan = render_plan_for_prompt(document)

        branch = build_branch_name(self._config.build.branch_prefix, issue.number, issue.title)
        base = self._config.repo.default_branch
        try:
            context = self._worktrees.ensure(
                BranchInfo(head_ref=branch, base_ref=base), create_branch=True
            )
        except WorktreeError as exc:
            self._post_status(
                issue.number,
                status="failed",
                branch=branch,
                commit_sha=None,
                text=f"Build could not prepare branch `{branch}`: {exc}",
            )
            raise

        resuming = observed.build_state is not None and observed.build_state.status == "incomplete"
        follow_ups = observed.follow_up_tasks if resuming else ()
        started_at = self._now()
        head_sha = self._git.current_head_sha(context.path)
        self._post_status(
            issue.number,
            status="implementing",
            branch=branch,
            commit_sha=head_sha,
            text=(
                f"Resuming implementation on `{branch}` with {len(follow_ups)} follow-up task(s)."
                if resuming
                else f"Started implementation on `{branch}`."
            ),
        )
        self._state.save_build_run(
            BuildState(
                issue_number=issue.number,
                branch=branch,
                status="implementing",
                commit_sha=head_sha,
                started_at=started_at,
            ),
            repo_full_name=self._config.repo.full_name,
        )

        key = _job_key(issue.number)
        result_path = (
            self._config.runtime.base_dir
            / "runs"
            / self._config.repo.owner
            / self._config.repo.name
            / f"issue-{issue.number}-{trigger.event_id}.json"
        )
        result_path.parent.mkdir(parents=True, exist_ok=True)
        result_path.unlink(missing_ok=True)
        request = WorkLoopRequest(
            issue_number=issue.number,
            prompt=build_implementation_prompt(
                issue=issue,
                repo_full_name=self._config.repo.full_name,
                branch=branch,
                live_plan=live_plan,
                follow_up_tasks=follow_ups,
            ),
            worktree_path=context.path,
            agent=self._config.agent,
            test_command=self._config.repo.test_command,
            max_iterations=self._config.build.max_iterations,
            invoke_timeout_seconds=float(self._config.agent.timeout_seconds),
            result_path=result_path,
            log_verbose=self._log_verbose,
            log_dir=self._config.runtime.base_dir if self._log_verbose else None,
        )
        self._supervisor.start(
            key,
            self._entrypoint,
            (request,),
            timeout_seconds=float(self._config.build.work_loop_timeout_seconds),
        )
        job = BuildJob(
            key=key,
            issue=issue,
            trigger=trigger,
            branch=branch,
            worktree_path=context.path,
            live_plan=live_plan,
            plan_summary=document.summary,
            result_path=result_path,
            started_at=started_at,
        )
        self._jobs[key] = job
        log_event(
            LOGGER,
            "build_started",
            issue_number=issue.number,
            branch=branch,
            resuming=resuming,
            worktree_created=context.created,
        )
        return job

    def poll_children(self, wait_seconds: float = 0.0) -> tuple[ChildExit, ...]:
        return self._supervisor.poll(wait_seconds)

    def job(self, key: str) -> BuildJob | None:
        return self._jobs.get(key)

    def finish(self, child_exit: ChildExit) -> BuildOutcome:
        job = self._jobs.pop(child_exit.handle.key)
        try:
            return self._settle(job, child_exit)
        except (CommandError, GitHubPollingError, GitHubResponseError) as exc:
            log_event(
                LOGGER,
                "build_finish_failed",
                issue_number=job.issue.number,
                branch=job.branch,
                error_type=type(exc).__name__,
            )
            return self._fail(
                job, f"Finishing the build failed ({type(exc).__name__}): {_first_line(exc)}"
            )

    def _settle(self, job: BuildJob, child_exit: ChildExit) -> BuildOutcome:
        if child_exit.outcome == "timed_out":
            return self._fail(
                job,
                "The work loop exceeded "
                f"{self._config.build.work_loop_timeout_seconds}s and was terminated.",
            )
        try:
            result = read_work_loop_result(job.result_path)
        except WorkLoopResultError as exc:
            return self._fail(job, f"The work loop wrote an unreadable result: {exc}")
        if result is None:
            return self._fail(
                job, f"The work loop exited with code {child_exit.exitcode} without a result."
            )
        if result.status == "agent_failed":
            return self._fail(job, f"The agent failed ({result.error_kind}): {result.error_detail}")

        base_ref = f"origin/{self._config.repo.default_branch}"
        dirty = self._git.status_porcelain(job.worktree_path)
        if not dirty and self._git.commits_ahead(job.worktree_path, base_ref) == 0:
            return self._fail(
                job, "The work loop finished without changing any files; nothing to verify."
            )

        self._sync.commit(
            worktree=job.worktree_path,
            message_prefix=self._config.build.commit_message_prefix,
            summary=f"#{job.issue.number} {job.issue.title}",
            requested_by=job.trigger.actor_login or None,
        )

        if result.status == "tests_failing":
            return self._incomplete(
                job,
                reason="The test command still fails after the final work-loop iteration.",
                missing_items=("Test command passes",),
                follow_up_tasks=("Fix the failing tests reported by the test command",),
            )

        diff = self._git.diff_against(job.worktree_path, base_ref)
        try:
            verification = self._verifier.verify(
                issue=job.issue,
                live_plan=job.live_plan,
                diff=diff,
                cwd=job.worktree_path,
            )
        except (AgentExecutionError, AgentResponseError) as exc:
            return self._fail(job, f"Verification could not run: {exc}")

        if not verification.complete:
            return self._incomplete(
                job,
                reason=verification.reason,
                missing_items=verification.missing_items,
                follow_up_tasks=verification.follow_up_tasks,
            )
        return self._complete(job, verification_reason=verification.reason)

    def _complete(self, job: BuildJob, *, verification_reason: str) -> BuildOutcome:
        push = self._sync.push(worktree=job.worktree_path, branch=job.branch)
        if push.status == "push_rejected":
            return self._fail(
                job,
                "The push was rejected by the remote. The local commit is preserved; "
                "resolve the branch manually.",
            )

        base = self._config.repo.default_branch
        pull_request = self._github.find_pull_request_by_head(head=job.branch, base=base)
        if pull_request is None:
            pull_request = self._github.create_pull_request(
                title=f"Resolve #{job.issue.number} - {job.issue.title}",
                head=job.branch,
                base=base,
                body=(
                    f"Fixes #{job.issue.number}\n\n"
                    f"## Plan summary\n{job.plan_summary}\n\n"
                    f"## Verification\n{verification_reason}\n"
                ),
            )

        sha = push.commit_sha
        token = compute_trigger_token(event_key=job.trigger.event_key)
        self._post_status(
            job.issue.number,
            status="pr_created",
            branch=job.branch,
            commit_sha=sha,
            text=f"Opened pull request: {pull_request.html_url}\n\n{verification_reason}",
            token=token,
        )
        if self._config.runtime.remove_trigger_labels:
            self._github.remove_label(job.issue.number, job.trigger.label)
        return self._record(
            job,
            status="pr_created",
            commit_sha=sha,
            reason=verification_reason,
            pull_request=pull_request,
        )

    def _incomplete(
        self,
        job: BuildJob,
        *,
        reason: str,
        missing_items: tuple[str, ...],
        follow_up_tasks: tuple[str, ...],
    ) -> BuildOutcome:
        sha = self._git.current_head_sha(job.worktree_path)
        lines = [
            f"Implementation on `{job.branch}` is incomplete. Work is committed locally "
            "and has not been pushed.",
            "",
            reason,
        ]
        if missing_items:
            lines.extend(["", "Missing:"])
            lines.extend(f"- {item}" for item in missing_items)
        lines.extend(["", "Follow-up tasks:", render_follow_up_tasks(follow_up_tasks)])
        self._post_status(
            job.issue.number,
            status="incomplete",
            branch=job.branch,
            commit_sha=sha,
            text="\n".join(lines),
        )
        return self._record(
            job,
            status="incomplete",
            commit_sha=sha,
            reason=reason,
            follow_up_tasks=follow_up_tasks,
        )

    def _fail(self, job: BuildJob, reason: str) -> BuildOutcome:
        sha: str | None = None
        try:
            committed = self._sync.commit(
                worktree=job.worktree_path,
                message_prefix=self._config.build.commit_message_prefix,
                summary=f"#{job.issue.number} partial work",
                requested_by=job.trigger.actor_login or None,
            )
            sha = committed.commit_sha or self._git.current_head_sha(job.worktree_path)
        except CommandError as exc:
            log_event(
                LOGGER,
                "build_preserve_failed",
                issue_number=job.issue.number,
                branch=job.branch,
                error_type=type(exc).__name__,
            )
        preserved = f" at `{sha[:12]}`" if sha else ""
        self._post_status(
            job.issue.number,
            status="failed",
            branch=job.branch,
            commit_sha=sha,
            text=(
                f"Build failed: {reason}\n\n"
                f"Work is preserved on local branch `{job.branch}`{preserved}. "
                "Nothing was force-pushed."
            ),
        )
        return self._record(job, status="failed", commit_sha=sha, reason=reason)

    def _record(
        self,
        job: BuildJob,
        *,
        status: BuildStatus,
        commit_sha: str | None,
        reason: str,
        pull_request: PullRequest | None = None,
        follow_up_tasks: tuple[str, ...] = (),
    ) -> BuildOutcome:
        self._state.save_build_run(
            BuildState(
                issue_number=job.issue.number,
                branch=job.branch,
                status=status,
                commit_sha=commit_sha,
                started_at=job.started_at,
            ),
            repo_full_name=self._config.repo.full_name,
            pr_number=pull_request.number if pull_request is not None else None,
            pr_url=pull_request.html_url if pull_request is not None else None,
            detail=reason,
        )
        log_event(
            LOGGER,
            "build_finished",
            issue_number=job.issue.number,
            branch=job.branch,
            status=status,
            commit_sha=commit_sha,
        )
        return BuildOutcome(
            issue_number=job.issue.number,
            event_key=job.trigger.event_key,
            status=status,
            branch=job.branch,
            commit_sha=commit_sha,
            reason=reason,
            pull_request=pull_request,
            follow_up_tasks=follow_up_tasks,
        )

    def _post_status(
        self,
        issue_number: int,
        *,
        status: BuildStatus,
        branch: str,
        commit_sha: str | None,
        text: str,
        token: str | None = None,
    ) -> None:
        body = f"{render_status_marker(status=status, branch=branch, commit_sha=commit_sha)}\n{text}"
        if token is not None:
            body = append_action_token(body=body, token=token)
        self._github.post_issue_comment(issue_number, body)


def _first_line(exc: Exception) -> str:
    lines = str(exc).strip().splitlines()
    return lines[0] if lines else "<no message>"


def _job_key(issue_number: int) -> str:
    return f"build-{issue_number}"


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
