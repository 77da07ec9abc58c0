from __future__ import annotations

from pathlib import Path

import pytest

from repowarden.build_stage import BuildJob, BuildOutcome
from repowarden.child_process import ChildExit, ChildHandle
from repowarden.config import AppConfig, RepoConfig, RuntimeConfig
from repowarden.github_gateway import GitHubPollingError
from repowarden.markers import append_action_token, compute_trigger_token
from repowarden.models import (
    Issue,
    IssueComment,
    IssueCursor,
    LabelEvent,
    PlanDocument,
    Trigger,
    WatchState,
)
from repowarden.observability import configure_logging
from repowarden.plan_document import render_plan_comment
from repowarden.poller import RepositoryPoller
from repowarden.state import StateStore
from repowarden.trigger_state import ObservedState


REPO = "acme/widgets"


class FakeGitHub:
    def __init__(self, issues: list[Issue]) -> None:
        self.issues = issues
        self.events: dict[tuple[int, str], LabelEvent | None] = {}
        self.comments: dict[int, list[IssueComment]] = {}
        self.list_error: GitHubPollingError | None = None
        self.event_errors: set[int] = set()

    def list_open_issues_with_any_labels(self, labels: tuple[str, ...]) -> list[Issue]:
        _ = labels
        if self.list_error is not None:
            raise self.list_error
        return self.issues

    def latest_label_event(self, issue_number: int, label: str) -> LabelEvent | None:
        if issue_number in self.event_errors:
            raise GitHubPollingError("events unavailable")
        return self.events.get((issue_number, label))

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        return list(self.comments.get(issue_number, []))


class FakePlanStage:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[int, str]] = []

    def run(
        self,
        *,
        issue: Issue,
        trigger: Trigger,
        observed: ObservedState,
        comments: tuple[IssueComment, ...],
    ) -> None:
        _ = observed, comments
        self.calls.append((issue.number, trigger.event_key))
        if self.error is not None:
            raise self.error


class FakeChangeRequestStage:
    def __init__(self) -> None:
        self.calls: list[int] = []

    def run(
        self,
        *,
        trigger: Trigger,
        observed: ObservedState,
        comments: tuple[IssueComment, ...],
    ) -> None:
        _ = observed, comments
        self.calls.append(trigger.issue_number)


class FakeBuildStage:
    def __init__(self, tmp_path: Path) -> None:
        self.tmp_path = tmp_path
        self.jobs: dict[str, BuildJob] = {}
        self.pending_exits: list[ChildExit] = []
        self.outcome_status = "pr_created"
        self.finish_error: Exception | None = None
        self.polls: list[float] = []

    def running_count(self) -> int:
        return len(self.jobs)

    def is_running(self, issue_number: int) -> bool:
        return f"build-{issue_number}" in self.jobs

    def start(self, *, issue: Issue, trigger: Trigger, observed: ObservedState) -> BuildJob:
        _ = observed
        job = BuildJob(
            key=f"build-{issue.number}",
            issue=issue,
            trigger=trigger,
            branch=f"repowarden/{issue.number}-x",
            worktree_path=self.tmp_path,
            live_plan="plan",
            plan_summary="s",
            result_path=self.tmp_path / "r.json",
            started_at="t",
        )
        self.jobs[job.key] = job
        return job

    def complete(self, issue_number: int) -> None:
        self.pending_exits.append(
            ChildExit(
                handle=ChildHandle(key=f"build-{issue_number}", pid=1, started_at=0, deadline=1),
                outcome="exited",
                exitcode=0,
            )
        )

    def poll_children(self, wait_seconds: float = 0.0) -> tuple[ChildExit, ...]:
        self.polls.append(wait_seconds)
        exits = tuple(self.pending_exits)
        self.pending_exits.clear()
        return exits

    def job(self, key: str) -> BuildJob | None:
        return self.jobs.get(key)

    def finish(self, child_exit: ChildExit) -> BuildOutcome:
        job = self.jobs.pop(child_exit.handle.key)
        if self.finish_error is not None:
            raise self.finish_error
        return BuildOutcome(
            issue_number=job.issue.number,
            event_key=job.trigger.event_key,
            status=self.outcome_status,  # type: ignore[arg-type]
            branch=job.branch,
            commit_sha="sha",
            reason="r",
        )


def _issue(number: int, *labels: str, is_pull_request: bool = False) -> Issue:
    return Issue(
        number=number,
        title=f"Issue {number}",
        body="b",
        html_url="u",
        labels=labels,
        is_pull_request=is_pull_request,
    )


def _event(event_id: int, actor: str = "alice") -> LabelEvent:
    return LabelEvent(event_id=event_id, label="x", actor_login=actor, created_at="t")


def _plan_comment(issue_number: int) -> IssueComment:
    return IssueComment(
        comment_id=1,
        body=render_plan_comment(
            PlanDocument(
                issue_number=issue_number,
                iteration=1,
                summary="s",
                tasks=("t",),
                open_questions=(),
            )
        ),
        user_login="bot",
        html_url="u",
        created_at="2026-01-01T00:00:00Z",
        updated_at="2026-01-01T00:00:05Z",
    )


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        issues: list[Issue],
        *,
        allowed_users: frozenset[str] = frozenset(),
        max_event_attempts: int = 3,
        plan_error: Exception | None = None,
    ) -> None:
        self.config = AppConfig(
            runtime=RuntimeConfig(
                base_dir=tmp_path, poll_interval_seconds=30, max_event_attempts=max_event_attempts
            ),
            repo=RepoConfig(owner="acme", name="widgets", allowed_users=allowed_users),
        )
        self.github = FakeGitHub(issues)
        self.state = StateStore(tmp_path / "state.db")
        self.plan = FakePlanStage(plan_error)
        self.builds = FakeBuildStage(tmp_path)
        self.changes = FakeChangeRequestStage()
        self.poller = RepositoryPoller(
            self.config,
            github=self.github,  # type: ignore[arg-type]
            state=self.state,
            plan_stage=self.plan,  # type: ignore[arg-type]
            build_stage=self.builds,  # type: ignore[arg-type]
            change_request_stage=self.changes,  # type: ignore[arg-type]
            now=lambda: "2026-05-01T00:00:00Z",
        )


def test_plan_trigger_is_routed_and_marked_processed(tmp_path: Path) -> None:
    harness = Harness(tmp_path, [_issue(5, "plan", "bug")])
    harness.github.events[(5, "plan")] = _event(100)

    summary = harness.poller.tick()

    assert summary.issues_seen == 1
    assert summary.routed == 1
    assert harness.plan.calls == [(5, "acme/widgets#5:plan:100")]
    assert harness.state.is_processed("acme/widgets#5:plan:100", repo_full_name=REPO)

    second = harness.poller.tick()
    assert second.skipped == 1
    assert len(harness.plan.calls) == 1


def test_trigger_with_token_in_comments_is_marked_without_rerun(tmp_path: Path) -> None:
    harness = Harness(tmp_path, [_issue(5, "plan")])
    harness.github.events[(5, "plan")] = _event(100)
    token = compute_trigger_token(event_key="acme/widgets#5:plan:100")
    harness.github.comments[5] = [
        IssueComment(
            comment_id=3,
            body=append_action_token(body="done", token=token),
            user_login="bot",
            html_url="u",
            created_at="t",
            updated_at="t",
        )
    ]

    summary = harness.poller.tick()

    assert summary.skipped == 1
    assert harness.plan.calls == []
    assert harness.state.is_processed("acme/widgets#5:plan:100", repo_full_name=REPO)


def test_unauthorized_actor_and_missing_event_are_skipped(tmp_path: Path) -> None:
    harness = Harness(
        tmp_path,
        [_issue(5, "plan"), _issue(6, "plan")],
        allowed_users=frozenset({"alice"}),
    )
    harness.github.events[(5, "plan")] = _event(100, actor="mallory")

    summary = harness.poller.tick()

    assert summary.skipped == 2
    assert harness.plan.calls == []


def test_stage_failures_count_against_retry_budget(tmp_path: Path) -> None:
    harness = Harness(
        tmp_path,
        [_issue(5, "plan")],
        max_event_attempts=2,
        plan_error=RuntimeError("agent blew up"),
    )
    harness.github.events[(5, "plan")] = _event(100)
    key = "acme/widgets#5:plan:100"

    assert harness.poller.tick().failed == 1
    assert harness.poller.tick().failed == 1
    exhausted = harness.poller.tick()

    assert exhausted.failed == 0
    assert exhausted.skipped == 1
    assert harness.state.failure_count(key, repo_full_name=REPO) == 2
    assert len(harness.plan.calls) == 2


def test_one_bad_issue_does_not_block_others(tmp_path: Path) -> None:
    harness = Harness(tmp_path, [_issue(5, "plan"), _issue(6, "plan")])
    harness.github.event_errors.add(5)
    harness.github.events[(6, "plan")] = _event(200)

    summary = harness.poller.tick()

    assert summary.transient_error
    assert summary.routed == 1
    assert harness.plan.calls == [(6, "acme/widgets#6:plan:200")]


def test_listing_failure_is_transient(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    harness = Harness(tmp_path, [])
    harness.github.list_error = GitHubPollingError("502")
    configure_logging(verbose=True)

    summary = harness.poller.tick()

    assert summary.transient_error
    assert summary.issues_seen == 0
    assert "event=poll_transient_failure" in capsys.readouterr().err


def test_build_lifecycle_marks_processed_only_on_success(tmp_path: Path) -> None:
    harness = Harness(tmp_path, [_issue(5, "build")])
    harness.github.events[(5, "build")] = _event(300)
    harness.github.comments[5] = [_plan_comment(5)]
    key = "acme/widgets#5:build:300"

    assert harness.poller.tick().builds_started == 1
    assert harness.poller.busy()
    assert harness.poller.tick().builds_started == 0

    harness.builds.complete(5)
    summary = harness.poller.tick()

    assert summary.builds_finished == 1
    assert harness.state.is_processed(key, repo_full_name=REPO)
    assert not harness.poller.busy()


@pytest.mark.parametrize("status,failures", [("incomplete", 0), ("failed", 1)])
def test_unsuccessful_builds_leave_trigger_open(
    tmp_path: Path, status: str, failures: int
) -> None:
    harness = Harness(tmp_path, [_issue(5, "build")])
    harness.github.events[(5, "build")] = _event(300)
    harness.github.comments[5] = [_plan_comment(5)]
    harness.builds.outcome_status = status
    key = "acme/widgets#5:build:300"

    harness.poller.tick()
    harness.builds.complete(5)
    harness.github.issues = []
    harness.poller.tick()

    assert not harness.state.is_processed(key, repo_full_name=REPO)
    assert harness.state.failure_count(key, repo_full_name=REPO) == failures


def test_finish_exception_records_failure(tmp_path: Path) -> None:
    harness = Harness(tmp_path, [_issue(5, "build")])
    harness.github.events[(5, "build")] = _event(300)
    harness.github.comments[5] = [_plan_comment(5)]
    harness.poller.tick()
    harness.builds.finish_error = RuntimeError("git exploded")
    harness.builds.complete(5)
    harness.github.issues = []

    assert harness.poller.tick().builds_finished == 0
    assert harness.state.failure_count("acme/widgets#5:build:300", repo_full_name=REPO) == 1


def test_change_request_on_pull_request(tmp_path: Path) -> None:
    harness = Harness(tmp_path, [_issue(21, "request-changes", is_pull_request=True)])
    harness.github.events[(21, "request-changes")] = _event(400)

    assert harness.poller.tick().routed == 1
    assert harness.changes.calls == [21]


def test_cursors_are_tracked_and_restored(tmp_path: Path) -> None:
    harness = Harness(tmp_path, [_issue(5, "build")])
    harness.github.events[(5, "build")] = _event(300)
    harness.github.comments[5] = [_plan_comment(5)]
    harness.poller.restore(
        WatchState(
            repo=REPO,
            poll_interval_seconds=30,
            provider="codex",
            cursors=(IssueCursor(issue_number=2, last_comment_at="x", last_event_key="k"),),
        )
    )

    harness.poller.tick()
    state = harness.poller.watch_state()

    assert state.repo == REPO
    assert state.poll_interval_seconds == 30
    assert state.provider == "codex"
    assert state.cursors == (
        IssueCursor(issue_number=2, last_comment_at="x", last_event_key="k"),
        IssueCursor(
            issue_number=5,
            last_comment_at="2026-01-01T00:00:05Z",
            last_event_key="acme/widgets#5:build:300",
        ),
    )
    assert len(harness.state.list_cursors(repo_full_name=REPO)) == 2


def test_run_once_waits_for_builds(tmp_path: Path) -> None:
    harness = Harness(tmp_path, [_issue(5, "build")])
    harness.github.events[(5, "build")] = _event(300)
    harness.github.comments[5] = [_plan_comment(5)]
    ticks: list[bool] = []

    def after_tick() -> None:
        ticks.append(harness.poller.busy())
        harness.builds.complete(5)

    harness.poller.run(once=True, after_tick=after_tick)

    assert ticks == [True]
    assert not harness.poller.busy()
    assert harness.builds.polls[-1] == harness.config.build.child_poll_seconds
    assert harness.state.is_processed("acme/widgets#5:build:300", repo_full_name=REPO)
