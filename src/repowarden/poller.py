from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Callable, Literal

from repowarden.build_stage import BuildOutcome, BuildStage
from repowarden.change_request_stage import ChangeRequestStage
from repowarden.config import AppConfig
from repowarden.github_gateway import GitHubGateway, GitHubPollingError
from repowarden.models import Issue, IssueCursor, Trigger, WatchState
from repowarden.observability import log_event
from repowarden.plan_stage import PlanStage
from repowarden.state import StateStore
from repowarden.trigger_state import TriggerStateMachine, derive_state


LOGGER = logging.getLogger("repowarden.poller")

_TriggerResult = Literal["routed", "started", "skipped", "failed", "transient"]


@dataclass(frozen=True)
class TickSummary:
    issues_seen: int = 0
    routed: int = 0
    builds_started: int = 0
    builds_finished: int = 0
    skipped: int = 0
    failed: int = 0
    transient_error: bool = False


class RepositoryPoller:
    """Single-threaded poll loop that turns labelled issues into stage work.

    Each (issue, label) pair is handled in isolation so one bad trigger never
    aborts the rest of the tick.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        state: StateStore,
        plan_stage: PlanStage,
        build_stage: BuildStage,
        change_request_stage: ChangeRequestStage,
        machine: TriggerStateMachine | None = None,
        now: Callable[[], str] | None = None,
    ) -> None:
        self._config = config
        self._github = github
        self._state = state
        self._plan_stage = plan_stage
        self._build_stage = build_stage
        self._change_request_stage = change_request_stage
        self._machine = machine or TriggerStateMachine(config.repo, config.build)
        self._now = now or _utc_now_iso8601
        self._cursors: dict[int, IssueCursor] = {
            cursor.issue_number: cursor
            for cursor in state.list_cursors(repo_full_name=config.repo.full_name)
        }

    @property
    def config(self) -> AppConfig:
        return self._config

    def busy(self) -> bool:
        return self._build_stage.running_count() > 0

    def restore(self, watch_state: WatchState) -> None:
        for cursor in watch_state.cursors:
            self._cursors[cursor.issue_number] = cursor
            self._state.save_cursor(cursor, repo_full_name=self._config.repo.full_name)

    def watch_state(self) -> WatchState:
        return WatchState(
            repo=self._config.repo.full_name,
            poll_interval_seconds=self._config.runtime.poll_interval_seconds,
            provider=self._config.agent.provider,
            cursors=tuple(self._cursors[number] for number in sorted(self._cursors)),
        )

    def run(self, *, once: bool, after_tick: Callable[[], None] | None = None) -> None:
        log_event(
            LOGGER,
            "watch_started",
            repo_full_name=self._config.repo.full_name,
            once=once,
            poll_interval_seconds=self._config.runtime.poll_interval_seconds,
        )
        while True:
            self.tick()
            if after_tick is not None:
                after_tick()
            if once:
                self.wait_for_builds()
                break
            time.sleep(self._config.runtime.poll_interval_seconds)

    def wait_for_builds(self) -> int:
        finished = 0
        while self._build_stage.running_count() > 0:
            finished += self._reap_builds(self._config.build.child_poll_seconds)
        return finished

    def tick(self) -> TickSummary:
        builds_finished = self._reap_builds(0.0)
        labels = self._config.repo.trigger_labels
        try:
            issues = self._github.list_open_issues_with_any_labels(labels)
        except GitHubPollingError as exc:
            log_event(LOGGER, "poll_transient_failure", stage="list_issues", error=str(exc))
            return TickSummary(builds_finished=builds_finished, transient_error=True)

        counts: dict[_TriggerResult, int] = {
            "routed": 0,
            "started": 0,
            "skipped": 0,
            "failed": 0,
            "transient": 0,
        }
        for issue in issues:
            for label in labels:
                if label not in issue.labels:
                    continue
                counts[self._process_label(issue, label)] += 1

        summary = TickSummary(
            issues_seen=len(issues),
            routed=counts["routed"],
            builds_started=counts["started"],
            builds_finished=builds_finished,
            skipped=counts["skipped"],
            failed=counts["failed"],
            transient_error=counts["transient"] > 0,
        )
        log_event(
            LOGGER,
            "poll_completed",
            issues_seen=summary.issues_seen,
            routed=summary.routed,
            builds_started=summary.builds_started,
            builds_finished=summary.builds_finished,
            skipped=summary.skipped,
            failed=summary.failed,
            running_builds=self._build_stage.running_count(),
        )
        return summary

    def _process_label(self, issue: Issue, label: str) -> _TriggerResult:
        try:
            trigger = self._resolve_trigger(issue, label)
        except GitHubPollingError as exc:
            log_event(LOGGER, "poll_transient_failure", issue_number=issue.number, error=str(exc))
            return "transient"
        if trigger is None:
            return "skipped"
        try:
            return self._dispatch(issue, trigger)
        except GitHubPollingError as exc:
            log_event(
                LOGGER,
                "poll_transient_failure",
                issue_number=issue.number,
                event_key=trigger.event_key,
                error=str(exc),
            )
            return "transient"
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "trigger_processing_failed",
                issue_number=issue.number,
                label=label,
                event_key=trigger.event_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._state.record_failure(
                trigger.event_key,
                repo_full_name=self._config.repo.full_name,
                issue_number=issue.number,
                error=f"{type(exc).__name__}: {exc}",
            )
            return "failed"

    def _resolve_trigger(self, issue: Issue, label: str) -> Trigger | None:
        event = self._github.latest_label_event(issue.number, label)
        if event is None:
            log_event(
                LOGGER,
                "trigger_skipped",
                issue_number=issue.number,
                label=label,
                reason="label_event_missing",
            )
            return None
        if not self._config.repo.allows(event.actor_login):
            log_event(
                LOGGER,
                "trigger_skipped",
                issue_number=issue.number,
                label=label,
                reason="actor_not_allowed",
                actor_login=event.actor_login,
            )
            return None
        return Trigger(
            repo=self._config.repo.full_name,
            issue_number=issue.number,
            label=label,
            event_id=event.event_id,
            comment_id=None,
            observed_at=self._now(),
            actor_login=event.actor_login,
        )

    def _dispatch(self, issue: Issue, trigger: Trigger) -> _TriggerResult:
        repo_full_name = self._config.repo.full_name
        event_key = trigger.event_key
        if self._state.is_processed(event_key, repo_full_name=repo_full_name):
            return "skipped"
        if self._build_stage.is_running(issue.number):
            return "skipped"
        failures = self._state.failure_count(event_key, repo_full_name=repo_full_name)
        if failures >= self._config.runtime.max_event_attempts:
            log_event(
                LOGGER,
                "trigger_skipped",
                issue_number=issue.number,
                event_key=event_key,
                reason="retry_budget_exhausted",
                failures=failures,
            )
            return "skipped"

        comments = tuple(self._github.list_issue_comments(issue.number))
        observed = derive_state(comments, issue_number=issue.number)
        self._update_cursor(issue.number, observed.last_comment_at, event_key)
        route = self._machine.route(trigger, observed, is_pull_request=issue.is_pull_request)
        log_event(
            LOGGER,
            "trigger_routed",
            issue_number=issue.number,
            event_key=event_key,
            route=route.kind,
            reason=route.reason,
            workflow_state=observed.workflow_state,
        )

        if route.kind == "noop":
            if route.reason == "already_processed":
                self._mark_processed(trigger, route.kind)
            return "skipped"
        if route.kind in ("plan_create", "plan_iterate"):
            self._plan_stage.run(issue=issue, trigger=trigger, observed=observed, comments=comments)
            self._mark_processed(trigger, route.kind)
            return "routed"
        if route.kind == "build":
            self._build_stage.start(issue=issue, trigger=trigger, observed=observed)
            return "started"
        self._change_request_stage.run(trigger=trigger, observed=observed, comments=comments)
        self._mark_processed(trigger, route.kind)
        return "routed"

    def _reap_builds(self, wait_seconds: float) -> int:
        finished = 0
        for child_exit in self._build_stage.poll_children(wait_seconds):
            job = self._build_stage.job(child_exit.handle.key)
            try:
                outcome = self._build_stage.finish(child_exit)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "build_finish_failed",
                    key=child_exit.handle.key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if job is not None:
                    self._state.record_failure(
                        job.trigger.event_key,
                        repo_full_name=self._config.repo.full_name,
                        issue_number=job.issue.number,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                continue
            self._record_build_outcome(outcome)
            finished += 1
        return finished

    def _record_build_outcome(self, outcome: BuildOutcome) -> None:
        repo_full_name = self._config.repo.full_name
        if outcome.terminal_success:
            self._state.mark_processed(
                outcome.event_key,
                repo_full_name=repo_full_name,
                issue_number=outcome.issue_number,
                label=self._config.repo.build_label,
                route="build",
            )
        elif outcome.status == "failed":
            self._state.record_failure(
                outcome.event_key,
                repo_full_name=repo_full_name,
                issue_number=outcome.issue_number,
                error=outcome.reason,
            )

    def _mark_processed(self, trigger: Trigger, route: str) -> None:
        self._state.mark_processed(
            trigger.event_key,
            repo_full_name=self._config.repo.full_name,
            issue_number=trigger.issue_number,
            label=trigger.label,
            route=route,
        )

    def _update_cursor(self, issue_number: int, last_comment_at: str | None, event_key: str) -> None:
        previous = self._cursors.get(issue_number)
        cursor = IssueCursor(
            issue_number=issue_number,
            last_comment_at=last_comment_at
            or (previous.last_comment_at if previous is not None else None),
            last_event_key=event_key,
        )
        self._cursors[issue_number] = cursor
        self._state.save_cursor(cursor, repo_full_name=self._config.repo.full_name)


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
