from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from repowarden.agent_executor import (
    AgentExecutor,
    optional_str,
    parse_json_object,
    require_bool,
    str_list,
)
from repowarden.models import Issue
from repowarden.observability import log_event
from repowarden.prompts import build_verification_prompt


LOGGER = logging.getLogger("repowarden.verifier")


@dataclass(frozen=True)
class VerificationResult:
    complete: bool
    reason: str
    missing_items: tuple[str, ...] = ()
    follow_up_tasks: tuple[str, ...] = ()


class ImplementationVerifier:
    """Asks the agent to judge a diff against the issue's acceptance criteria."""

    def __init__(self, executor: AgentExecutor, *, timeout_seconds: float) -> None:
        self._executor = executor
        self._timeout_seconds = timeout_seconds

    def verify(self, *, issue: Issue, live_plan: str, diff: str, cwd: Path) -> VerificationResult:
        prompt = build_verification_prompt(issue=issue, live_plan=live_plan, diff=diff)
        result = self._executor.invoke(
            prompt=prompt,
            cwd=cwd,
            timeout_seconds=self._timeout_seconds,
        )
        payload = parse_json_object(result.text)
        complete = require_bool(payload, "complete")
        missing = str_list(payload, "missing_items")
        follow_ups = str_list(payload, "follow_up_tasks")
        if not complete and not follow_ups:
            # An incomplete verdict must leave something for the next round to do.
            follow_ups = missing or ("Address the remaining acceptance criteria",)
        verification = VerificationResult(
            complete=complete,
            reason=optional_str(payload, "reason") or ("complete" if complete else "incomplete"),
            missing_items=missing,
            follow_up_tasks=() if complete else follow_ups,
        )
        log_event(
            LOGGER,
            "verification_finished",
            issue_number=issue.number,
            complete=verification.complete,
            missing_count=len(verification.missing_items),
        )
        return verification
