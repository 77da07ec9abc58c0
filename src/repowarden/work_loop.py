from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Literal, cast

from repowarden.agent_executor import AgentExecutionError, AgentExecutor, build_agent_executor
from repowarden.atomic_file import atomic_write_json
from repowarden.config import AgentConfig
from repowarden.observability import configure_logging, log_event
from repowarden.prompts import build_test_failure_prompt
from repowarden.shell import CommandError, CommandTimeoutError, run


LOGGER = logging.getLogger("repowarden.work_loop")
_MAX_TEST_OUTPUT_CHARS = 12_000

WorkLoopStatus = Literal["completed", "tests_failing", "agent_failed"]
_WORK_LOOP_STATUSES: tuple[WorkLoopStatus, ...] = ("completed", "tests_failing", "agent_failed")


class WorkLoopResultError(ValueError):
    pass


@dataclass(frozen=True)
class WorkLoopRequest:
    issue_number: int
    prompt: str
    worktree_path: Path
    agent: AgentConfig
    test_command: tuple[str, ...]
    max_iterations: int
    invoke_timeout_seconds: float
    result_path: Path
    log_verbose: str | None = None
    log_dir: Path | None = None


@dataclass(frozen=True)
class WorkLoopResult:
    status: WorkLoopStatus
    iterations: int
    last_output: str
    test_output: str = ""
    error_kind: str | None = None
    error_detail: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "iterations": self.iterations,
            "last_output": self.last_output,
            "test_output": self.test_output,
            "error_kind": self.error_kind,
            "error_detail": self.error_detail,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> WorkLoopResult:
        status = payload.get("status")
        if status not in _WORK_LOOP_STATUSES:
            raise WorkLoopResultError(f"Unknown work loop status: {status!r}")
        iterations = payload.get("iterations")
        if isinstance(iterations, bool) or not isinstance(iterations, int):
            raise WorkLoopResultError("Work loop result is missing iterations")
        error_kind = payload.get("error_kind")
        return cls(
            status=cast(WorkLoopStatus, status),
            iterations=iterations,
            last_output=str(payload.get("last_output") or ""),
            test_output=str(payload.get("test_output") or ""),
            error_kind=error_kind if isinstance(error_kind, str) else None,
            error_detail=str(payload.get("error_detail") or ""),
        )


def run_work_loop(request: WorkLoopRequest, executor: AgentExecutor) -> WorkLoopResult:
    prompt = request.prompt
    last_output = ""
    test_output = ""
    for iteration in range(1, request.max_iterations + 1):
        log_event(
            LOGGER,
            "work_loop_iteration_started",
            issue_number=request.issue_number,
            iteration=iteration,
        )
        try:
            result = executor.invoke(
                prompt=prompt,
                cwd=request.worktree_path,
                timeout_seconds=request.invoke_timeout_seconds,
            )
        except AgentExecutionError as exc:
            log_event(
                LOGGER,
                "work_loop_agent_failed",
                issue_number=request.issue_number,
                iteration=iteration,
                kind=exc.kind,
            )
            return WorkLoopResult(
                status="agent_failed",
                iterations=iteration,
                last_output=last_output,
                test_output=test_output,
                error_kind=exc.kind,
                error_detail=exc.detail,
            )
        last_output = result.text

        if not request.test_command:
            return WorkLoopResult(status="completed", iterations=iteration, last_output=last_output)

        passed, test_output = run_test_command(request.test_command, cwd=request.worktree_path)
        log_event(
            LOGGER,
            "work_loop_tests_finished",
            issue_number=request.issue_number,
            iteration=iteration,
            passed=passed,
        )
        if passed:
            return WorkLoopResult(
                status="completed",
                iterations=iteration,
                last_output=last_output,
                test_output=test_output,
            )
        prompt = build_test_failure_prompt(
            base_prompt=request.prompt,
            iteration=iteration + 1,
            test_output=test_output,
        )

    return WorkLoopResult(
        status="tests_failing",
        iterations=request.max_iterations,
        last_output=last_output,
        test_output=test_output,
    )


def run_test_command(
    argv: tuple[str, ...], *, cwd: Path, timeout_seconds: float | None = None
) -> tuple[bool, str]:
    try:
        output = run(list(argv), cwd=cwd, timeout_seconds=timeout_seconds)
    except FileNotFoundError as exc:
        return False, f"test command not found: {exc}"
    except CommandTimeoutError as exc:
        partial = _clip(f"{exc.stdout}\n{exc.stderr}")
        return False, f"test command timed out after {timeout_seconds}s\n{partial}".strip()
    except CommandError as exc:
        return False, _clip(f"{exc.stdout}\n{exc.stderr}")
    return True, _clip(output)


def work_loop_entrypoint(request: WorkLoopRequest) -> None:
    """Child-process target. The result file is the only channel back to the parent."""
    if request.log_verbose:
        configure_logging(
            request.log_verbose,
            state_dir=request.log_dir,
            log_name=f"build-{request.issue_number}",
        )
    executor = build_agent_executor(request.agent)
    result = run_work_loop(request, executor)
    atomic_write_json(request.result_path, result.to_dict())


def read_work_loop_result(path: Path) -> WorkLoopResult | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise WorkLoopResultError(f"Work loop result is not valid JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise WorkLoopResultError(f"Work loop result must be a JSON object: {path}")
    return WorkLoopResult.from_dict(cast(dict[str, object], payload))


def _clip(text: str) -> str:
    stripped = text.strip()
    if len(stripped) <= _MAX_TEST_OUTPUT_CHARS:
        return stripped
    return f"...{stripped[-_MAX_TEST_OUTPUT_CHARS:]}"
