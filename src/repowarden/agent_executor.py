from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import tempfile
import time
from typing import Literal, cast

from repowarden.config import AgentConfig
from repowarden.observability import log_event
from repowarden.shell import CommandError, CommandTimeoutError, run


LOGGER = logging.getLogger("repowarden.agent_executor")

AgentFailureKind = Literal["unavailable", "timeout", "nonzero_exit"]


class AgentExecutionError(RuntimeError):
    def __init__(self, kind: AgentFailureKind, detail: str) -> None:
        super().__init__(f"agent {kind}: {detail}")
        self.kind = kind
        self.detail = detail


class AgentResponseError(RuntimeError):
    """Agent output did not have the requested structure."""


@dataclass(frozen=True)
class AgentResult:
    text: str
    exit_status: int


class AgentExecutor(ABC):
    name: str = "agent"

    @abstractmethod
    def invoke(self, *, prompt: str, cwd: Path, timeout_seconds: float) -> AgentResult:
        """Run one agent turn in cwd and return its final text output."""


class CommandExecutor(AgentExecutor):
    """Runs an arbitrary CLI with the prompt on stdin and stdout as the result."""

    name = "command"

    def __init__(self, argv: tuple[str, ...]) -> None:
        if not argv:
            raise ValueError("CommandExecutor requires a non-empty argv")
        self._argv = argv

    def invoke(self, *, prompt: str, cwd: Path, timeout_seconds: float) -> AgentResult:
        return self._invoke_argv(
            list(self._argv), prompt=prompt, cwd=cwd, timeout_seconds=timeout_seconds
        )

    def _invoke_argv(
        self,
        argv: list[str],
        *,
        prompt: str,
        cwd: Path,
        timeout_seconds: float,
    ) -> AgentResult:
        started = time.monotonic()
        log_event(
            LOGGER,
            "agent_invocation_started",
            executor=self.name,
            cwd=str(cwd),
            prompt_chars=len(prompt),
            timeout_seconds=timeout_seconds,
        )
        try:
            output = run(argv, cwd=cwd, input_text=prompt, timeout_seconds=timeout_seconds)
        except FileNotFoundError as exc:
            self._log_failure("unavailable", started)
            raise AgentExecutionError("unavailable", f"{argv[0]} not found on PATH") from exc
        except CommandTimeoutError as exc:
            self._log_failure("timeout", started)
            raise AgentExecutionError(
                "timeout", f"{argv[0]} exceeded {timeout_seconds}s"
            ) from exc
        except CommandError as exc:
            self._log_failure("nonzero_exit", started)
            raise AgentExecutionError(
                "nonzero_exit",
                f"{argv[0]} exited with {exc.returncode}: {_tail(exc.stderr or exc.stdout)}",
            ) from exc
        log_event(
            LOGGER,
            "agent_invocation_finished",
            executor=self.name,
            output_chars=len(output),
            duration_seconds=round(time.monotonic() - started, 3),
        )
        return AgentResult(text=output, exit_status=0)

    def _log_failure(self, kind: AgentFailureKind, started: float) -> None:
        log_event(
            LOGGER,
            "agent_invocation_failed",
            executor=self.name,
            kind=kind,
            duration_seconds=round(time.monotonic() - started, 3),
        )


class CodexExecutor(CommandExecutor):
    name = "codex"

    def __init__(self, config: AgentConfig) -> None:
        super().__init__(("codex",))
        self._config = config

    def invoke(self, *, prompt: str, cwd: Path, timeout_seconds: float) -> AgentResult:
        with tempfile.TemporaryDirectory(prefix="repowarden_codex_") as tmp:
            output_path = Path(tmp) / "last_message.txt"
            cmd = [
                "codex",
                "exec",
                "--json",
                "--skip-git-repo-check",
                "--output-last-message",
                str(output_path),
            ]
            if self._config.model:
                cmd.extend(["--model", self._config.model])
            cmd.extend(self._config.extra_args)
            cmd.append("-")
            result = self._invoke_argv(cmd, prompt=prompt, cwd=cwd, timeout_seconds=timeout_seconds)
            if output_path.exists():
                return AgentResult(
                    text=output_path.read_text(encoding="utf-8"),
                    exit_status=result.exit_status,
                )
            return result


class ClaudeExecutor(CommandExecutor):
    name = "claude"

    def __init__(self, config: AgentConfig) -> None:
        super().__init__(("claude",))
        self._config = config

    def invoke(self, *, prompt: str, cwd: Path, timeout_seconds: float) -> AgentResult:
        cmd = ["claude", "-p", "--output-format", "text"]
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        cmd.extend(self._config.extra_args)
        return self._invoke_argv(cmd, prompt=prompt, cwd=cwd, timeout_seconds=timeout_seconds)


def build_agent_executor(config: AgentConfig) -> AgentExecutor:
    if config.provider == "codex":
        return CodexExecutor(config)
    if config.provider == "claude":
        return ClaudeExecutor(config)
    return CommandExecutor(config.command + config.extra_args)


def parse_json_object(raw: str) -> dict[str, object]:
    text = raw.strip()
    fence_start = text.find("```")
    if fence_start >= 0:
        body_start = text.find("\n", fence_start)
        fence_end = text.find("```", body_start + 1) if body_start >= 0 else -1
        if body_start >= 0 and fence_end >= 0:
            text = text[body_start + 1 : fence_end].strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AgentResponseError(f"Agent response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict) or not all(isinstance(key, str) for key in payload):
        raise AgentResponseError("Agent response must be a JSON object")
    return cast(dict[str, object], payload)


def require_str(payload: dict[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise AgentResponseError(f"Agent response missing non-empty string field: {key}")
    return value.strip()


def optional_str(payload: dict[str, object], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise AgentResponseError(f"Agent response field {key} must be a string")
    return value.strip()


def require_bool(payload: dict[str, object], key: str) -> bool:
    value = payload.get(key)
    if not isinstance(value, bool):
        raise AgentResponseError(f"Agent response missing boolean field: {key}")
    return value


def str_list(payload: dict[str, object], key: str) -> tuple[str, ...]:
    value = payload.get(key, [])
    if value is None:
        return ()
    if not isinstance(value, list):
        raise AgentResponseError(f"Agent response field {key} must be a list")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise AgentResponseError(f"Agent response has invalid {key} entry")
        if item.strip():
            out.append(item.strip())
    return tuple(out)


def _tail(text: str, *, limit: int = 400) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped or "<empty>"
    return f"...{stripped[-limit:]}"
