from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
import tomllib
from typing import cast

from repowarden.models import AgentProvider, UpdatePolicyName


_AGENT_PROVIDERS: tuple[AgentProvider, ...] = ("codex", "claude", "command")
_UPDATE_POLICIES: tuple[UpdatePolicyName, ...] = ("off", "exact", "patch", "minor", "major")
MIN_UPDATE_CHECK_INTERVAL_SECONDS = 300
MAX_UPDATE_CHECK_INTERVAL_SECONDS = 86400
DEFAULT_BASE_DIR = "~/.repowarden"


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: int = 60
    max_event_attempts: int = 3
    remove_trigger_labels: bool = True


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    default_branch: str = "main"
    plan_label: str = "plan"
    build_label: str = "build"
    request_changes_label: str = "request-changes"
    needs_input_label: str = "needs-input"
    allowed_users: frozenset[str] = frozenset()
    remote_url: str | None = None
    local_clone_source: str | None = None
    test_command: tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def effective_remote_url(self) -> str:
        if self.remote_url:
            return self.remote_url
        return f"git@github.com:{self.owner}/{self.name}.git"

    @property
    def trigger_labels(self) -> tuple[str, ...]:
        labels: list[str] = []
        for label in (self.plan_label, self.build_label, self.request_changes_label):
            if label not in labels:
                labels.append(label)
        return tuple(labels)

    def allows(self, login: str) -> bool:
        if not self.allowed_users:
            return True
        normalized = login.strip().lower()
        if not normalized:
            return False
        return normalized in self.allowed_users


@dataclass(frozen=True)
class AgentConfig:
    provider: AgentProvider = "codex"
    command: tuple[str, ...] = ()
    model: str | None = None
    extra_args: tuple[str, ...] = ()
    timeout_seconds: int = 1800


@dataclass(frozen=True)
class BuildConfig:
    work_loop_timeout_seconds: int = 3600
    max_iterations: int = 5
    max_incomplete_rounds: int = 5
    branch_prefix: str = "repowarden"
    commit_message_prefix: str = "repowarden: build"
    child_poll_seconds: float = 1.0


@dataclass(frozen=True)
class ChangeRequestConfig:
    commit_message_prefix: str = "repowarden: pr-change"
    max_clarification_rounds: int = 3
    run_tests: bool = True
    test_timeout_seconds: int = 900


@dataclass(frozen=True)
class AutoUpdateConfig:
    enabled: bool = False
    policy: UpdatePolicyName = "minor"
    pinned_version: str | None = None
    allow_prerelease: bool = False
    check_interval_seconds: int = 3600
    max_consecutive_failures: int = 3
    supervisor: str | None = None
    package_name: str = "repowarden"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    agent: AgentConfig = AgentConfig()
    build: BuildConfig = BuildConfig()
    change_request: ChangeRequestConfig = ChangeRequestConfig()
    auto_update: AutoUpdateConfig = AutoUpdateConfig()

    def with_repo(self, repo_full_name: str) -> AppConfig:
        owner, name = parse_repo_full_name(repo_full_name)
        if owner == self.repo.owner and name == self.repo.name:
            return self
        return replace(self, repo=replace(self.repo, owner=owner, name=name, remote_url=None))

    def with_poll_interval(self, seconds: int) -> AppConfig:
        if seconds < 1:
            raise ConfigError("poll interval must be >= 1 second")
        return replace(self, runtime=replace(self.runtime, poll_interval_seconds=seconds))


class ConfigError(ValueError):
    pass


def parse_repo_full_name(value: str) -> tuple[str, str]:
    candidate = value.strip()
    if candidate.startswith("https://github.com/"):
        candidate = candidate[len("https://github.com/") :]
    candidate = candidate.removesuffix(".git").strip("/")
    parts = candidate.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ConfigError(f"Repository must look like owner/name, got {value!r}")
    return parts[0], parts[1]


def default_config(repo_full_name: str, *, base_dir: Path | None = None) -> AppConfig:
    owner, name = parse_repo_full_name(repo_full_name)
    return AppConfig(
        runtime=RuntimeConfig(base_dir=(base_dir or Path(DEFAULT_BASE_DIR)).expanduser()),
        repo=RepoConfig(owner=owner, name=name),
    )


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    repo_data = _require_table(data, "repo")
    agent_data = _optional_table(data, "agent") or {}
    build_data = _optional_table(data, "build") or {}
    change_request_data = _optional_table(data, "change_request") or {}
    auto_update_data = _optional_table(data, "auto_update") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_str_with_default(runtime_data, "base_dir", DEFAULT_BASE_DIR)).expanduser(),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 60),
        max_event_attempts=_int_with_default(runtime_data, "max_event_attempts", 3),
        remove_trigger_labels=_bool_with_default(runtime_data, "remove_trigger_labels", True),
    )
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.max_event_attempts < 1:
        raise ConfigError("runtime.max_event_attempts must be >= 1")

    return AppConfig(
        runtime=runtime,
        repo=_parse_repo_config(repo_data),
        agent=_parse_agent_config(agent_data),
        build=_parse_build_config(build_data),
        change_request=_parse_change_request_config(change_request_data),
        auto_update=_parse_auto_update_config(auto_update_data),
    )


def _parse_repo_config(repo_data: dict[str, object]) -> RepoConfig:
    repo = RepoConfig(
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
        default_branch=_str_with_default(repo_data, "default_branch", "main"),
        plan_label=_str_with_default(repo_data, "plan_label", "plan"),
        build_label=_str_with_default(repo_data, "build_label", "build"),
        request_changes_label=_str_with_default(
            repo_data, "request_changes_label", "request-changes"
        ),
        needs_input_label=_str_with_default(repo_data, "needs_input_label", "needs-input"),
        allowed_users=frozenset(
            login.strip().lower()
            for login in _tuple_of_str(repo_data, "allowed_users")
            if login.strip()
        ),
        remote_url=_optional_str(repo_data, "remote_url"),
        local_clone_source=_optional_str(repo_data, "local_clone_source"),
        test_command=_tuple_of_str(repo_data, "test_command"),
    )
    if len(set(repo.trigger_labels)) != 3:
        raise ConfigError("repo plan_label, build_label and request_changes_label must differ")
    return repo


def _parse_agent_config(agent_data: dict[str, object]) -> AgentConfig:
    provider = _str_with_default(agent_data, "provider", "codex")
    if provider not in _AGENT_PROVIDERS:
        allowed = ", ".join(_AGENT_PROVIDERS)
        raise ConfigError(f"agent.provider must be one of: {allowed}")
    agent = AgentConfig(
        provider=cast(AgentProvider, provider),
        command=_tuple_of_str(agent_data, "command"),
        model=_optional_str(agent_data, "model"),
        extra_args=_tuple_of_str(agent_data, "extra_args"),
        timeout_seconds=_int_with_default(agent_data, "timeout_seconds", 1800),
    )
    if agent.provider == "command" and not agent.command:
        raise ConfigError("agent.command is required when agent.provider = 'command'")
    if agent.timeout_seconds < 1:
        raise ConfigError("agent.timeout_seconds must be >= 1")
    return agent


def _parse_build_config(build_data: dict[str, object]) -> BuildConfig:
    build = BuildConfig(
        work_loop_timeout_seconds=_int_with_default(build_data, "work_loop_timeout_seconds", 3600),
        max_iterations=_int_with_default(build_data, "max_iterations", 5),
        max_incomplete_rounds=_int_with_default(build_data, "max_incomplete_rounds", 5),
        branch_prefix=_str_with_default(build_data, "branch_prefix", "repowarden"),
        commit_message_prefix=_str_with_default(
            build_data, "commit_message_prefix", "repowarden: build"
        ),
        child_poll_seconds=_float_with_default(build_data, "child_poll_seconds", 1.0),
    )
    if build.work_loop_timeout_seconds < 1:
        raise ConfigError("build.work_loop_timeout_seconds must be >= 1")
    if build.max_iterations < 1:
        raise ConfigError("build.max_iterations must be >= 1")
    if build.max_incomplete_rounds < 1:
        raise ConfigError("build.max_incomplete_rounds must be >= 1")
    if build.child_poll_seconds <= 0:
        raise ConfigError("build.child_poll_seconds must be > 0")
    return build


def _parse_change_request_config(data: dict[str, object]) -> ChangeRequestConfig:
    config = ChangeRequestConfig(
        commit_message_prefix=_str_with_default(
            data, "commit_message_prefix", "repowarden: pr-change"
        ),
        max_clarification_rounds=_int_with_default(data, "max_clarification_rounds", 3),
        run_tests=_bool_with_default(data, "run_tests", True),
        test_timeout_seconds=_int_with_default(data, "test_timeout_seconds", 900),
    )
    if config.max_clarification_rounds < 0:
        raise ConfigError("change_request.max_clarification_rounds must be >= 0")
    if config.test_timeout_seconds < 1:
        raise ConfigError("change_request.test_timeout_seconds must be >= 1")
    return config


def _parse_auto_update_config(data: dict[str, object]) -> AutoUpdateConfig:
    policy = _str_with_default(data, "policy", "minor")
    if policy not in _UPDATE_POLICIES:
        allowed = ", ".join(_UPDATE_POLICIES)
        raise ConfigError(f"auto_update.policy must be one of: {allowed}")
    config = AutoUpdateConfig(
        enabled=_bool_with_default(data, "enabled", False),
        policy=cast(UpdatePolicyName, policy),
        pinned_version=_optional_str(data, "pinned_version"),
        allow_prerelease=_bool_with_default(data, "allow_prerelease", False),
        check_interval_seconds=_int_with_default(data, "check_interval_seconds", 3600),
        max_consecutive_failures=_int_with_default(data, "max_consecutive_failures", 3),
        supervisor=_optional_str(data, "supervisor"),
        package_name=_str_with_default(data, "package_name", "repowarden"),
    )
    if not (
        MIN_UPDATE_CHECK_INTERVAL_SECONDS
        <= config.check_interval_seconds
        <= MAX_UPDATE_CHECK_INTERVAL_SECONDS
    ):
        raise ConfigError(
            "auto_update.check_interval_seconds must be between "
            f"{MIN_UPDATE_CHECK_INTERVAL_SECONDS} and {MAX_UPDATE_CHECK_INTERVAL_SECONDS}"
        )
    if config.max_consecutive_failures < 1:
        raise ConfigError("auto_update.max_consecutive_failures must be >= 1")
    if config.policy == "exact" and config.pinned_version is None:
        raise ConfigError("auto_update.pinned_version is required when policy = 'exact'")
    if config.enabled and config.supervisor is None:
        raise ConfigError("auto_update.supervisor is required when auto_update.enabled = true")
    return config


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)
