from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from repowarden.agent_executor import AgentExecutor, build_agent_executor
from repowarden.audit_log import AuditLog
from repowarden.build_stage import BuildStage
from repowarden.change_request_stage import ChangeRequestStage
from repowarden.child_process import ChildProcessSupervisor
from repowarden.config import AppConfig, AutoUpdateConfig
from repowarden.git_ops import GitRepository
from repowarden.github_gateway import GitHubGateway
from repowarden.plan_stage import PlanStage
from repowarden.poller import RepositoryPoller
from repowarden.self_update import SelfUpdateCheckpointer
from repowarden.state import StateStore
from repowarden.sync_client import SyncClient
from repowarden.worktree import WorktreeManager


STATE_DB_FILENAME = "state.db"
AUDIT_LOG_FILENAME = "audit.jsonl"


@dataclass(frozen=True)
class WatchContext:
    config: AppConfig
    github: GitHubGateway
    git: GitRepository
    worktrees: WorktreeManager
    executor: AgentExecutor
    state: StateStore
    supervisor: ChildProcessSupervisor
    poller: RepositoryPoller


def state_db_path(base_dir: Path) -> Path:
    return base_dir / STATE_DB_FILENAME


def audit_log_path(base_dir: Path) -> Path:
    return base_dir / AUDIT_LOG_FILENAME


def build_checkpointer(auto_update: AutoUpdateConfig, *, base_dir: Path) -> SelfUpdateCheckpointer:
    return SelfUpdateCheckpointer(
        auto_update,
        base_dir=base_dir,
        audit=AuditLog(audit_log_path(base_dir)),
    )


def build_watch_context(config: AppConfig, *, log_verbose: str | None = None) -> WatchContext:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    github = GitHubGateway(config.repo.owner, config.repo.name)
    git = GitRepository(config.runtime, config.repo)
    worktrees = WorktreeManager(git)
    executor = build_agent_executor(config.agent)
    state = StateStore(state_db_path(config.runtime.base_dir))
    supervisor = ChildProcessSupervisor()
    sync = SyncClient(git)

    plan_stage = PlanStage(config, github=github, git=git, executor=executor)
    build_stage = BuildStage(
        config,
        github=github,
        git=git,
        worktrees=worktrees,
        executor=executor,
        state=state,
        supervisor=supervisor,
        sync=sync,
        log_verbose=log_verbose,
    )
    change_request_stage = ChangeRequestStage(
        config,
        github=github,
        git=git,
        worktrees=worktrees,
        executor=executor,
        sync=sync,
    )
    poller = RepositoryPoller(
        config,
        github=github,
        state=state,
        plan_stage=plan_stage,
        build_stage=build_stage,
        change_request_stage=change_request_stage,
    )
    return WatchContext(
        config=config,
        github=github,
        git=git,
        worktrees=worktrees,
        executor=executor,
        state=state,
        supervisor=supervisor,
        poller=poller,
    )
