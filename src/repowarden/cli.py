from __future__ import annotations

import argparse
import getpass
import json
from pathlib import Path

from repowarden.audit_log import AuditLog
from repowarden.config import (
    DEFAULT_BASE_DIR,
    AppConfig,
    AutoUpdateConfig,
    default_config,
    load_config,
)
from repowarden.context import audit_log_path, build_checkpointer, state_db_path
from repowarden.git_ops import GitRepository
from repowarden.observability import configure_logging
from repowarden.observability_tui import run_status_tui
from repowarden.self_update import UpdateExitRequested
from repowarden.state import StateStore
from repowarden.watch_service import run_watch
from repowarden.worktree import WorktreeManager


DEFAULT_CONFIG_PATH = Path("repowarden.toml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="repowarden")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser(
        "watch", help="Poll a repository and act on plan, build and change-request labels"
    )
    watch_parser.add_argument("repo", help="Repository as owner/name")
    watch_parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Poll interval in seconds (overrides config and any restored checkpoint)",
    )
    watch_parser.add_argument(
        "--once", action="store_true", help="Poll once and wait for running builds"
    )
    _add_common_arguments(watch_parser)

    init_parser = subparsers.add_parser("init", help="Create state directories and the base clone")
    init_parser.add_argument("repo", help="Repository as owner/name")
    _add_common_arguments(init_parser)

    status_parser = subparsers.add_parser(
        "status", help="Show auto-update status and cached build runs"
    )
    status_parser.add_argument("--json", action="store_true", help="Print status as JSON")
    _add_common_arguments(status_parser)

    update_parser = subparsers.add_parser("auto-update", help="Manage automatic self-update")
    _add_common_arguments(update_parser)
    update_subparsers = update_parser.add_subparsers(dest="update_command", required=True)
    reset_parser = update_subparsers.add_parser(
        "reset", help="Clear the consecutive update failure counter"
    )
    reset_parser.add_argument(
        "--actor", type=str, default=None, help="Name recorded in the audit log"
    )

    worktrees_parser = subparsers.add_parser("worktrees", help="List registered worktrees")
    worktrees_parser.add_argument("repo", help="Repository as owner/name")
    worktrees_parser.add_argument("--json", action="store_true", help="Print worktrees as JSON")
    _add_common_arguments(worktrees_parser)

    top_parser = subparsers.add_parser("top", help="Open the terminal status view")
    top_parser.add_argument(
        "--refresh-seconds", type=int, default=2, help="Refresh interval for the status view"
    )
    _add_common_arguments(top_parser)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"TOML config file (default: {DEFAULT_CONFIG_PATH} when present)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low keeps only high-signal events)",
    )


def main() -> None:
    args = build_parser().parse_args()
    verbose = getattr(args, "verbose", None)
    configure_logging(verbose)

    if args.command == "watch":
        config = _load_app_config(args.config, args.repo)
        try:
            _cmd_watch(config, once=bool(args.once), interval=args.interval, verbose=verbose)
        except UpdateExitRequested as exc:
            raise SystemExit(exc.exit_code) from exc
        return
    if args.command == "init":
        _cmd_init(_load_app_config(args.config, args.repo))
        return
    if args.command == "status":
        base_dir, auto_update = _load_settings(args.config)
        _cmd_status(base_dir, auto_update, as_json=bool(args.json))
        return
    if args.command == "auto-update":
        base_dir, auto_update = _load_settings(args.config)
        _cmd_auto_update(base_dir, auto_update, args)
        return
    if args.command == "worktrees":
        _cmd_worktrees(_load_app_config(args.config, args.repo), as_json=bool(args.json))
        return
    if args.command == "top":
        base_dir, auto_update = _load_settings(args.config)
        _cmd_top(base_dir, auto_update, refresh_seconds=int(args.refresh_seconds))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_watch(config: AppConfig, *, once: bool, interval: int | None, verbose: str | None) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    if verbose is not None:
        configure_logging(verbose, state_dir=config.runtime.base_dir)
    run_watch(config, once=once, interval_override=interval, log_verbose=verbose)


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    state = StateStore(state_db_path(config.runtime.base_dir))
    git = GitRepository(config.runtime, config.repo)
    git.ensure_clone()

    print(f"Initialized repowarden base dir: {config.runtime.base_dir}")
    print(f"Repo: {config.repo.full_name}")
    print(f"State: {state.db_path}")
    print(f"Clone: {git.layout.clone_path}")
    print(f"Worktrees: {git.layout.worktrees_root}")


def _cmd_status(base_dir: Path, auto_update: AutoUpdateConfig, *, as_json: bool) -> None:
    checkpointer = build_checkpointer(auto_update, base_dir=base_dir)
    update_status = checkpointer.status()
    db_path = state_db_path(base_dir)
    runs = StateStore(db_path).list_build_runs() if db_path.exists() else ()

    if as_json:
        payload = {
            "auto_update": update_status,
            "build_runs": [
                {
                    "repo_full_name": run.repo_full_name,
                    "issue_number": run.issue_number,
                    "branch": run.branch,
                    "status": run.status,
                    "commit_sha": run.commit_sha,
                    "started_at": run.started_at,
                    "pr_number": run.pr_number,
                    "pr_url": run.pr_url,
                    "detail": run.detail,
                    "updated_at": run.updated_at,
                }
                for run in runs
            ],
        }
        print(json.dumps(payload, indent=2))
        return

    failures = checkpointer.tracker.status()
    print(
        f"auto_update enabled={update_status['enabled']} policy={update_status['policy']} "
        f"version={update_status['current_version']} "
        f"checkpoint_pending={update_status['checkpoint_pending']}"
    )
    print(
        f"consecutive_failures={failures.consecutive_failures}/"
        f"{failures.max_consecutive_failures} disabled={failures.too_many_failures}"
    )
    if failures.last_failure_reason is not None:
        print(f"last_failure={_summarize(failures.last_failure_reason)}")
    print()
    if not runs:
        print("No build runs recorded.")
        return
    for run in runs:
        print(
            f"repo={run.repo_full_name} issue_number={run.issue_number} status={run.status} "
            f"branch={run.branch} pr_number={run.pr_number if run.pr_number is not None else '-'} "
            f"updated_at={run.updated_at}"
        )


def _cmd_auto_update(
    base_dir: Path, auto_update: AutoUpdateConfig, args: argparse.Namespace
) -> None:
    if args.update_command == "reset":
        checkpointer = build_checkpointer(auto_update, base_dir=base_dir)
        previous = checkpointer.tracker.status().consecutive_failures
        actor = args.actor if args.actor else getpass.getuser()
        checkpointer.reset_failures(actor=actor)
        print(f"Reset auto-update failure tracker ({previous} consecutive failure(s) cleared).")
        return
    raise RuntimeError(f"Unknown auto-update command: {args.update_command}")


def _cmd_worktrees(config: AppConfig, *, as_json: bool) -> None:
    manager = WorktreeManager(GitRepository(config.runtime, config.repo))
    worktrees = manager.list_worktrees()
    if as_json:
        payload = [
            {**info.to_registry_entry(), "slug": info.slug, "active": info.active}
            for info in worktrees
        ]
        print(json.dumps(payload, indent=2))
        return
    if not worktrees:
        print("No worktrees registered.")
        return
    for info in worktrees:
        print(
            f"slug={info.slug} branch={info.branch} base={info.base_branch} "
            f"active={info.active} created_at={info.created_at}"
        )
        print(f"path={info.path}")


def _cmd_top(base_dir: Path, auto_update: AutoUpdateConfig, *, refresh_seconds: int) -> None:
    run_status_tui(
        state=StateStore(state_db_path(base_dir)),
        audit=AuditLog(audit_log_path(base_dir)),
        checkpointer=build_checkpointer(auto_update, base_dir=base_dir),
        refresh_seconds=refresh_seconds,
    )


def _load_app_config(path: Path | None, repo_full_name: str) -> AppConfig:
    config_path = _resolve_config_path(path)
    if config_path is None:
        return default_config(repo_full_name)
    return load_config(config_path).with_repo(repo_full_name)


def _load_settings(path: Path | None) -> tuple[Path, AutoUpdateConfig]:
    config_path = _resolve_config_path(path)
    if config_path is None:
        return Path(DEFAULT_BASE_DIR).expanduser(), AutoUpdateConfig()
    config = load_config(config_path)
    return config.runtime.base_dir, config.auto_update


def _resolve_config_path(path: Path | None) -> Path | None:
    if path is not None:
        return path
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return None


def _summarize(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) <= 200:
        return first_line
    return f"{first_line[:197]}..."
