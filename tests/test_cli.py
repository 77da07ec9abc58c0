from __future__ import annotations

import json
from pathlib import Path

import pytest

from repowarden import cli
from repowarden.config import AppConfig, AutoUpdateConfig, RepoConfig, RuntimeConfig
from repowarden.models import BuildState, WatchState
from repowarden.self_update import CheckpointStore, FailureTracker, UpdateExitRequested
from repowarden.state import StateStore
from repowarden.worktree import WorktreeInfo


def _app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(base_dir=tmp_path / "state", poll_interval_seconds=60),
        repo=RepoConfig(owner="acme", name="widgets"),
    )


def _write_config(tmp_path: Path) -> Path:
    path = tmp_path / "repowarden.toml"
    path.write_text(
        "\n".join(
            [
                "[runtime]",
                f'base_dir = "{tmp_path / "state"}"',
                "",
                "[repo]",
                'owner = "acme"',
                'name = "widgets"',
                "",
                "[auto_update]",
                "enabled = true",
                'supervisor = "systemd"',
                "",
            ]
        ),
        encoding="utf-8",
    )
    return path


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    watch = parser.parse_args(["watch", "acme/widgets", "--interval", "30", "--once", "-v"])
    assert watch.command == "watch"
    assert watch.repo == "acme/widgets"
    assert watch.interval == 30
    assert watch.once is True
    assert watch.verbose == "high"

    status = parser.parse_args(["status", "--json", "--verbose", "low"])
    assert status.json is True
    assert status.verbose == "low"

    reset = parser.parse_args(["auto-update", "reset", "--actor", "ops"])
    assert reset.update_command == "reset"
    assert reset.actor == "ops"

    top = parser.parse_args(["top", "--refresh-seconds", "5"])
    assert top.refresh_seconds == 5

    with pytest.raises(SystemExit):
        parser.parse_args(["watch"])
    with pytest.raises(SystemExit):
        parser.parse_args(["status", "--verbose", "loud"])


def test_main_watch_turns_update_request_into_exit_status(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    config_path = _write_config(tmp_path)
    calls: list[dict[str, object]] = []

    def fake_run_watch(config: AppConfig, **kwargs: object) -> None:
        calls.append({"config": config, **kwargs})
        checkpoint = CheckpointStore(tmp_path).create(
            tool_version="0.3.0",
            watch_state=WatchState(repo="acme/gadgets", poll_interval_seconds=30, provider="codex"),
        )
        raise UpdateExitRequested(checkpoint)

    monkeypatch.setattr(cli, "run_watch", fake_run_watch)
    monkeypatch.setattr(
        "sys.argv",
        ["repowarden", "watch", "acme/gadgets", "--config", str(config_path), "--interval", "30"],
    )

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 75
    (call,) = calls
    config = call["config"]
    assert isinstance(config, AppConfig)
    assert config.repo.full_name == "acme/gadgets"
    assert config.runtime.base_dir == tmp_path / "state"
    assert call["interval_override"] == 30
    assert call["once"] is False


def test_cmd_watch_passes_verbosity(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _app_config(tmp_path)
    seen: dict[str, object] = {}
    logging_calls: list[tuple[object, object]] = []

    def fake_run_watch(config: AppConfig, **kwargs: object) -> None:
        seen.update(kwargs)

    def fake_configure_logging(verbose: object, *, state_dir: object = None) -> None:
        logging_calls.append((verbose, state_dir))

    monkeypatch.setattr(cli, "run_watch", fake_run_watch)
    monkeypatch.setattr(cli, "configure_logging", fake_configure_logging)

    cli._cmd_watch(config, once=True, interval=None, verbose="low")

    assert seen == {"once": True, "interval_override": None, "log_verbose": "low"}
    assert logging_calls == [("low", tmp_path / "state")]
    assert (tmp_path / "state").is_dir()


def test_cmd_init_clones_and_reports(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cloned: list[bool] = []
    monkeypatch.setattr(cli.GitRepository, "ensure_clone", lambda self: cloned.append(True))

    cli._cmd_init(_app_config(tmp_path))

    out = capsys.readouterr().out
    assert cloned == [True]
    assert "Repo: acme/widgets" in out
    assert f"State: {tmp_path / 'state' / 'state.db'}" in out
    assert (tmp_path / "state" / "state.db").exists()


def test_cmd_status_text_and_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    base_dir = tmp_path / "state"
    auto_update = AutoUpdateConfig(enabled=True, supervisor="systemd")
    FailureTracker(
        base_dir / "auto_update_failures.json", max_consecutive_failures=3
    ).record_failure("install_failed: pip exited 1")

    cli._cmd_status(base_dir, auto_update, as_json=False)
    out = capsys.readouterr().out
    assert "auto_update enabled=True policy=minor" in out
    assert "consecutive_failures=1/3 disabled=False" in out
    assert "last_failure=install_failed: pip exited 1" in out
    assert "No build runs recorded." in out

    StateStore(base_dir / "state.db").save_build_run(
        BuildState(
            issue_number=4,
            branch="repowarden/4-fix",
            status="incomplete",
            commit_sha="abc",
            started_at="2026-04-01T00:00:00Z",
        ),
        repo_full_name="acme/widgets",
    )
    cli._cmd_status(base_dir, auto_update, as_json=True)
    payload = json.loads(capsys.readouterr().out)
    assert payload["auto_update"]["failures"]["consecutive_failures"] == 1
    (run,) = payload["build_runs"]
    assert run["issue_number"] == 4
    assert run["status"] == "incomplete"
    assert run["pr_number"] is None


def test_auto_update_reset_clears_tracker(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    base_dir = tmp_path / "state"
    tracker = FailureTracker(base_dir / "auto_update_failures.json", max_consecutive_failures=3)
    for _ in range(3):
        tracker.record_failure("update_not_applied")
    monkeypatch.setattr(cli.getpass, "getuser", lambda: "operator")
    monkeypatch.setattr(
        "sys.argv", ["repowarden", "auto-update", "--config", str(config_path), "reset"]
    )

    cli.main()

    assert "3 consecutive failure(s) cleared" in capsys.readouterr().out
    assert tracker.status().consecutive_failures == 0
    audit_lines = (base_dir / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    record = json.loads(audit_lines[-1])
    assert record["event"] == "failure_tracker_reset"
    assert record["actor"] == "operator"


def test_cmd_worktrees_lists_registry(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = _app_config(tmp_path)
    cli._cmd_worktrees(config, as_json=False)
    assert "No worktrees registered." in capsys.readouterr().out

    info = WorktreeInfo(
        slug="repowarden-4-fix",
        path=tmp_path / "missing",
        branch="repowarden/4-fix",
        base_branch="main",
        created_at="2026-04-01T00:00:00Z",
        pr_number=12,
    )
    monkeypatch.setattr(cli.WorktreeManager, "list_worktrees", lambda self: (info,))

    cli._cmd_worktrees(config, as_json=True)
    (entry,) = json.loads(capsys.readouterr().out)
    assert entry["slug"] == "repowarden-4-fix"
    assert entry["active"] is False
    assert entry["pr_number"] == 12

    cli._cmd_worktrees(config, as_json=False)
    out = capsys.readouterr().out
    assert "slug=repowarden-4-fix branch=repowarden/4-fix base=main active=False" in out


def test_main_dispatches_top(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    called: dict[str, object] = {}

    def fake_run_status_tui(**kwargs: object) -> None:
        called.update(kwargs)

    monkeypatch.setattr(cli, "run_status_tui", fake_run_status_tui)
    monkeypatch.setattr(
        "sys.argv",
        ["repowarden", "top", "--config", str(config_path), "--refresh-seconds", "9"],
    )

    cli.main()

    assert called["refresh_seconds"] == 9
    assert isinstance(called["state"], StateStore)


def test_config_path_resolution(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    assert cli._resolve_config_path(None) is None
    assert cli._load_app_config(None, "acme/widgets").repo.full_name == "acme/widgets"

    _write_config(tmp_path)
    assert cli._resolve_config_path(None) == Path("repowarden.toml")
    assert cli._resolve_config_path(Path("other.toml")) == Path("other.toml")
    base_dir, auto_update = cli._load_settings(None)
    assert base_dir == tmp_path / "state"
    assert auto_update.enabled is True


def test_summarize_keeps_first_line() -> None:
    assert cli._summarize("first\nsecond") == "first"
    assert cli._summarize("") == ""
    assert cli._summarize("x" * 300) == "x" * 197 + "..."
