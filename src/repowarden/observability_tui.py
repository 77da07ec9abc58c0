from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.screen import Screen
from textual.widgets import DataTable, Footer, Header, Static

from repowarden.audit_log import AuditLog, AuditRecord
from repowarden.self_update import SelfUpdateCheckpointer
from repowarden.state import BuildRunRecord, StateStore


_DETAIL_MAX_CHARS = 60
_AUDIT_ROW_LIMIT = 100


class StatusApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("f", "cycle_repo_filter", "Repo Filter"),
        Binding("tab", "cycle_focus", "Focus"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        state: StateStore,
        audit: AuditLog,
        checkpointer: SelfUpdateCheckpointer,
        refresh_seconds: int = 2,
    ) -> None:
        super().__init__()
        self._state = state
        self._audit = audit
        self._checkpointer = checkpointer
        self._refresh_seconds = refresh_seconds
        self._repo_filter: str | None = None
        self._available_repos: tuple[str, ...] = ()
        self._summary_text = ""

    @property
    def summary_text(self) -> str:
        return self._summary_text

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Build Runs", classes="panel-title")
            yield DataTable(id="builds-table")
            yield Static("Audit Log", classes="panel-title")
            yield DataTable(id="audit-table")
            yield Static("Auto-Update", classes="panel-title")
            yield DataTable(id="update-table")
        yield Footer()

    def on_mount(self) -> None:
        self._init_tables()
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_repo_filter(self) -> None:
        self._repo_filter = _next_repo_filter(self._repo_filter, self._available_repos)
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def refresh_data(self) -> None:
        all_runs = self._state.list_build_runs()
        self._available_repos = tuple(sorted({run.repo_full_name for run in all_runs}))
        runs = tuple(
            run
            for run in all_runs
            if self._repo_filter is None or run.repo_full_name == self._repo_filter
        )
        audit_records = self._audit.read_recent(_AUDIT_ROW_LIMIT)
        update_status = self._checkpointer.status()
        self._summary_text = _summary_text(
            runs=runs, repo_filter=self._repo_filter, update_status=update_status
        )
        self._base_static("#summary").update(self._summary_text)
        _fill_build_table(self._base_table("#builds-table"), runs)
        _fill_audit_table(self._base_table("#audit-table"), audit_records)
        _fill_update_table(self._base_table("#update-table"), update_status)

    def _init_tables(self) -> None:
        self._base_table("#builds-table").add_columns(
            "Repo", "Issue", "Status", "Branch", "Commit", "PR", "Started", "Updated", "Detail"
        )
        self._base_table("#audit-table").add_columns("Time", "Event", "Details")
        self._base_table("#update-table").add_columns("Key", "Value")

    def _base_screen(self) -> Screen[Any]:
        if self.screen_stack:
            return self.screen_stack[0]
        return self.screen

    def _base_table(self, selector: str) -> DataTable:
        return self._base_screen().query_one(selector, DataTable)

    def _base_static(self, selector: str) -> Static:
        return self._base_screen().query_one(selector, Static)


def run_status_tui(
    *,
    state: StateStore,
    audit: AuditLog,
    checkpointer: SelfUpdateCheckpointer,
    refresh_seconds: int = 2,
) -> None:
    StatusApp(
        state=state,
        audit=audit,
        checkpointer=checkpointer,
        refresh_seconds=refresh_seconds,
    ).run()


def _fill_build_table(table: DataTable, runs: tuple[BuildRunRecord, ...]) -> None:
    table.clear(columns=False)
    for run in runs:
        table.add_row(
            run.repo_full_name,
            str(run.issue_number),
            run.status,
            run.branch,
            run.commit_sha[:12] if run.commit_sha else "-",
            str(run.pr_number) if run.pr_number is not None else "-",
            run.started_at,
            run.updated_at,
            _render_snippet(run.detail, max_chars=_DETAIL_MAX_CHARS),
        )


def _fill_audit_table(table: DataTable, records: tuple[AuditRecord, ...]) -> None:
    table.clear(columns=False)
    # newest first
    for record in reversed(records):
        table.add_row(record.timestamp, record.event, _render_fields(record.fields))


def _fill_update_table(table: DataTable, status: Mapping[str, object]) -> None:
    table.clear(columns=False)
    for key, value in _flatten_status(status):
        table.add_row(key, value)


def _flatten_status(status: Mapping[str, object], prefix: str = "") -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    for key, value in status.items():
        name = f"{prefix}{key}"
        if isinstance(value, Mapping):
            rows.extend(_flatten_status(value, prefix=f"{name}."))
            continue
        rows.append((name, "-" if value is None else str(value)))
    return rows


def _summary_text(
    *,
    runs: tuple[BuildRunRecord, ...],
    repo_filter: str | None,
    update_status: Mapping[str, object],
) -> str:
    counts: dict[str, int] = {}
    for run in runs:
        counts[run.status] = counts.get(run.status, 0) + 1
    failures = update_status.get("failures")
    consecutive = failures.get("consecutive_failures") if isinstance(failures, Mapping) else 0
    return (
        " | ".join(
            [
                f"repo={repo_filter or 'all'}",
                f"runs={len(runs)}",
                f"implementing={counts.get('implementing', 0)}",
                f"incomplete={counts.get('incomplete', 0)}",
                f"pr_created={counts.get('pr_created', 0)}",
                f"failed={counts.get('failed', 0)}",
                f"version={update_status.get('current_version')}",
                f"update_failures={consecutive}",
            ]
        )
        + "\nKeys: r refresh | f repo filter | tab focus | q quit"
    )


def _next_repo_filter(current: str | None, repos: tuple[str, ...]) -> str | None:
    if not repos:
        return None
    if current is None:
        return repos[0]
    if current not in repos:
        return None
    index = repos.index(current)
    if index + 1 >= len(repos):
        return None
    return repos[index + 1]


def _render_fields(fields: Mapping[str, object]) -> str:
    parts = [f"{key}={fields[key]}" for key in sorted(fields)]
    return _render_snippet(" ".join(parts), max_chars=120)


def _render_snippet(value: str | None, *, max_chars: int) -> str:
    if value is None:
        return "-"
    text = " ".join(value.split())
    if not text:
        return "-"
    if len(text) <= max_chars:
        return text
    if max_chars <= 3:
        return "." * max_chars
    return text[: max_chars - 3] + "..."
