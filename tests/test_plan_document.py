from __future__ import annotations

from hypothesis import given, strategies as st
import pytest

from repowarden.markers import PLAN_MARKER, compute_trigger_token, extract_action_tokens
from repowarden.models import PlanDocument
from repowarden.plan_document import (
    ARCHIVED_PLAN_END,
    ARCHIVED_PLAN_START,
    PlanFormatError,
    is_plan_comment,
    next_plan_iteration,
    parse_archived_plans,
    parse_plan_comment,
    render_plan_comment,
    render_plan_for_prompt,
    strip_archived_plans,
)


_LINE = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789 .,()", min_size=1, max_size=40).map(
    str.strip
).filter(bool)


def _first_plan() -> PlanDocument:
    return PlanDocument(
        issue_number=7,
        iteration=1,
        summary="Add a retry budget",
        tasks=("Count failures", "Skip exhausted events"),
        open_questions=("Should the budget reset on relabel?",),
    )


def test_render_and_parse_first_plan() -> None:
    token = compute_trigger_token(event_key="o/r#7:plan:1")
    body = render_plan_comment(_first_plan(), tokens=(token,))

    assert body.startswith(PLAN_MARKER)
    assert is_plan_comment(body)
    assert extract_action_tokens(body) == (token,)
    assert parse_plan_comment(issue_number=7, body=body) == _first_plan()


def test_next_iteration_archives_previous_plan() -> None:
    second = next_plan_iteration(
        _first_plan(),
        summary="Add a retry budget per event",
        tasks=("Count failures per event key",),
        open_questions=(),
        archived_at="2026-03-01T00:00:00Z",
    )
    third = next_plan_iteration(
        second,
        summary="Final plan",
        tasks=("Ship it",),
        open_questions=(),
        archived_at="2026-03-02T00:00:00Z",
    )

    body = render_plan_comment(third)
    parsed = parse_plan_comment(issue_number=7, body=body)

    assert parsed.iteration == 3
    assert parsed.summary == "Final plan"
    assert parsed.tasks == ("Ship it",)
    assert parsed.open_questions == ()
    assert [snapshot.iteration for snapshot in parsed.archived_iterations] == [2, 1]
    oldest = parsed.archived_iterations[1]
    assert oldest.summary == "Add a retry budget"
    assert oldest.open_questions == ("Should the budget reset on relabel?",)
    assert oldest.archived_at == "2026-03-01T00:00:00Z"


def test_strip_archived_plans_keeps_only_live_plan() -> None:
    second = next_plan_iteration(
        _first_plan(),
        summary="Live summary",
        tasks=("Live task",),
        open_questions=(),
        archived_at="2026-03-01T00:00:00Z",
    )
    body = render_plan_comment(second)

    live = strip_archived_plans(body)

    assert "Live task" in live
    assert "Skip exhausted events" not in live
    assert ARCHIVED_PLAN_START not in live
    assert "\n\n\n" not in live


def test_strip_archived_plans_leaves_malformed_blocks_alone() -> None:
    unterminated_header = f"live\n{ARCHIVED_PLAN_START} iteration=1 timestamp=t\nold"
    assert strip_archived_plans(unterminated_header) == unterminated_header

    missing_end = f"live\n{ARCHIVED_PLAN_START} iteration=1 timestamp=t -->\nold plan"
    assert strip_archived_plans(missing_end) == missing_end
    assert parse_archived_plans(missing_end) == ()

    plain = "nothing archived\n\n\n\nhere"
    assert strip_archived_plans(plain) == plain


def test_parse_plan_comment_rejects_broken_comments() -> None:
    with pytest.raises(PlanFormatError, match="not a plan comment"):
        parse_plan_comment(issue_number=1, body="hello")
    with pytest.raises(PlanFormatError, match="iteration marker"):
        parse_plan_comment(issue_number=1, body=f"{PLAN_MARKER}\nno iteration")
    with pytest.raises(PlanFormatError, match="live plan section"):
        parse_plan_comment(
            issue_number=1, body=f"{PLAN_MARKER}\n<!-- PLAN_ITERATION=2 -->\nsummary only"
        )


def test_render_plan_for_prompt_has_no_markers() -> None:
    rendered = render_plan_for_prompt(
        PlanDocument(issue_number=1, iteration=1, summary="", tasks=(), open_questions=())
    )
    assert "<!--" not in rendered
    assert "## Summary" in rendered
    assert "_None._" in rendered


@given(
    summary=_LINE,
    tasks=st.lists(_LINE, min_size=1, max_size=5).map(tuple),
    questions=st.lists(_LINE, max_size=3).map(tuple),
    archived=st.lists(
        st.tuples(_LINE, st.lists(_LINE, min_size=1, max_size=3).map(tuple)), max_size=3
    ),
)
def test_plan_comment_round_trips_through_iterations(
    summary: str,
    tasks: tuple[str, ...],
    questions: tuple[str, ...],
    archived: list[tuple[str, tuple[str, ...]]],
) -> None:
    document = PlanDocument(
        issue_number=3, iteration=1, summary=summary, tasks=tasks, open_questions=questions
    )
    for index, (next_summary, next_tasks) in enumerate(archived):
        document = next_plan_iteration(
            document,
            summary=next_summary,
            tasks=next_tasks,
            open_questions=(),
            archived_at=f"2026-01-0{index + 1}T00:00:00Z",
        )

    body = render_plan_comment(document)
    parsed = parse_plan_comment(issue_number=3, body=body)

    assert parsed.iteration == document.iteration
    assert parsed.summary == document.summary
    assert parsed.tasks == document.tasks
    assert parsed.open_questions == document.open_questions
    assert len(parsed.archived_iterations) == len(document.archived_iterations)
    live = strip_archived_plans(body)
    assert live.count(ARCHIVED_PLAN_END) == 0
