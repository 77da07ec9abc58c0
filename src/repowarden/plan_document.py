from __future__ import annotations

import re

from repowarden.markers import PLAN_MARKER, parse_checklist
from repowarden.models import PlanDocument, PlanSnapshot


ARCHIVED_PLAN_START = "<!-- ARCHIVED_PLAN_START"
ARCHIVED_PLAN_END = "<!-- ARCHIVED_PLAN_END -->"
PLAN_ARCHIVE_START = "<!-- PLAN_ARCHIVE_START -->"
PLAN_ARCHIVE_END = "<!-- PLAN_ARCHIVE_END -->"
SUMMARY_START = "<!-- PLAN_SUMMARY_START -->"
SUMMARY_END = "<!-- PLAN_SUMMARY_END -->"
TASKS_START = "<!-- PLAN_TASKS_START -->"
TASKS_END = "<!-- PLAN_TASKS_END -->"
QUESTIONS_START = "<!-- OPEN_QUESTIONS_START -->"
QUESTIONS_END = "<!-- OPEN_QUESTIONS_END -->"
_ITERATION_PATTERN = re.compile(r"<!--\s*PLAN_ITERATION=(\d+)\s*-->")
_ARCHIVE_HEADER_PATTERN = re.compile(r"iteration=(\d+)\s+timestamp=(\S+)")
_EMPTY_SECTION = "_None._"


class PlanFormatError(ValueError):
    pass


def is_plan_comment(body: str) -> bool:
    return PLAN_MARKER in body


def render_plan_comment(document: PlanDocument, *, tokens: tuple[str, ...] = ()) -> str:
    lines = [
        PLAN_MARKER,
        f"<!-- PLAN_ITERATION={document.iteration} -->",
        f"## Implementation plan for #{document.issue_number} (iteration {document.iteration})",
        "",
        _render_sections(
            summary=document.summary,
            tasks=document.tasks,
            open_questions=document.open_questions,
            heading="###",
        ),
    ]
    if document.archived_iterations:
        lines.extend(["", _render_archive(document.archived_iterations)])
    if tokens:
        lines.append("")
        lines.extend(f"<!-- repowarden-action:{token} -->" for token in tokens)
    return "\n".join(lines).strip() + "\n"


def parse_plan_comment(*, issue_number: int, body: str) -> PlanDocument:
    if not is_plan_comment(body):
        raise PlanFormatError("Comment is not a plan comment")
    live = strip_archived_plans(body)
    iteration_match = _ITERATION_PATTERN.search(live)
    if iteration_match is None:
        raise PlanFormatError("Plan comment is missing its iteration marker")
    summary = _section(live, SUMMARY_START, SUMMARY_END)
    tasks = _section(live, TASKS_START, TASKS_END)
    questions = _section(live, QUESTIONS_START, QUESTIONS_END)
    if summary is None or tasks is None or questions is None:
        raise PlanFormatError("Plan comment is missing a live plan section")
    return PlanDocument(
        issue_number=issue_number,
        iteration=int(iteration_match.group(1)),
        summary=summary.strip(),
        tasks=parse_checklist(tasks),
        open_questions=parse_checklist(questions),
        archived_iterations=parse_archived_plans(body),
    )


def parse_archived_plans(body: str) -> tuple[PlanSnapshot, ...]:
    snapshots: list[PlanSnapshot] = []
    search_from = 0
    while True:
        start = body.find(ARCHIVED_PLAN_START, search_from)
        if start < 0:
            break
        header_close = body.find("-->", start + len(ARCHIVED_PLAN_START))
        if header_close < 0:
            break
        end = body.find(ARCHIVED_PLAN_END, header_close + 3)
        if end < 0:
            break
        header = body[start + len(ARCHIVED_PLAN_START) : header_close]
        content = body[header_close + 3 : end]
        header_match = _ARCHIVE_HEADER_PATTERN.search(header)
        if header_match is not None:
            snapshots.append(
                PlanSnapshot(
                    iteration=int(header_match.group(1)),
                    summary=(_section(content, SUMMARY_START, SUMMARY_END) or "").strip(),
                    tasks=parse_checklist(_section(content, TASKS_START, TASKS_END) or ""),
                    open_questions=parse_checklist(
                        _section(content, QUESTIONS_START, QUESTIONS_END) or ""
                    ),
                    archived_at=header_match.group(2),
                )
            )
        search_from = end + len(ARCHIVED_PLAN_END)
    return tuple(snapshots)


def next_plan_iteration(
    previous: PlanDocument,
    *,
    summary: str,
    tasks: tuple[str, ...],
    open_questions: tuple[str, ...],
    archived_at: str,
) -> PlanDocument:
    snapshot = PlanSnapshot(
        iteration=previous.iteration,
        summary=previous.summary,
        tasks=previous.tasks,
        open_questions=previous.open_questions,
        archived_at=archived_at,
    )
    return PlanDocument(
        issue_number=previous.issue_number,
        iteration=previous.iteration + 1,
        summary=summary,
        tasks=tasks,
        open_questions=open_questions,
        archived_iterations=previous.archived_iterations + (snapshot,),
    )


def strip_archived_plans(text: str) -> str:
    """Remove archived plan blocks so only the live plan remains.

    Plain substring search only. A start marker without a closing ``-->`` or
    without a matching end marker stops the scan and leaves the rest of the
    text as-is.
    """
    result = text
    removed = False
    search_from = 0
    while True:
        start = result.find(ARCHIVED_PLAN_START, search_from)
        if start < 0:
            break
        header_close = result.find("-->", start + len(ARCHIVED_PLAN_START))
        if header_close < 0:
            break
        end = result.find(ARCHIVED_PLAN_END, header_close + 3)
        if end < 0:
            break
        result = result[:start] + result[end + len(ARCHIVED_PLAN_END) :]
        removed = True
        search_from = start

    wrapper_start = result.find(PLAN_ARCHIVE_START)
    if wrapper_start >= 0:
        wrapper_end = result.find(PLAN_ARCHIVE_END, wrapper_start + len(PLAN_ARCHIVE_START))
        if wrapper_end >= 0:
            inner = result[wrapper_start:wrapper_end]
            if ARCHIVED_PLAN_START not in inner:
                result = result[:wrapper_start] + result[wrapper_end + len(PLAN_ARCHIVE_END) :]
                removed = True

    if not removed:
        return text
    while "\n\n\n" in result:
        result = result.replace("\n\n\n", "\n\n")
    return result


def render_plan_for_prompt(document: PlanDocument) -> str:
    return _render_sections(
        summary=document.summary,
        tasks=document.tasks,
        open_questions=document.open_questions,
        heading="##",
        with_markers=False,
    )


def _render_archive(snapshots: tuple[PlanSnapshot, ...]) -> str:
    lines = [
        PLAN_ARCHIVE_START,
        "<details>",
        f"<summary>Previous plan iterations ({len(snapshots)})</summary>",
        "",
    ]
    for snapshot in sorted(snapshots, key=lambda item: item.iteration, reverse=True):
        lines.extend(
            [
                f"{ARCHIVED_PLAN_START} iteration={snapshot.iteration} "
                f"timestamp={snapshot.archived_at} -->",
                f"#### Iteration {snapshot.iteration} (archived {snapshot.archived_at})",
                "",
                _render_sections(
                    summary=snapshot.summary,
                    tasks=snapshot.tasks,
                    open_questions=snapshot.open_questions,
                    heading="#####",
                ),
                ARCHIVED_PLAN_END,
                "",
            ]
        )
    lines.extend(["</details>", PLAN_ARCHIVE_END])
    return "\n".join(lines)


def _render_sections(
    *,
    summary: str,
    tasks: tuple[str, ...],
    open_questions: tuple[str, ...],
    heading: str,
    with_markers: bool = True,
) -> str:
    def wrap(start: str, end: str, content: str) -> list[str]:
        if not with_markers:
            return [content]
        return [start, content, end]

    task_lines = "\n".join(f"- [ ] {task}" for task in tasks) or _EMPTY_SECTION
    question_lines = "\n".join(f"- {question}" for question in open_questions) or _EMPTY_SECTION
    lines = [f"{heading} Summary"]
    lines.extend(wrap(SUMMARY_START, SUMMARY_END, summary.strip() or _EMPTY_SECTION))
    lines.extend(["", f"{heading} Tasks"])
    lines.extend(wrap(TASKS_START, TASKS_END, task_lines))
    lines.extend(["", f"{heading} Open questions"])
    lines.extend(wrap(QUESTIONS_START, QUESTIONS_END, question_lines))
    return "\n".join(lines)


def _section(text: str, start_marker: str, end_marker: str) -> str | None:
    start = text.find(start_marker)
    if start < 0:
        return None
    end = text.find(end_marker, start + len(start_marker))
    if end < 0:
        return None
    content = text[start + len(start_marker) : end].strip()
    if content == _EMPTY_SECTION:
        return ""
    return content
