from __future__ import annotations

from repowarden.models import Issue, IssueComment, PullRequestSnapshot


_MAX_DIFF_CHARS = 60_000
_MAX_COMMENT_CHARS = 4_000


def _render_comments(comments: tuple[IssueComment, ...]) -> str:
    if not comments:
        return "(no comments)"
    rendered: list[str] = []
    for comment in comments:
        body = comment.body.strip()
        if len(body) > _MAX_COMMENT_CHARS:
            body = f"{body[:_MAX_COMMENT_CHARS]}..."
        rendered.append(f"[{comment.created_at}] @{comment.user_login or 'unknown'}:\n{body}")
    return "\n\n".join(rendered)


def _truncate_diff(diff: str) -> str:
    if len(diff) <= _MAX_DIFF_CHARS:
        return diff or "(empty diff)"
    return f"{diff[:_MAX_DIFF_CHARS]}\n... (diff truncated, {len(diff)} chars total)"


def build_plan_prompt(
    *,
    issue: Issue,
    repo_full_name: str,
    comments: tuple[IssueComment, ...],
    previous_plan: str | None,
) -> str:
    previous_block = ""
    if previous_plan:
        previous_block = f"""
Previous plan (revise it using the discussion since it was posted):
{previous_plan}
"""
    return f"""
You are the planning agent for repository {repo_full_name}.

Task:
- Produce an implementation plan for issue #{issue.number}.
- Read the repository in the current directory to ground the plan in real files.
- Do not modify any files.
{previous_block}
Response format:
- Return JSON only, as a single object with these keys:
  - "plan_summary": string, two to five sentences.
  - "plan_tasks": list of strings, ordered, at least one entry.
  - "clarifying_questions": list of strings, empty when nothing is unclear.

Issue title:
{issue.title}

Issue URL:
{issue.html_url}

Issue body:
{issue.body}

Discussion:
{_render_comments(comments)}
""".strip()


def build_implementation_prompt(
    *,
    issue: Issue,
    repo_full_name: str,
    branch: str,
    live_plan: str,
    follow_up_tasks: tuple[str, ...],
) -> str:
    resume_block = ""
    if follow_up_tasks:
        tasks = "\n".join(f"- {task}" for task in follow_up_tasks)
        resume_block = f"""
This branch already contains earlier work on the issue. Keep it and finish only
the remaining follow-up tasks:
{tasks}
"""
    return f"""
You are the implementation agent for repository {repo_full_name}.

Task:
- Implement issue #{issue.number} on branch {branch} by editing files in the current directory.
- Follow the plan below. Add or update tests for the behaviour you change.
- Do not commit, push, or switch branches; the caller handles git.
{resume_block}
Issue title:
{issue.title}

Issue body:
{issue.body}

Plan:
{live_plan}
""".strip()


def build_test_failure_prompt(*, base_prompt: str, iteration: int, test_output: str) -> str:
    return f"""
{base_prompt}

Iteration {iteration}: the test command failed after your last changes. Fix the
failures without discarding the work already done.

Test output:
{test_output}
""".strip()


def build_verification_prompt(
    *,
    issue: Issue,
    live_plan: str,
    diff: str,
) -> str:
    return f"""
You are the verification agent. Judge whether a change fully resolves an issue.

Task:
- Extract the acceptance criteria from the issue and the plan.
- Check the diff against every criterion.
- Do not modify any files.

Response format:
- Return JSON only, as a single object with these keys:
  - "complete": boolean, true only when every criterion is met.
  - "reason": string summarising the judgement.
  - "missing_items": list of strings naming unmet criteria.
  - "follow_up_tasks": list of strings, concrete next steps for unmet criteria.

Issue #{issue.number}: {issue.title}

Issue body:
{issue.body}

Plan:
{live_plan}

Diff:
{_truncate_diff(diff)}
""".strip()


def build_change_request_prompt(
    *,
    pull_request: PullRequestSnapshot,
    repo_full_name: str,
    comments: tuple[IssueComment, ...],
    diff: str,
    clarification_round: int,
    max_clarification_rounds: int,
) -> str:
    can_ask = clarification_round < max_clarification_rounds
    ask_line = (
        "- If the request is ambiguous, set needs_clarification and ask questions."
        if can_ask
        else "- Clarification rounds are exhausted; do not ask further questions."
    )
    return f"""
You are the change-request agent for repository {repo_full_name}.

Task:
- Read the pull request discussion and decide which file changes it asks for.
- Produce the complete new content for every file you create or edit.
{ask_line}

Response format:
- Return JSON only, as a single object with these keys:
  - "can_implement": boolean.
  - "needs_clarification": boolean.
  - "clarifying_questions": list of strings.
  - "reason": string.
  - "requires_test_run": boolean.
  - "changes": list of objects with keys "file" (repository-relative path),
    "action" ("create", "edit" or "delete"), "content" (full file content,
    omitted for delete) and "description" (one line).

Pull request #{pull_request.number}: {pull_request.title}
Head branch: {pull_request.head_ref}
Base branch: {pull_request.base_ref}

Pull request body:
{pull_request.body}

Discussion:
{_render_comments(comments)}

Current diff against base:
{_truncate_diff(diff)}
""".strip()
