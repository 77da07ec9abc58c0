from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, replace
import json
import logging
from typing import Literal, cast
from urllib.parse import quote, urlencode

from repowarden.models import (
    Issue,
    IssueComment,
    LabelEvent,
    PullRequest,
    PullRequestSnapshot,
)
from repowarden.observability import log_event
from repowarden.shell import CommandError, run


LOGGER = logging.getLogger("repowarden.github_gateway")

_PAGE_SIZE = 100


class GitHubPollingError(RuntimeError):
    """A read failed in a way the next poll may not repeat (network, rate limit, bad payload)."""


class GitHubResponseError(RuntimeError):
    """GitHub answered a write with a payload of the wrong shape."""


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: dict[str, str]
    body: str


@dataclass
class _EtagCache:
    etags: dict[str, str] = field(default_factory=dict)
    payloads: dict[str, object] = field(default_factory=dict)

    def request_headers(self, path: str) -> list[str]:
        etag = self.etags.get(path)
        return ["--header", f"If-None-Match: {etag}"] if etag else []

    def remember(self, path: str, etag: str | None, payload: object) -> None:
        if etag:
            self.etags[path] = etag
            self.payloads[path] = payload

    def replay(self, path: str) -> object:
        if path not in self.payloads:
            raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
        return self.payloads[path]


@dataclass(frozen=True)
class GitHubGateway:
    """Thin ``gh api`` client for one repository.

    Reads go through a conditional-GET cache so an idle poll costs no rate limit,
    and any read failure surfaces as ``GitHubPollingError``. Writes raise the
    underlying ``CommandError`` unchanged.
    """

    owner: str
    name: str
    _cache: _EtagCache = field(default_factory=_EtagCache, init=False, repr=False, compare=False)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_issues_with_any_labels(self, labels: tuple[str, ...]) -> list[Issue]:
        merged: dict[int, Issue] = {}
        for label in labels:
            for issue in self.list_open_issues_with_label(label):
                seen = merged.get(issue.number)
                if seen is None:
                    merged[issue.number] = issue
                    continue
                merged[issue.number] = replace(
                    issue,
                    labels=tuple(dict.fromkeys(seen.labels + issue.labels)),
                    author_login=seen.author_login or issue.author_login,
                    is_pull_request=seen.is_pull_request or issue.is_pull_request,
                )
        issues = [merged[number] for number in sorted(merged)]
        log_event(
            LOGGER,
            "issues_deduped",
            fetched_label_count=len(labels),
            deduped_issue_count=len(issues),
        )
        return issues

    def list_open_issues_with_label(self, label: str) -> list[Issue]:
        # The issues endpoint also returns pull requests; request-changes triggers need them.
        issues = [
            _issue_from(item)
            for item in self._pages("/issues", {"state": "open", "labels": label}, what="issues")
        ]
        log_event(LOGGER, "github_read", endpoint="issues", label=label, count=len(issues))
        return issues

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        comments = [
            _comment_from(item)
            for item in self._pages(f"/issues/{issue_number}/comments", {}, what="issue comments")
        ]
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def latest_label_event(self, issue_number: int, label: str) -> LabelEvent | None:
        matches = [
            _label_event_from(item, label)
            for item in self._pages(f"/issues/{issue_number}/events", {}, what="issue events")
            if item.get("event") == "labeled" and _label_name(item) == label
        ]
        latest = max(matches, key=lambda event: event.event_id, default=None)
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_events",
            issue_number=issue_number,
            label=label,
            found=latest is not None,
        )
        return latest

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        item = _object(self._request("GET", self._repo_path(f"/pulls/{pr_number}")))
        head = _object(item.get("head")) if item is not None else None
        base = _object(item.get("base")) if item is not None else None
        if item is None or head is None or base is None:
            raise GitHubPollingError(
                f"Pull request #{pr_number} payload is missing head/base refs"
            )
        snapshot = PullRequestSnapshot(
            number=_int(item.get("number"), name="number"),
            title=_text(item.get("title")),
            body=_text(item.get("body")),
            head_ref=_text(head.get("ref")),
            head_sha=_text(head.get("sha")),
            base_ref=_text(base.get("ref")),
            state=_text(item.get("state")),
            merged=item.get("merged") is True,
        )
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=snapshot.number)
        return snapshot

    def find_pull_request_by_head(
        self,
        *,
        head: str,
        base: str | None = None,
        state: Literal["open", "all"] = "open",
    ) -> PullRequest | None:
        if state not in ("open", "all"):
            raise ValueError("state must be 'open' or 'all'")
        params = {"state": state, "head": f"{self.owner}:{head}"}
        if base is not None:
            params["base"] = base
        candidates = [
            PullRequest(
                number=_int(item.get("number"), name="number"),
                html_url=_text(item.get("html_url")),
            )
            for item in self._pages("/pulls", params, what="pull requests")
        ]
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            found=bool(candidates),
        )
        # The oldest PR for a head branch is the one reviewers have seen.
        return min(candidates, key=lambda candidate: candidate.number, default=None)

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        try:
            item = self._write_object(
                "POST",
                "/pulls",
                {"title": title, "head": head, "base": base, "body": body},
                what="pull request",
            )
            pr = PullRequest(
                number=_int(item.get("number"), name="number"),
                html_url=_text(item.get("html_url")),
            )
        except (CommandError, GitHubResponseError) as exc:
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
            base=base,
            head=head,
        )
        return pr

    def post_issue_comment(self, issue_number: int, body: str) -> IssueComment:
        try:
            comment = _comment_from(
                self._write_object(
                    "POST", f"/issues/{issue_number}/comments", {"body": body}, what="comment"
                )
            )
        except (CommandError, GitHubResponseError) as exc:
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_issue_comment_posted",
            issue_number=issue_number,
            comment_id=comment.comment_id,
        )
        return comment

    def update_issue_comment(self, comment_id: int, body: str) -> IssueComment:
        comment = _comment_from(
            self._write_object(
                "PATCH", f"/issues/comments/{comment_id}", {"body": body}, what="comment"
            )
        )
        log_event(LOGGER, "github_issue_comment_updated", comment_id=comment_id)
        return comment

    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        if not labels:
            return
        self._request(
            "POST",
            self._repo_path(f"/issues/{issue_number}/labels"),
            payload={"labels": list(labels)},
        )
        log_event(LOGGER, "github_labels_added", issue_number=issue_number, labels=labels)

    def remove_label(self, issue_number: int, label: str) -> bool:
        """Return False when the label was already gone."""
        path = self._repo_path(f"/issues/{issue_number}/labels/{quote(label, safe='')}")
        try:
            self._request("DELETE", path)
        except CommandError as exc:
            if "404" not in f"{exc.stdout}\n{exc.stderr}":
                raise
            log_event(
                LOGGER, "github_label_already_absent", issue_number=issue_number, label=label
            )
            return False
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)
        return True

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.name}{suffix}"

    def _pages(
        self, suffix: str, params: dict[str, str], *, what: str
    ) -> Iterator[dict[str, object]]:
        page = 1
        while True:
            query = urlencode({**params, "per_page": _PAGE_SIZE, "page": page})
            payload = self._request("GET", self._repo_path(f"{suffix}?{query}"))
            if not isinstance(payload, list):
                raise GitHubPollingError(f"Unexpected GitHub response: expected list for {what}")
            for entry in payload:
                item = _object(entry)
                if item is not None:
                    yield item
            if len(payload) < _PAGE_SIZE:
                return
            page += 1

    def _write_object(
        self, method: str, suffix: str, payload: dict[str, object], *, what: str
    ) -> dict[str, object]:
        item = _object(self._request(method, self._repo_path(suffix), payload=payload))
        if item is None:
            raise GitHubResponseError(f"Unexpected GitHub response: expected object for {what}")
        return item

    def _request(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        if method.upper() == "GET":
            return self._conditional_get(path)
        cmd = ["gh", "api", "--method", method.upper(), path]
        stdin_text: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_text = json.dumps(payload)
        raw = run(cmd, input_text=stdin_text)
        return json.loads(raw) if raw.strip() else None

    def _conditional_get(self, path: str) -> object:
        cmd = ["gh", "api", "--method", "GET", *self._cache.request_headers(path)]
        cmd.extend(["--include", path])
        raw = run(cmd, check=False)
        try:
            response = parse_http_response(raw)
            if response.status == 304:
                return self._cache.replay(path)
            if not 200 <= response.status < 300:
                raise RuntimeError(
                    f"GitHub API request failed with status {response.status}: "
                    f"{response.body.strip() or '<empty>'}"
                )
            payload = json.loads(response.body)
        except (RuntimeError, ValueError) as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview(raw),
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc
        self._cache.remember(path, response.headers.get("etag"), payload)
        return payload


def parse_http_response(raw: str) -> HttpResponse:
    """Parse ``gh api --include`` output, keeping only the final status block."""
    lines = raw.replace("\r\n", "\n").split("\n")
    starts = [index for index, line in enumerate(lines) if line.startswith("HTTP/")]
    if not starts:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")
    status_line = lines[starts[-1]]
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or not parts[1].isdigit():
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    headers: dict[str, str] = {}
    rest = lines[starts[-1] + 1 :]
    for offset, line in enumerate(rest):
        if not line:
            return HttpResponse(int(parts[1]), headers, "\n".join(rest[offset + 1 :]))
        key, sep, value = line.partition(":")
        if sep:
            headers[key.strip().lower()] = value.strip()
    return HttpResponse(int(parts[1]), headers, "")


def _issue_from(item: dict[str, object]) -> Issue:
    labels: list[str] = []
    raw_labels = item.get("labels")
    for entry in raw_labels if isinstance(raw_labels, list) else []:
        name = (_object(entry) or {}).get("name")
        if isinstance(name, str):
            labels.append(name)
    return Issue(
        number=_int(item.get("number"), name="number"),
        title=_text(item.get("title")),
        body=_text(item.get("body")),
        html_url=_text(item.get("html_url")),
        labels=tuple(labels),
        author_login=_login_of(item.get("user")),
        is_pull_request="pull_request" in item,
    )


def _comment_from(item: dict[str, object]) -> IssueComment:
    return IssueComment(
        comment_id=_int(item.get("id"), name="id"),
        body=_text(item.get("body")),
        user_login=_login_of(item.get("user")),
        html_url=_text(item.get("html_url")),
        created_at=_text(item.get("created_at")),
        updated_at=_text(item.get("updated_at")),
    )


def _label_event_from(item: dict[str, object], label: str) -> LabelEvent:
    return LabelEvent(
        event_id=_int(item.get("id"), name="id"),
        label=label,
        actor_login=_login_of(item.get("actor")),
        created_at=_text(item.get("created_at")),
    )


def _label_name(item: dict[str, object]) -> str | None:
    label = _object(item.get("label"))
    name = label.get("name") if label is not None else None
    return name if isinstance(name, str) else None


def _preview(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if len(compact) > limit:
        return f"{compact[:limit]}..."
    return compact or "<empty>"


def _object(value: object) -> dict[str, object] | None:
    if isinstance(value, dict) and all(isinstance(key, str) for key in value):
        return cast(dict[str, object], value)
    return None


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _login_of(user: object) -> str:
    login = (_object(user) or {}).get("login")
    return login.strip().lower() if isinstance(login, str) else ""


def _int(value: object, *, name: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise GitHubResponseError(f"Unexpected GitHub value for {name}: {value!r}")
