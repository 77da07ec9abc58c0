from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging

from repowarden.config import RepoConfig, RuntimeConfig
from repowarden.observability import log_event
from repowarden.shell import CommandError, run


LOGGER = logging.getLogger("repowarden.git_ops")


@dataclass(frozen=True)
class RepoLayout:
    clone_path: Path
    worktrees_root: Path


@dataclass(frozen=True)
class ListedWorktree:
    path: Path
    branch: str | None
    head_sha: str | None


class GitRepository:
    def __init__(self, runtime: RuntimeConfig, repo: RepoConfig) -> None:
        self.runtime = runtime
        self.repo = repo
        self.layout = RepoLayout(
            clone_path=runtime.base_dir / "repos" / repo.owner / repo.name,
            worktrees_root=runtime.base_dir / "worktrees" / repo.owner / repo.name,
        )

    def ensure_clone(self) -> Path:
        clone_path = self.layout.clone_path
        remote_url = self.repo.effective_remote_url
        self.layout.worktrees_root.mkdir(parents=True, exist_ok=True)
        if not (clone_path / ".git").exists():
            clone_path.parent.mkdir(parents=True, exist_ok=True)
            source = self.repo.local_clone_source or remote_url
            log_event(LOGGER, "git_clone", clone_path=str(clone_path))
            run(["git", "clone", source, str(clone_path)])
        run(["git", "-C", str(clone_path), "remote", "set-url", "origin", remote_url])
        self.fetch_origin(clone_path)
        return clone_path

    def fetch_origin(self, path: Path | None = None) -> None:
        target = path or self.layout.clone_path
        log_event(LOGGER, "git_fetch_origin", path=str(target))
        run(["git", "-C", str(target), "fetch", "origin", "--prune"])

    def local_branch_exists(self, branch: str) -> bool:
        return self._ref_exists(f"refs/heads/{branch}")

    def remote_branch_exists(self, branch: str) -> bool:
        return self._ref_exists(f"refs/remotes/origin/{branch}")

    def list_worktrees(self) -> list[ListedWorktree]:
        raw = run(["git", "-C", str(self.layout.clone_path), "worktree", "list", "--porcelain"])
        return parse_worktree_porcelain(raw)

    def add_worktree(
        self,
        path: Path,
        branch: str,
        *,
        start_point: str | None = None,
        create_branch: bool = False,
        track: bool = False,
    ) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        cmd = ["git", "-C", str(self.layout.clone_path), "worktree", "add"]
        if create_branch:
            cmd.extend(["--track" if track else "--no-track", "-b", branch, str(path)])
            if start_point is not None:
                cmd.append(start_point)
        else:
            cmd.extend([str(path), branch])
        log_event(
            LOGGER,
            "git_worktree_add",
            path=str(path),
            branch=branch,
            create_branch=create_branch,
            start_point=start_point,
        )
        run(cmd)

    def prune_worktrees(self) -> None:
        log_event(LOGGER, "git_worktree_prune", clone_path=str(self.layout.clone_path))
        run(["git", "-C", str(self.layout.clone_path), "worktree", "prune"])

    def status_porcelain(self, path: Path) -> tuple[str, ...]:
        raw = run(["git", "-C", str(path), "status", "--porcelain", "--untracked-files=all"])
        paths: list[str] = []
        for line in raw.splitlines():
            if len(line) < 4:
                continue
            entry = line[3:]
            if " -> " in entry:
                entry = entry.split(" -> ", 1)[1]
            paths.append(entry.strip().strip('"'))
        return tuple(paths)

    def stage_all(self, path: Path) -> None:
        run(["git", "-C", str(path), "add", "-A"])

    def commit(self, path: Path, message: str) -> str:
        log_event(
            LOGGER,
            "git_commit",
            path=str(path),
            has_message=bool(message.strip()),
        )
        run(["git", "-C", str(path), "commit", "-F", "-"], input_text=message)
        return self.current_head_sha(path)

    def push_branch(self, path: Path, branch: str) -> None:
        log_event(LOGGER, "git_push", path=str(path), branch=branch)
        try:
            run(["git", "-C", str(path), "push", "-u", "origin", f"{branch}:{branch}"])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                path=str(path),
                branch=branch,
                error_type=type(exc).__name__,
                rejected=is_push_rejection(exc),
            )
            raise

    def merge_ff_only(self, path: Path, ref: str) -> None:
        log_event(LOGGER, "git_fast_forward", path=str(path), ref=ref)
        run(["git", "-C", str(path), "merge", "--ff-only", ref])

    def current_head_sha(self, path: Path) -> str:
        return run(["git", "-C", str(path), "rev-parse", "HEAD"]).strip()

    def rev_parse(self, path: Path, ref: str) -> str:
        return run(["git", "-C", str(path), "rev-parse", ref]).strip()

    def is_ancestor(self, path: Path, older_sha: str, newer_sha: str) -> bool:
        if older_sha == newer_sha:
            return True
        try:
            merge_base = run(["git", "-C", str(path), "merge-base", older_sha, newer_sha]).strip()
        except CommandError:
            # Unrelated histories have no merge base.
            return False
        return merge_base == older_sha

    def commits_ahead(self, path: Path, base_ref: str) -> int:
        raw = run(["git", "-C", str(path), "rev-list", "--count", f"{base_ref}..HEAD"]).strip()
        return int(raw or "0")

    def diff_against(self, path: Path, base_ref: str) -> str:
        return run(["git", "-C", str(path), "diff", f"{base_ref}...HEAD"])

    def _ref_exists(self, ref: str) -> bool:
        try:
            run(
                [
                    "git",
                    "-C",
                    str(self.layout.clone_path),
                    "show-ref",
                    "--verify",
                    "--quiet",
                    ref,
                ]
            )
        except CommandError:
            return False
        return True


def parse_worktree_porcelain(raw: str) -> list[ListedWorktree]:
    entries: list[ListedWorktree] = []
    path: Path | None = None
    branch: str | None = None
    head_sha: str | None = None
    for line in [*raw.splitlines(), ""]:
        if not line.strip():
            if path is not None:
                entries.append(ListedWorktree(path=path, branch=branch, head_sha=head_sha))
            path, branch, head_sha = None, None, None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            path = Path(value)
        elif key == "HEAD":
            head_sha = value
        elif key == "branch":
            branch = value.removeprefix("refs/heads/")
    return entries


def is_push_rejection(exc: CommandError) -> bool:
    text = f"{exc.stdout}\n{exc.stderr}".lower()
    return any(
        marker in text
        for marker in ("[rejected]", "non-fast-forward", "fetch first", "failed to push some refs")
    )
