from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import re
from typing import Callable, Literal, cast

from repowarden.atomic_file import atomic_write_json
from repowarden.git_ops import GitRepository
from repowarden.observability import log_event


LOGGER = logging.getLogger("repowarden.worktree")
_REGISTRY_VERSION = 1

SyncOutcome = Literal["created", "up_to_date", "fast_forwarded", "ahead", "local_only"]


class WorktreeError(RuntimeError):
    pass


@dataclass(frozen=True)
class BranchInfo:
    head_ref: str
    base_ref: str
    pr_number: int | None = None


@dataclass(frozen=True)
class WorktreeInfo:
    slug: str
    path: Path
    branch: str
    base_branch: str
    created_at: str
    pr_number: int | None = None

    @property
    def active(self) -> bool:
        return self.path.exists()

    def to_registry_entry(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "branch": self.branch,
            "base_branch": self.base_branch,
            "created_at": self.created_at,
            "pr_number": self.pr_number,
        }


@dataclass(frozen=True)
class WorktreeContext:
    info: WorktreeInfo
    sync: SyncOutcome

    @property
    def path(self) -> Path:
        return self.info.path

    @property
    def created(self) -> bool:
        return self.sync == "created"


class WorktreeManager:
    def __init__(
        self,
        git: GitRepository,
        *,
        registry_path: Path | None = None,
        now: Callable[[], str] | None = None,
    ) -> None:
        self._git = git
        self._registry_path = registry_path or git.layout.worktrees_root / "registry.json"
        self._now = now or _utc_now_iso8601

    @property
    def registry_path(self) -> Path:
        return self._registry_path

    def ensure(self, branch_info: BranchInfo, *, create_branch: bool = False) -> WorktreeContext:
        branch = branch_info.head_ref.strip()
        if not branch:
            raise WorktreeError("Cannot ensure a worktree for an empty branch name")
        if branch == branch_info.base_ref and create_branch:
            raise WorktreeError(f"Refusing to build directly on base branch {branch!r}")

        self._git.fetch_origin()
        registry = self._load_registry()
        listed = {item.branch: item for item in self._git.list_worktrees() if item.branch}
        clone_path = self._git.layout.clone_path

        existing = listed.get(branch)
        if existing is not None and existing.path.resolve() == clone_path.resolve():
            raise WorktreeError(f"Branch {branch!r} is checked out in the base clone {clone_path}")

        if existing is not None and existing.path.exists():
            info = self._registered_info(registry, branch)
            if info is None or info.path != existing.path:
                info = WorktreeInfo(
                    slug=worktree_slug(branch),
                    path=existing.path,
                    branch=branch,
                    base_branch=branch_info.base_ref,
                    created_at=self._now(),
                    pr_number=branch_info.pr_number,
                )
            if branch_info.pr_number is not None and info.pr_number != branch_info.pr_number:
                info = WorktreeInfo(
                    slug=info.slug,
                    path=info.path,
                    branch=info.branch,
                    base_branch=info.base_branch,
                    created_at=info.created_at,
                    pr_number=branch_info.pr_number,
                )
            outcome = self._sync(existing.path, branch)
            registry[info.slug] = info
            self._save_registry(registry)
            log_event(
                LOGGER,
                "worktree_reused",
                branch=branch,
                path=str(info.path),
                sync=outcome,
            )
            return WorktreeContext(info=info, sync=outcome)

        stale = self._registered_info(registry, branch)
        if existing is not None or (stale is not None and not stale.active):
            self._git.prune_worktrees()
            if stale is not None:
                registry.pop(stale.slug, None)
            log_event(LOGGER, "worktree_pruned", branch=branch)

        info = self._create(branch_info, branch=branch, create_branch=create_branch)
        registry[info.slug] = info
        self._save_registry(registry)
        return WorktreeContext(info=info, sync="created")

    def find_by_branch(self, branch: str) -> WorktreeInfo | None:
        return self._registered_info(self._load_registry(), branch)

    def list_worktrees(self) -> tuple[WorktreeInfo, ...]:
        registry = self._load_registry()
        return tuple(registry[slug] for slug in sorted(registry))

    def _create(self, branch_info: BranchInfo, *, branch: str, create_branch: bool) -> WorktreeInfo:
        slug = worktree_slug(branch)
        path = self._git.layout.worktrees_root / slug
        if path.exists():
            raise WorktreeError(f"Worktree path {path} exists but is not a registered worktree")

        if self._git.local_branch_exists(branch):
            self._git.add_worktree(path, branch)
        elif self._git.remote_branch_exists(branch):
            self._git.add_worktree(
                path,
                branch,
                start_point=f"origin/{branch}",
                create_branch=True,
                track=True,
            )
        elif create_branch:
            base = branch_info.base_ref
            if not self._git.remote_branch_exists(base):
                raise WorktreeError(f"Base branch {base!r} does not exist on origin")
            self._git.add_worktree(path, branch, start_point=f"origin/{base}", create_branch=True)
        else:
            raise WorktreeError(f"Unable to resolve branch {branch!r} locally or on origin")

        log_event(LOGGER, "worktree_created", branch=branch, path=str(path))
        return WorktreeInfo(
            slug=slug,
            path=path,
            branch=branch,
            base_branch=branch_info.base_ref,
            created_at=self._now(),
            pr_number=branch_info.pr_number,
        )

    def _sync(self, path: Path, branch: str) -> SyncOutcome:
        if not self._git.remote_branch_exists(branch):
            return "local_only"
        local_sha = self._git.current_head_sha(path)
        remote_sha = self._git.rev_parse(path, f"origin/{branch}")
        if local_sha == remote_sha:
            return "up_to_date"
        if self._git.is_ancestor(path, local_sha, remote_sha):
            self._git.merge_ff_only(path, f"origin/{branch}")
            return "fast_forwarded"
        if self._git.is_ancestor(path, remote_sha, local_sha):
            return "ahead"
        raise WorktreeError(
            f"Branch {branch!r} has diverged from origin "
            f"(local {local_sha[:12]}, remote {remote_sha[:12]}); manual resolution required"
        )

    def _registered_info(
        self, registry: dict[str, WorktreeInfo], branch: str
    ) -> WorktreeInfo | None:
        for info in registry.values():
            if info.branch == branch:
                return info
        return None

    def _load_registry(self) -> dict[str, WorktreeInfo]:
        if not self._registry_path.exists():
            return {}
        try:
            payload = json.loads(self._registry_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            log_event(LOGGER, "worktree_registry_corrupt", path=str(self._registry_path))
            return {}
        if not isinstance(payload, dict):
            return {}
        entries = payload.get("worktrees")
        if not isinstance(entries, dict):
            return {}
        registry: dict[str, WorktreeInfo] = {}
        for slug, raw_entry in entries.items():
            if not isinstance(slug, str) or not isinstance(raw_entry, dict):
                continue
            entry = cast(dict[str, object], raw_entry)
            path = entry.get("path")
            branch = entry.get("branch")
            if not isinstance(path, str) or not isinstance(branch, str):
                continue
            pr_number = entry.get("pr_number")
            registry[slug] = WorktreeInfo(
                slug=slug,
                path=Path(path),
                branch=branch,
                base_branch=str(entry.get("base_branch") or ""),
                created_at=str(entry.get("created_at") or ""),
                pr_number=pr_number if isinstance(pr_number, int) else None,
            )
        return registry

    def _save_registry(self, registry: dict[str, WorktreeInfo]) -> None:
        atomic_write_json(
            self._registry_path,
            {
                "version": _REGISTRY_VERSION,
                "worktrees": {
                    slug: registry[slug].to_registry_entry() for slug in sorted(registry)
                },
            },
        )


def worktree_slug(branch: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", branch.strip()).strip("-.")
    return slug or "worktree"


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
