from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Callable

from repowarden.config import AppConfig
from repowarden.context import WatchContext, build_checkpointer, build_watch_context
from repowarden.models import WatchState
from repowarden.observability import log_event, log_warning_event
from repowarden.self_update import SelfUpdateCheckpointer, UpdateError


LOGGER = logging.getLogger("repowarden.watch_service")


@dataclass(frozen=True)
class WatchService:
    """Runs the poller for one repository between checkpoint restore and update checks.

    ``UpdateExitRequested`` escapes ``run`` untouched; the CLI turns it into
    the restart exit status.
    """

    config: AppConfig
    interval_override: int | None = None
    log_verbose: str | None = None
    checkpointer: SelfUpdateCheckpointer | None = None
    context_factory: Callable[..., WatchContext] = field(default=build_watch_context)

    def run(self, *, once: bool) -> None:
        checkpointer = self.checkpointer or build_checkpointer(
            self.config.auto_update, base_dir=self.config.runtime.base_dir
        )
        restored = checkpointer.restore_on_startup()
        config = effective_config(
            self.config, restored=restored, interval_override=self.interval_override
        )
        context = self.context_factory(config, log_verbose=self.log_verbose)
        if restored is not None and restored.repo == config.repo.full_name:
            context.poller.restore(restored)

        context.git.ensure_clone()

        def after_tick() -> None:
            try:
                checkpointer.maybe_update(
                    context.poller.watch_state(), busy=context.poller.busy()
                )
            except UpdateError as exc:
                log_warning_event(
                    LOGGER,
                    "self_update_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        context.poller.run(once=once, after_tick=after_tick)


def effective_config(
    config: AppConfig,
    *,
    restored: WatchState | None,
    interval_override: int | None,
) -> AppConfig:
    """Command-line interval wins, then the checkpointed one, then the config file."""
    if interval_override is not None:
        return config.with_poll_interval(interval_override)
    if restored is None:
        return config
    if restored.repo != config.repo.full_name:
        log_warning_event(
            LOGGER,
            "checkpoint_repo_mismatch",
            checkpoint_repo=restored.repo,
            repo_full_name=config.repo.full_name,
        )
        return config
    if restored.provider != config.agent.provider:
        log_event(
            LOGGER,
            "checkpoint_provider_changed",
            checkpoint_provider=restored.provider,
            provider=config.agent.provider,
        )
    return config.with_poll_interval(restored.poll_interval_seconds)


def run_watch(
    config: AppConfig,
    *,
    once: bool,
    interval_override: int | None = None,
    log_verbose: str | None = None,
) -> None:
    WatchService(
        config=config,
        interval_override=interval_override,
        log_verbose=log_verbose,
    ).run(once=once)
