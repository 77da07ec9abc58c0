from __future__ import annotations

from dataclasses import dataclass
import logging
import multiprocessing
import os
import signal
import time
from typing import Any, Callable, Literal, Protocol

from repowarden.observability import log_event


LOGGER = logging.getLogger("repowarden.child_process")

ChildOutcome = Literal["exited", "timed_out"]


class ProcessLike(Protocol):
    @property
    def exitcode(self) -> int | None: ...

    @property
    def pid(self) -> int | None: ...

    def start(self) -> None: ...

    def join(self, timeout: float | None = None) -> None: ...

    def is_alive(self) -> bool: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


ProcessFactory = Callable[[Callable[..., Any], tuple[Any, ...], str], ProcessLike]
GroupSignaller = Callable[[int, int], None]


@dataclass(frozen=True)
class ChildHandle:
    key: str
    pid: int | None
    started_at: float
    deadline: float


@dataclass(frozen=True)
class ChildExit:
    handle: ChildHandle
    outcome: ChildOutcome
    exitcode: int | None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "exited" and self.exitcode == 0


def spawn_process(target: Callable[..., Any], args: tuple[Any, ...], name: str) -> ProcessLike:
    context = multiprocessing.get_context("spawn")
    return context.Process(
        target=lead_process_group, args=(target, args), name=name, daemon=False
    )


def lead_process_group(target: Callable[..., Any], args: tuple[Any, ...]) -> None:
    """Run ``target`` as the leader of a new session.

    Agent CLIs and test commands started by the child join its group, so a
    timeout can signal all of them at once.
    """
    os.setsid()
    target(*args)


def signal_process_group(pgid: int, signum: int) -> None:
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        pass


class ChildProcessSupervisor:
    """Tracks long-running child processes with hard deadlines.

    The supervisor never blocks longer than the wait it is given: each poll joins
    children with a bounded timeout and kills any child past its deadline.
    """

    def __init__(
        self,
        *,
        process_factory: ProcessFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        kill_grace_seconds: float = 5.0,
        signal_group: GroupSignaller = signal_process_group,
    ) -> None:
        self._process_factory = process_factory or spawn_process
        self._signal_group = signal_group
        self._clock = clock
        self._kill_grace_seconds = kill_grace_seconds
        self._children: dict[str, tuple[ChildHandle, ProcessLike]] = {}

    def start(
        self,
        key: str,
        target: Callable[..., Any],
        args: tuple[Any, ...],
        *,
        timeout_seconds: float,
    ) -> ChildHandle:
        if key in self._children:
            raise ValueError(f"Child already running for {key}")
        process = self._process_factory(target, args, f"repowarden-{key}")
        process.start()
        started_at = self._clock()
        handle = ChildHandle(
            key=key,
            pid=process.pid,
            started_at=started_at,
            deadline=started_at + timeout_seconds,
        )
        self._children[key] = (handle, process)
        log_event(
            LOGGER,
            "child_started",
            key=key,
            pid=process.pid,
            timeout_seconds=timeout_seconds,
        )
        return handle

    def is_running(self, key: str) -> bool:
        return key in self._children

    def running_count(self) -> int:
        return len(self._children)

    def running_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._children))

    def poll(self, wait_seconds: float = 0.0) -> tuple[ChildExit, ...]:
        if not self._children:
            return ()
        per_child_wait = max(0.0, wait_seconds) / len(self._children)
        exits: list[ChildExit] = []
        for key, (handle, process) in list(self._children.items()):
            remaining = handle.deadline - self._clock()
            process.join(timeout=max(0.0, min(per_child_wait, remaining)))
            if not process.is_alive():
                del self._children[key]
                log_event(LOGGER, "child_exited", key=key, exitcode=process.exitcode)
                exits.append(ChildExit(handle=handle, outcome="exited", exitcode=process.exitcode))
                continue
            if self._clock() >= handle.deadline:
                self._kill(handle, process)
                del self._children[key]
                log_event(
                    LOGGER,
                    "build_child_timed_out",
                    key=key,
                    pid=handle.pid,
                    elapsed_seconds=round(self._clock() - handle.started_at, 3),
                )
                exits.append(
                    ChildExit(handle=handle, outcome="timed_out", exitcode=process.exitcode)
                )
        return tuple(exits)

    def wait_all(self, poll_seconds: float = 1.0) -> tuple[ChildExit, ...]:
        collected: list[ChildExit] = []
        while self._children:
            collected.extend(self.poll(poll_seconds))
        return tuple(collected)

    def _kill(self, handle: ChildHandle, process: ProcessLike) -> None:
        if handle.pid is not None:
            self._signal_group(handle.pid, signal.SIGTERM)
        process.terminate()
        process.join(timeout=self._kill_grace_seconds)
        if process.is_alive():
            process.kill()
            process.join(timeout=self._kill_grace_seconds)
        # Grandchildren may ignore SIGTERM and outlive the child.
        if handle.pid is not None:
            self._signal_group(handle.pid, signal.SIGKILL)
