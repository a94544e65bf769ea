"""
Shared state for the agent: the shutdown phase and the admin connection.

Every command path goes through `ControlPlane`. The guarded accessors check
the phase and the connection handle under the same acquisition that runs the
statement, and `invalidate()` takes that acquisition too, so a statement can
never start on a connection that the shutdown sequence has already closed.

Blocking calls have `a`-prefixed coroutine twins that run them in a worker
thread, keeping the event loop free for probes and signal handling.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import IntEnum

from proxysql_agent.core.errors import AdminConnectionError, PhaseTransitionError
from proxysql_agent.proxysql.admin import CommandExecutor

logger = logging.getLogger(__name__)


class ShutdownPhase(IntEnum):
    """Shutdown phases, totally ordered; the phase only ever moves forward."""
    RUNNING = 0  # Reconciliation allowed
    DRAINING = 1  # Paused, waiting for clients to leave
    STOPPING = 2  # Proxy shutting down, connection closing
    STOPPED = 3  # Terminal

    def __str__(self) -> str:
        return self.name.lower()


PhaseListener = Callable[[ShutdownPhase, ShutdownPhase], None]


class RWLock:
    """
    Reader/writer lock.

    Any number of readers may hold it at once; a writer holds it alone.
    Waiting writers block new readers so phase transitions are not starved
    by a busy probe endpoint.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class ControlPlane:
    """
    Owns the admin connection and the shutdown phase.

    Usage:
        plane = ControlPlane(AdminConnection.connect(settings.proxysql))

        # Reconciliation: skipped (False) once draining has begun
        if not await plane.aexecute("LOAD PROXYSQL SERVERS TO RUNTIME"):
            return

        # Shutdown owner: no phase check
        await plane.aexecute_owned("PROXYSQL SHUTDOWN SLOW")
        await plane.ainvalidate()
    """

    def __init__(self, executor: CommandExecutor | None):
        self._executor = executor
        self._conn_lock = threading.Lock()

        self._phase = ShutdownPhase.RUNNING
        self._phase_lock = RWLock()

        self._listeners: list[PhaseListener] = []

    # ------------------------------------------------------------------
    # Phase
    # ------------------------------------------------------------------

    @property
    def phase(self) -> ShutdownPhase:
        with self._phase_lock.read():
            return self._phase

    def is_shutting_down(self) -> bool:
        return self.phase != ShutdownPhase.RUNNING

    @property
    def connected(self) -> bool:
        with self._conn_lock:
            return self._executor is not None

    def add_listener(self, listener: PhaseListener) -> None:
        """Register a callback invoked as `listener(old, new)` after each transition."""
        self._listeners.append(listener)

    def advance(self, phase: ShutdownPhase) -> bool:
        """
        Move the phase forward.

        Returns True if the phase changed, False if it already was `phase`.

        Raises:
            PhaseTransitionError: if `phase` is before the current phase
        """
        with self._phase_lock.write():
            old = self._phase
            if phase < old:
                raise PhaseTransitionError(f"cannot move shutdown phase from {old} back to {phase}")
            if phase == old:
                return False
            self._phase = phase

        logger.info(
            f"shutdown phase changed: {old} -> {phase}",
            extra={"extra_fields": {"from": str(old), "to": str(phase)}},
        )
        for listener in list(self._listeners):
            listener(old, phase)
        return True

    # ------------------------------------------------------------------
    # Guarded access (reconciliation, probes)
    # ------------------------------------------------------------------

    def execute(self, statement: str) -> bool:
        """
        Run `statement` if the agent is still running.

        Returns False without touching the connection once shutdown began.

        Raises:
            CommandError: if the statement fails
        """
        with self._conn_lock:
            if self._executor is None or self.is_shutting_down():
                logger.debug(f"skipping command during shutdown: {statement}")
                return False
            self._executor.execute(statement)
            return True

    def query_scalar(self, statement: str) -> int | None:
        """
        Run a single-value query if the agent is still running.

        Returns None when skipped or when the query produced no value.
        """
        with self._conn_lock:
            if self._executor is None or self.is_shutting_down():
                logger.debug(f"skipping query during shutdown: {statement}")
                return None
            return self._executor.query_scalar(statement)

    def ping(self) -> None:
        """Ping the admin interface; a no-op once shutdown began."""
        with self._conn_lock:
            if self._executor is None or self.is_shutting_down():
                return
            self._executor.ping()

    # ------------------------------------------------------------------
    # Owner access (shutdown sequence)
    # ------------------------------------------------------------------

    def execute_owned(self, statement: str) -> None:
        with self._conn_lock:
            if self._executor is None:
                raise AdminConnectionError(f"connection closed, cannot run '{statement}'")
            self._executor.execute(statement)

    def query_owned(self, statement: str) -> int | None:
        with self._conn_lock:
            if self._executor is None:
                raise AdminConnectionError(f"connection closed, cannot run '{statement}'")
            return self._executor.query_scalar(statement)

    def invalidate(self) -> bool:
        """
        Close the connection and drop the handle.

        The handle is dropped even if closing fails. Returns False if it
        was already gone.
        """
        with self._conn_lock:
            executor, self._executor = self._executor, None
            if executor is None:
                return False
            executor.close()
            return True

    # ------------------------------------------------------------------
    # Async twins
    # ------------------------------------------------------------------

    async def aexecute(self, statement: str) -> bool:
        return await asyncio.to_thread(self.execute, statement)

    async def aquery_scalar(self, statement: str) -> int | None:
        return await asyncio.to_thread(self.query_scalar, statement)

    async def aping(self) -> None:
        await asyncio.to_thread(self.ping)

    async def aexecute_owned(self, statement: str) -> None:
        await asyncio.to_thread(self.execute_owned, statement)

    async def aquery_owned(self, statement: str) -> int | None:
        return await asyncio.to_thread(self.query_owned, statement)

    async def ainvalidate(self) -> bool:
        return await asyncio.to_thread(self.invalidate)
