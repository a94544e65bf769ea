"""
Graceful shutdown for the ProxySQL agent.

Shutdown Protocol:
=================

    SIGTERM/SIGINT │ prestop request │ cancellation
                   ▼
    ┌─────────────────────────────┐
    │  Run-once guard             │  ← later triggers await the same result
    └─────────────┬───────────────┘
                  ▼
    ┌─────────────────────────────┐
    │  DRAINING                   │  ← drain marker file, PROXYSQL PAUSE
    └─────────────┬───────────────┘
                  ▼
    ┌─────────────────────────────┐
    │  Wait for clients           │  ← poll until zero, drain timeout,
    └─────────────┬───────────────┘    bounded by the overall deadline
                  ▼
    ┌─────────────────────────────┐
    │  STOPPING                   │  ← PROXYSQL SHUTDOWN SLOW,
    └─────────────┬───────────────┘    close admin connection
                  ▼
    ┌─────────────────────────────┐
    │  Stop HTTP transport        │  ← own timeout
    └─────────────┬───────────────┘
                  ▼
    ┌─────────────────────────────┐
    │  STOPPED                    │
    └─────────────────────────────┘

A failing step is logged and recorded in the result; the remaining steps
still run.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, Protocol, TypeVar

from proxysql_agent.core.config import ShutdownSettings
from proxysql_agent.core.errors import AgentError
from proxysql_agent.observability.tracing import add_span_event, trace_span
from proxysql_agent.proxysql import commands
from proxysql_agent.proxysql.state import ControlPlane, ShutdownPhase

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on closing the admin connection once the deadline has passed.
CLOSE_GRACE_SECONDS = 5.0


class TransportHandle(Protocol):
    """Something that serves HTTP and can be stopped."""

    async def stop(self) -> None: ...


@dataclass
class ShutdownConfig:
    """Shutdown configuration."""
    draining_file: Path = Path("/var/lib/proxysql/draining")
    drain_timeout_seconds: float = 30.0  # Max time to wait for clients to leave
    shutdown_timeout_seconds: float = 60.0  # Overall deadline for steps 1-3
    drain_poll_interval_seconds: float = 2.0
    transport_timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: ShutdownSettings) -> ShutdownConfig:
        return cls(
            draining_file=settings.draining_file,
            drain_timeout_seconds=settings.drain_timeout,
            shutdown_timeout_seconds=settings.shutdown_timeout,
            drain_poll_interval_seconds=settings.drain_poll_interval,
            transport_timeout_seconds=settings.transport_timeout,
        )


@dataclass
class ShutdownResult:
    """Outcome of the shutdown sequence."""
    success: bool = True
    trigger: str = ""
    drained: bool = False
    drain_polls: int = 0
    proxy_stopped: bool = False
    connection_closed: bool = False
    transport_stopped: bool = False
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def first_error(self) -> str | None:
        return self.errors[0] if self.errors else None

    def record(self, step: str, error: BaseException | str) -> None:
        message = f"{step}: {error}" if str(error) else f"{step}: {type(error).__name__}"
        logger.error(f"Shutdown step failed: {message}")
        self.errors.append(message)
        self.success = False

    def snapshot(self) -> ShutdownResult:
        return dataclasses.replace(self, errors=list(self.errors))


class RunOnce(Generic[T]):
    """
    Run-exactly-once latch.

    The first caller starts the coroutine; every caller, including the
    first, awaits the same future, which is the single result cell. A caller
    being cancelled does not cancel the shared run.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._future: asyncio.Future[T] | None = None

    @property
    def started(self) -> bool:
        return self._future is not None

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        with self._lock:
            if self._future is None:
                self._future = asyncio.ensure_future(fn())
            future = self._future
        return await asyncio.shield(future)


class ShutdownOrchestrator:
    """
    Owns the drain-and-stop sequence.

    Usage:
        orchestrator = ShutdownOrchestrator(plane, ShutdownConfig.from_settings(settings.shutdown))
        orchestrator.register_transport(transport)

        loop.add_signal_handler(signal.SIGTERM, orchestrator.trigger, "SIGTERM")

        result = await orchestrator.wait_stopped()
    """

    def __init__(
        self,
        plane: ControlPlane,
        config: ShutdownConfig | None = None,
        transport: TransportHandle | None = None,
    ):
        self._plane = plane
        self.config = config or ShutdownConfig()
        self._transport = transport

        self._guard: RunOnce[ShutdownResult] = RunOnce()
        self._result: ShutdownResult | None = None
        self._proxy_stopped = asyncio.Event()
        self._stopped = asyncio.Event()
        self._trigger_tasks: set[asyncio.Task] = set()

    @property
    def phase(self) -> ShutdownPhase:
        return self._plane.phase

    def is_shutting_down(self) -> bool:
        return self._plane.is_shutting_down()

    @property
    def shutdown_started(self) -> bool:
        """True once any trigger has entered the run-once guard."""
        return self._guard.started

    def register_transport(self, handle: TransportHandle) -> None:
        """Register the HTTP transport so step 4 can stop it."""
        self._transport = handle

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def begin_shutdown(self, trigger: str = "request") -> ShutdownResult:
        """
        Run the shutdown sequence, or join the one already running.

        Safe to call concurrently and repeatedly; all callers get the same
        result once the sequence has finished.
        """
        if self._guard.started:
            logger.debug(f"Shutdown already in progress, {trigger} joins it")
        return await self._guard.run(lambda: self._execute(trigger))

    async def request_stop(self, trigger: str = "prestop") -> ShutdownResult:
        """
        Start (or join) the sequence and return once the proxy has stopped.

        For callers served by the transport that step 4 stops: they must not
        wait on their own server's shutdown.
        """
        run = asyncio.ensure_future(self.begin_shutdown(trigger))
        waiter = asyncio.ensure_future(self._proxy_stopped.wait())
        try:
            await asyncio.wait({run, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if run.done():
            return run.result()
        return self._result.snapshot()

    def trigger(self, reason: str) -> asyncio.Task:
        """Start shutdown from a synchronous context on the loop, e.g. a signal handler."""
        task = asyncio.get_running_loop().create_task(self.begin_shutdown(reason))
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_tasks.discard)
        return task

    async def wait_stopped(self) -> ShutdownResult:
        """Block until the sequence has reached STOPPED."""
        await self._stopped.wait()
        return self._result

    # ------------------------------------------------------------------
    # Sequence
    # ------------------------------------------------------------------

    async def _execute(self, trigger: str) -> ShutdownResult:
        result = self._result = ShutdownResult(trigger=trigger)
        start = time.monotonic()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.shutdown_timeout_seconds

        logger.info(f"Starting graceful shutdown (trigger={trigger})")
        try:
            async with trace_span("shutdown.sequence", trigger=trigger):
                await self._start_draining(result)
                await self._wait_for_drain(result, deadline)
                await self._stop_proxy(result, deadline)
                self._proxy_stopped.set()
                await self._stop_transport(result)
                self._plane.advance(ShutdownPhase.STOPPED)
        finally:
            result.duration_seconds = time.monotonic() - start
            self._proxy_stopped.set()
            self._stopped.set()

        logger.info(
            f"Shutdown complete (success={result.success}, {result.duration_seconds:.2f}s)",
            extra={"extra_fields": {"errors": result.errors, "drained": result.drained}},
        )
        return result

    async def _start_draining(self, result: ShutdownResult) -> None:
        """Step 1: stop reconciliation, mark draining, pause the proxy."""
        self._plane.advance(ShutdownPhase.DRAINING)

        drain_file = self.config.draining_file
        try:
            drain_file.parent.mkdir(parents=True, exist_ok=True)
            drain_file.touch()
            logger.info(f"Created drain file {drain_file}")
        except OSError as e:
            result.record(f"create drain file {drain_file}", e)

        try:
            await self._plane.aexecute_owned(commands.PAUSE)
            logger.info("ProxySQL paused")
        except AgentError as e:
            result.record("pause ProxySQL", e)

    async def _wait_for_drain(self, result: ShutdownResult, deadline: float) -> None:
        """Step 2: wait for connected clients to reach zero, best effort."""
        budget = min(self.config.drain_timeout_seconds, deadline - asyncio.get_running_loop().time())
        if budget <= 0:
            logger.info("No drain budget left, proceeding with shutdown")
            return

        logger.info(f"Monitoring connection drain (max_wait={budget:.1f}s)")
        try:
            await asyncio.wait_for(self._poll_clients(result), timeout=budget)
        except TimeoutError:
            logger.info("Drain timeout reached, proceeding with shutdown")

    async def _poll_clients(self, result: ShutdownResult) -> None:
        start = time.monotonic()
        while True:
            result.drain_polls += 1
            try:
                clients = await self._plane.aquery_owned(commands.CONNECTED_CLIENTS)
            except AgentError as e:
                logger.debug(f"Failed to check client connections during drain: {e}")
                clients = None

            add_span_event("drain.poll", {"clients": clients})
            if clients == 0:
                result.drained = True
                logger.info(f"All client connections drained in {time.monotonic() - start:.1f}s")
                return

            logger.debug(f"Waiting on client connections: {clients}")
            await asyncio.sleep(self.config.drain_poll_interval_seconds)

    async def _stop_proxy(self, result: ShutdownResult, deadline: float) -> None:
        """Step 3: slow-shutdown the proxy and close the admin connection."""
        self._plane.advance(ShutdownPhase.STOPPING)

        if not self._plane.connected:
            return

        loop = asyncio.get_running_loop()
        logger.info("Shutting down ProxySQL")
        try:
            await asyncio.wait_for(
                self._plane.aexecute_owned(commands.SHUTDOWN_SLOW),
                timeout=max(deadline - loop.time(), 0.0),
            )
            result.proxy_stopped = True
            logger.info("ProxySQL shutdown command completed")
        except TimeoutError:
            result.record("shutdown ProxySQL", "shutdown deadline reached")
        except AgentError as e:
            result.record("shutdown ProxySQL", e)

        # Close from this side whatever happened above.
        try:
            await asyncio.wait_for(
                self._plane.ainvalidate(),
                timeout=max(deadline - loop.time(), CLOSE_GRACE_SECONDS),
            )
            result.connection_closed = True
            logger.info("Admin connection closed")
        except TimeoutError:
            result.record("close admin connection", "timed out")
        except AgentError as e:
            result.record("close admin connection", e)

    async def _stop_transport(self, result: ShutdownResult) -> None:
        """Step 4: stop the HTTP transport with its own timeout."""
        if self._transport is None:
            return

        logger.info("Shutting down HTTP server")
        try:
            await asyncio.wait_for(self._transport.stop(), timeout=self.config.transport_timeout_seconds)
            result.transport_stopped = True
            logger.info("HTTP server shutdown completed")
        except TimeoutError:
            result.record("stop HTTP server", "timed out")
        except Exception as e:
            result.record("stop HTTP server", e)
