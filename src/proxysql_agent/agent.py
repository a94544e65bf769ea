"""
Agent composition.

Wires settings into a running agent:

    settings -> admin connection -> ControlPlane
                                      ├── ShutdownOrchestrator  (signals, prestop)
                                      ├── ProbeAggregator       (HTTP probes)
                                      └── mode task
                                            core/watch: MembershipFeed -> MembershipReconciler
                                            core/poll:  WatermarkPoller
                                            satellite:  SatelliteResync
"""

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable

from proxysql_agent.api.server import UvicornTransport, create_app
from proxysql_agent.cluster.feed import KubeConfig, MembershipFeed
from proxysql_agent.cluster.reconciler import MembershipReconciler
from proxysql_agent.cluster.satellite import SatelliteResync
from proxysql_agent.cluster.watermark import Watermark, WatermarkPoller
from proxysql_agent.core.config import Settings
from proxysql_agent.health.probes import ProbeAggregator
from proxysql_agent.observability.tracing import configure_tracing, shutdown_tracing
from proxysql_agent.proxysql.admin import AdminConnection, CommandExecutor
from proxysql_agent.proxysql.state import ControlPlane, ShutdownPhase
from proxysql_agent.shutdown.orchestrator import ShutdownConfig, ShutdownOrchestrator, ShutdownResult

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class Agent:
    """
    One ProxySQL sidecar agent.

    Usage:
        agent = Agent(load_settings())
        result = asyncio.run(agent.run())
    """

    def __init__(
        self,
        settings: Settings,
        connect: Callable[..., CommandExecutor] = AdminConnection.connect,
        kube: KubeConfig | None = None,
        serve_http: bool = True,
    ):
        self.settings = settings
        self._connect = connect
        self._kube = kube
        self._serve_http = serve_http

        self.plane: ControlPlane | None = None
        self.orchestrator: ShutdownOrchestrator | None = None
        self.probes: ProbeAggregator | None = None
        self.transport: UvicornTransport | None = None
        self.feed: MembershipFeed | None = None
        self.reconciler: MembershipReconciler | None = None

        self._tasks: list[asyncio.Task] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._startup: asyncio.Future | None = None
        self._pending_signal: str | None = None
        self._signalled = asyncio.Event()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Connect, serve probes and start the mode task.

        Signal handlers are installed first; a signal received before the
        connection exists is held and triggers shutdown as soon as the
        orchestrator does.

        Raises:
            AdminConnectionError: if ProxySQL is unreachable
            CacheSyncTimeoutError: if the initial pod sync does not finish in time
            FeedError: if the orchestration API is unusable
        """
        settings = self.settings
        self._loop = asyncio.get_running_loop()
        configure_tracing(settings.otel)
        self._install_signal_handlers()

        if settings.start_delay > 0:
            logger.info(f"Pausing {settings.start_delay}s before boot")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._signalled.wait(), timeout=settings.start_delay)

        executor = await asyncio.to_thread(self._connect, settings.proxysql)
        self.plane = ControlPlane(executor)
        self.plane.add_listener(self._on_phase_change)

        self.orchestrator = ShutdownOrchestrator(self.plane, ShutdownConfig.from_settings(settings.shutdown))
        if self._pending_signal is not None:
            self.orchestrator.trigger(self._pending_signal)
            return

        self.probes = ProbeAggregator(self.plane, settings.shutdown.draining_file)

        if self._serve_http:
            app = create_app(self.probes, self.orchestrator, log_probes=settings.log.probes)
            self.transport = UvicornTransport(app, settings.api)
            self.transport.start()
            self.orchestrator.register_transport(self.transport)

        if settings.run_mode == "core":
            await self._start_core()
        else:
            self._start_satellite()

    async def _start_core(self) -> None:
        core = self.settings.core
        port = self.settings.cluster_port
        kube = self._kube or KubeConfig.in_cluster()

        if core.reconcile == "poll":
            self.feed = MembershipFeed(kube, core.podselector)
            poller = WatermarkPoller(
                self.plane,
                self.feed.list_members,
                Watermark(core.watermark_file),
                port=port,
                interval=core.interval,
            )
            self._spawn(poller.run(), "core-poll")
            return

        self.reconciler = MembershipReconciler(self.plane, self.settings.identity, port)
        self._spawn(self.reconciler.run(), "reconciler")

        self.feed = MembershipFeed(kube, core.podselector, sink=self.reconciler.submit)
        await self.feed.sync(timeout=core.sync_timeout)
        self._spawn(self.feed.watch(), "pod-watch")

    def _start_satellite(self) -> None:
        satellite = self.settings.satellite
        resync = SatelliteResync(
            self.plane,
            interval=satellite.interval,
            heartbeat_threshold_ms=satellite.heartbeat_threshold_ms,
        )
        self._spawn(resync.run(), "satellite-resync")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.append(task)
        return task

    # ------------------------------------------------------------------
    # Run until stopped
    # ------------------------------------------------------------------

    async def run(self) -> ShutdownResult | None:
        """
        Run until the shutdown sequence has finished.

        Returns the shutdown result, or None when no run mode is set. A
        shutdown triggered while starting up cancels the rest of startup and
        still runs the full sequence.
        """
        if self.settings.run_mode is None:
            logger.info("No run mode specified, exiting")
            return None

        logger.info(f"Starting agent in {self.settings.run_mode} mode", extra={
            "extra_fields": {"identity": self.settings.identity, "address": self.settings.proxysql.address},
        })

        self._startup = asyncio.ensure_future(self.start())
        try:
            try:
                await self._startup
            except asyncio.CancelledError:
                if self.orchestrator is None:
                    await self._abort_startup()
                    raise
                if asyncio.current_task().cancelling():
                    raise
                logger.info("Shutdown requested during startup")
            except BaseException:
                await self._abort_startup()
                raise

            return await self.orchestrator.wait_stopped()
        except asyncio.CancelledError:
            if self.orchestrator is not None:
                logger.info("Agent cancelled, initiating graceful shutdown")
                await self.orchestrator.begin_shutdown("cancelled")
            raise
        finally:
            self._remove_signal_handlers()
            await self._cleanup()

    def _install_signal_handlers(self) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.warning(f"Cannot install handler for {sig.name}")
        logger.debug("Signal handlers installed")

    def _remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        if self.orchestrator is None:
            # Not connected yet; start() triggers shutdown once it can.
            self._pending_signal = self._pending_signal or sig.name
            self._signalled.set()
            return
        self.orchestrator.trigger(sig.name)

    def _on_phase_change(self, old: ShutdownPhase, new: ShutdownPhase) -> None:
        # Reconciliation and any unfinished startup stop with the first shutdown phase.
        if old == ShutdownPhase.RUNNING and self._loop is not None:
            self._loop.call_soon_threadsafe(self._cancel_tasks)

    def _cancel_tasks(self) -> None:
        if self._startup is not None:
            self._startup.cancel()
        for task in self._tasks:
            task.cancel()

    async def _cleanup(self) -> None:
        self._cancel_tasks()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self.feed is not None:
            await self.feed.close()
        shutdown_tracing()

    async def _abort_startup(self) -> None:
        """Release whatever startup acquired before it failed."""
        if self.orchestrator is not None and self.orchestrator.shutdown_started:
            # The sequence owns the connection and the transport.
            await self.orchestrator.wait_stopped()
            return
        if self.transport is not None and self.transport.running:
            await self.transport.stop()
        if self.plane is not None:
            try:
                await self.plane.ainvalidate()
            except Exception as e:
                logger.warning(f"Failed to close admin connection: {e}")
