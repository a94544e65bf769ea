"""
Tests for shutdown/orchestrator.py.

Tests the ShutdownOrchestrator, ShutdownConfig, ShutdownResult and the
run-once guard against the in-memory admin store.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from proxysql_agent.core.config import ShutdownSettings
from proxysql_agent.proxysql import commands
from proxysql_agent.proxysql.state import ShutdownPhase
from proxysql_agent.shutdown.orchestrator import (
    RunOnce,
    ShutdownConfig,
    ShutdownOrchestrator,
    ShutdownResult,
)


@pytest.fixture
def config(tmp_path):
    return ShutdownConfig(
        draining_file=tmp_path / "draining",
        drain_timeout_seconds=1.0,
        shutdown_timeout_seconds=5.0,
        drain_poll_interval_seconds=0.01,
        transport_timeout_seconds=0.5,
    )


@pytest.fixture
def phases(plane):
    seen = [plane.phase]
    plane.add_listener(lambda old, new: seen.append(new))
    return seen


# =============================================================================
# Test ShutdownConfig and ShutdownResult
# =============================================================================


class TestShutdownConfig:
    """Tests for ShutdownConfig dataclass."""

    def test_default_values(self):
        config = ShutdownConfig()
        assert config.drain_timeout_seconds == 30.0
        assert config.shutdown_timeout_seconds == 60.0
        assert config.drain_poll_interval_seconds == 2.0
        assert config.transport_timeout_seconds == 10.0

    def test_from_settings(self, tmp_path):
        settings = ShutdownSettings(draining_file=tmp_path / "d", drain_timeout=5, shutdown_timeout=20)
        config = ShutdownConfig.from_settings(settings)
        assert config.draining_file == tmp_path / "d"
        assert config.drain_timeout_seconds == 5.0
        assert config.shutdown_timeout_seconds == 20.0


class TestShutdownResult:
    """Tests for ShutdownResult."""

    def test_first_error(self):
        result = ShutdownResult()
        assert result.first_error is None
        result.record("pause ProxySQL", RuntimeError("one"))
        result.record("shutdown ProxySQL", "two")
        assert result.success is False
        assert result.first_error == "pause ProxySQL: one"
        assert len(result.errors) == 2

    def test_snapshot_is_independent(self):
        result = ShutdownResult()
        copy = result.snapshot()
        result.record("step", "failed")
        assert copy.errors == []


# =============================================================================
# Test RunOnce
# =============================================================================


class TestRunOnce:
    """Tests for the run-exactly-once latch."""

    @pytest.mark.asyncio
    async def test_runs_once(self):
        guard = RunOnce()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return calls

        results = await asyncio.gather(*(guard.run(work) for _ in range(10)))

        assert calls == 1
        assert results == [1] * 10

    @pytest.mark.asyncio
    async def test_caller_cancellation_does_not_cancel_run(self):
        guard = RunOnce()
        finished = asyncio.Event()

        async def work():
            await asyncio.sleep(0.05)
            finished.set()
            return "done"

        caller = asyncio.create_task(guard.run(work))
        await asyncio.sleep(0)
        caller.cancel()

        assert await guard.run(work) == "done"
        assert finished.is_set()


# =============================================================================
# Test the shutdown sequence
# =============================================================================


class TestSequence:
    """Tests for the drain-and-stop sequence."""

    @pytest.mark.asyncio
    async def test_zero_clients(self, plane, fake_admin, config, phases):
        """Phases run in order and the drain wait checks once."""
        fake_admin.clients = 0
        orchestrator = ShutdownOrchestrator(plane, config)

        result = await orchestrator.begin_shutdown("SIGTERM")

        assert phases == [
            ShutdownPhase.RUNNING,
            ShutdownPhase.DRAINING,
            ShutdownPhase.STOPPING,
            ShutdownPhase.STOPPED,
        ]
        assert result.success is True
        assert result.drained is True
        assert result.drain_polls == 1
        assert result.trigger == "SIGTERM"
        assert fake_admin.statements.count(commands.CONNECTED_CLIENTS) == 1

    @pytest.mark.asyncio
    async def test_steps(self, plane, fake_admin, config):
        """Marker, pause, slow shutdown, close; in that order."""
        orchestrator = ShutdownOrchestrator(plane, config)

        result = await orchestrator.begin_shutdown()

        assert config.draining_file.exists()
        assert fake_admin.paused is True
        assert fake_admin.shut_down is True
        assert fake_admin.closed is True
        assert plane.connected is False
        assert result.proxy_stopped is True
        assert result.connection_closed is True

        pause = fake_admin.statements.index(commands.PAUSE)
        poll = fake_admin.statements.index(commands.CONNECTED_CLIENTS)
        stop = fake_admin.statements.index(commands.SHUTDOWN_SLOW)
        assert pause < poll < stop

    @pytest.mark.asyncio
    async def test_reconciliation_blocked_after_trigger(self, plane, fake_admin, config):
        orchestrator = ShutdownOrchestrator(plane, config)
        await orchestrator.begin_shutdown()
        assert await plane.aexecute(commands.LOAD_CLUSTER_SERVERS) is False

    @pytest.mark.asyncio
    async def test_single_execution(self, plane, fake_admin, config):
        """N concurrent triggers run step 1 exactly once and share the result."""
        orchestrator = ShutdownOrchestrator(plane, config)

        results = await asyncio.gather(*(orchestrator.begin_shutdown(f"t{i}") for i in range(20)))

        assert fake_admin.statements.count(commands.PAUSE) == 1
        assert fake_admin.statements.count(commands.SHUTDOWN_SLOW) == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_repeat_after_completion(self, plane, fake_admin, config):
        orchestrator = ShutdownOrchestrator(plane, config)
        first = await orchestrator.begin_shutdown()
        second = await orchestrator.begin_shutdown()
        assert first is second
        assert fake_admin.statements.count(commands.PAUSE) == 1


class TestDrainBound:
    """Tests for the drain wait bounds."""

    @pytest.mark.asyncio
    async def test_drain_timeout(self, plane, fake_admin, config):
        """Clients that never leave do not hold shutdown past the drain timeout."""
        fake_admin.clients = 5
        config.drain_timeout_seconds = 0.2
        orchestrator = ShutdownOrchestrator(plane, config)

        start = time.monotonic()
        result = await orchestrator.begin_shutdown()
        elapsed = time.monotonic() - start

        assert result.drained is False
        assert result.drain_polls > 1
        assert elapsed < 0.2 + 0.5
        assert result.success is True
        assert plane.phase == ShutdownPhase.STOPPED

    @pytest.mark.asyncio
    async def test_overall_deadline_bounds_drain(self, plane, fake_admin, config):
        fake_admin.clients = 5
        config.drain_timeout_seconds = 30.0
        config.shutdown_timeout_seconds = 0.2
        orchestrator = ShutdownOrchestrator(plane, config)

        start = time.monotonic()
        await orchestrator.begin_shutdown()

        assert time.monotonic() - start < 0.2 + 0.5

    @pytest.mark.asyncio
    async def test_zero_drain_timeout_skips_polling(self, plane, fake_admin, config):
        config.drain_timeout_seconds = 0.0
        orchestrator = ShutdownOrchestrator(plane, config)

        result = await orchestrator.begin_shutdown()

        assert result.drain_polls == 0
        assert commands.CONNECTED_CLIENTS not in fake_admin.statements

    @pytest.mark.asyncio
    async def test_clients_leave(self, plane, fake_admin, config):
        """Polling stops as soon as the count reaches zero."""
        counts = iter([3, 1, 0])
        original = fake_admin.query_scalar

        def query(statement):
            if statement == commands.CONNECTED_CLIENTS:
                fake_admin.clients = next(counts)
            return original(statement)

        fake_admin.query_scalar = query
        orchestrator = ShutdownOrchestrator(plane, config)

        result = await orchestrator.begin_shutdown()

        assert result.drained is True
        assert result.drain_polls == 3


class TestStepFailures:
    """A failing step is recorded and the rest still run."""

    @pytest.mark.asyncio
    async def test_pause_and_shutdown_failures(self, plane, fake_admin, config):
        fake_admin.fail_on.update({commands.PAUSE, commands.SHUTDOWN_SLOW})
        orchestrator = ShutdownOrchestrator(plane, config)

        result = await orchestrator.begin_shutdown()

        assert result.success is False
        assert len(result.errors) == 2
        assert result.first_error.startswith("pause ProxySQL")
        assert "PROXYSQL PAUSE" in result.first_error
        assert fake_admin.closed is True
        assert plane.phase == ShutdownPhase.STOPPED

    @pytest.mark.asyncio
    async def test_drain_file_failure(self, plane, fake_admin, config, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        config.draining_file = blocker / "draining"
        orchestrator = ShutdownOrchestrator(plane, config)

        result = await orchestrator.begin_shutdown()

        assert result.first_error.startswith("create drain file")
        assert fake_admin.paused is True
        assert fake_admin.shut_down is True

    @pytest.mark.asyncio
    async def test_client_query_failure_keeps_polling(self, plane, fake_admin, config):
        fake_admin.fail_on.add(commands.CONNECTED_CLIENTS)
        config.drain_timeout_seconds = 0.1
        orchestrator = ShutdownOrchestrator(plane, config)

        result = await orchestrator.begin_shutdown()

        assert result.drained is False
        assert result.success is True
        assert fake_admin.shut_down is True

    @pytest.mark.asyncio
    async def test_already_disconnected(self, plane, fake_admin, config):
        plane.invalidate()
        config.drain_timeout_seconds = 0.05
        orchestrator = ShutdownOrchestrator(plane, config)

        result = await orchestrator.begin_shutdown()

        assert plane.phase == ShutdownPhase.STOPPED
        assert result.first_error.startswith("pause ProxySQL")
        assert result.proxy_stopped is False


# =============================================================================
# Test transport handling
# =============================================================================


class TestTransport:
    """Tests for step 4."""

    @pytest.mark.asyncio
    async def test_transport_stopped(self, plane, config):
        transport = AsyncMock()
        orchestrator = ShutdownOrchestrator(plane, config)
        orchestrator.register_transport(transport)

        result = await orchestrator.begin_shutdown()

        transport.stop.assert_awaited_once()
        assert result.transport_stopped is True

    @pytest.mark.asyncio
    async def test_transport_timeout(self, plane, config):
        """A hung transport is bounded by its own timeout."""
        class HungTransport:
            async def stop(self):
                await asyncio.sleep(10)

        config.transport_timeout_seconds = 0.05
        orchestrator = ShutdownOrchestrator(plane, config, transport=HungTransport())

        result = await orchestrator.begin_shutdown()

        assert result.first_error == "stop HTTP server: timed out"
        assert plane.phase == ShutdownPhase.STOPPED

    @pytest.mark.asyncio
    async def test_transport_error(self, plane, config):
        transport = AsyncMock()
        transport.stop.side_effect = RuntimeError("boom")
        orchestrator = ShutdownOrchestrator(plane, config, transport=transport)

        result = await orchestrator.begin_shutdown()

        assert result.first_error == "stop HTTP server: boom"

    @pytest.mark.asyncio
    async def test_request_stop_does_not_wait_for_transport(self, plane, fake_admin, config):
        """A request served by the transport returns once the proxy stopped."""
        release = asyncio.Event()

        class BlockingTransport:
            async def stop(self):
                await release.wait()

        orchestrator = ShutdownOrchestrator(plane, config, transport=BlockingTransport())

        result = await asyncio.wait_for(orchestrator.request_stop(), timeout=2.0)

        assert result.proxy_stopped is True
        assert result.transport_stopped is False
        assert fake_admin.shut_down is True

        release.set()
        final = await orchestrator.wait_stopped()
        assert final.transport_stopped is True


# =============================================================================
# Test triggers
# =============================================================================


class TestTriggers:
    """Tests for trigger() and wait_stopped()."""

    @pytest.mark.asyncio
    async def test_trigger_from_callback(self, plane, fake_admin, config):
        orchestrator = ShutdownOrchestrator(plane, config)

        task = orchestrator.trigger("SIGTERM")
        result = await orchestrator.wait_stopped()

        assert result.trigger == "SIGTERM"
        assert (await task) is result

    @pytest.mark.asyncio
    async def test_is_shutting_down(self, plane, config):
        orchestrator = ShutdownOrchestrator(plane, config)
        assert orchestrator.is_shutting_down() is False
        await orchestrator.begin_shutdown()
        assert orchestrator.is_shutting_down() is True
        assert orchestrator.phase == ShutdownPhase.STOPPED
