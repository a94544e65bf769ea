"""
Tests for Agent composition.
"""

import asyncio
import os
import signal
from unittest.mock import patch

import pytest

from conftest import FakeAdmin
from proxysql_agent.agent import Agent
from proxysql_agent.cluster.feed import KubeConfig, MembershipFeed
from proxysql_agent.core.config import Settings
from proxysql_agent.core.errors import AdminConnectionError
from proxysql_agent.proxysql.state import ShutdownPhase


def satellite_settings(tmp_path, **overrides) -> Settings:
    return Settings(
        run_mode="satellite",
        satellite={"interval": 3600},
        shutdown={
            "draining_file": tmp_path / "draining",
            "drain_timeout": 1.0,
            "shutdown_timeout": 5.0,
            "drain_poll_interval": 0.01,
        },
        **overrides,
    )


async def wait_for_tasks(agent: Agent) -> None:
    for _ in range(200):
        if agent.orchestrator is not None and agent._tasks:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("agent did not start")


class TestAgentRun:
    """Tests for Agent.run."""

    @pytest.mark.asyncio
    async def test_no_run_mode(self):
        connects = []
        agent = Agent(Settings(), connect=lambda config: connects.append(config), serve_http=False)

        assert await agent.run() is None
        assert connects == []

    @pytest.mark.asyncio
    async def test_satellite_shutdown(self, tmp_path):
        admin = FakeAdmin()
        agent = Agent(satellite_settings(tmp_path), connect=lambda config: admin, serve_http=False)

        run = asyncio.create_task(agent.run())
        await wait_for_tasks(agent)
        mode_task = agent._tasks[0]

        await agent.orchestrator.begin_shutdown("test")
        result = await asyncio.wait_for(run, timeout=5)

        assert result.success
        assert result.trigger == "test"
        assert result.drained
        assert agent.plane.phase == ShutdownPhase.STOPPED
        assert admin.paused and admin.shut_down and admin.closed
        assert (tmp_path / "draining").exists()
        assert mode_task.cancelled()
        assert agent._tasks == []

    @pytest.mark.asyncio
    async def test_cancel_runs_shutdown(self, tmp_path):
        admin = FakeAdmin()
        agent = Agent(satellite_settings(tmp_path), connect=lambda config: admin, serve_http=False)

        run = asyncio.create_task(agent.run())
        await wait_for_tasks(agent)
        run.cancel()

        with pytest.raises(asyncio.CancelledError):
            await run
        assert admin.shut_down
        assert agent.plane.phase == ShutdownPhase.STOPPED

    @pytest.mark.asyncio
    async def test_connect_failure(self, tmp_path):
        def refuse(config):
            raise AdminConnectionError("connection refused")

        agent = Agent(satellite_settings(tmp_path), connect=refuse, serve_http=False)

        with pytest.raises(AdminConnectionError):
            await agent.run()
        assert agent.plane is None

    @pytest.mark.asyncio
    async def test_connect_receives_proxysql_settings(self, tmp_path):
        seen = []
        admin = FakeAdmin()

        def connect(config):
            seen.append(config)
            return admin

        settings = satellite_settings(tmp_path, proxysql={"address": "127.0.0.1:6033"})
        agent = Agent(settings, connect=connect, serve_http=False)
        run = asyncio.create_task(agent.run())
        await wait_for_tasks(agent)
        await agent.orchestrator.begin_shutdown("test")
        await asyncio.wait_for(run, timeout=5)

        assert seen[0].address == "127.0.0.1:6033"


class TestSignalsDuringStartup:
    """SIGTERM while starting up still runs the shutdown sequence."""

    @pytest.mark.asyncio
    async def test_sigterm_during_slow_sync(self, tmp_path):
        admin = FakeAdmin()
        settings = Settings(
            run_mode="core",
            shutdown={
                "draining_file": tmp_path / "draining",
                "drain_timeout": 1.0,
                "shutdown_timeout": 5.0,
                "drain_poll_interval": 0.01,
            },
        )
        agent = Agent(
            settings,
            connect=lambda config: admin,
            kube=KubeConfig(api_server="https://kubernetes.test"),
            serve_http=False,
        )

        syncing = asyncio.Event()
        sync_cancelled = asyncio.Event()

        async def slow_sync(self, timeout):
            syncing.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                sync_cancelled.set()
                raise

        with patch.object(MembershipFeed, "sync", slow_sync):
            run = asyncio.create_task(agent.run())
            await asyncio.wait_for(syncing.wait(), timeout=5)

            os.kill(os.getpid(), signal.SIGTERM)
            result = await asyncio.wait_for(run, timeout=5)

        assert result.trigger == "SIGTERM"
        assert result.success
        assert sync_cancelled.is_set()
        assert admin.paused and admin.shut_down and admin.closed
        assert (tmp_path / "draining").exists()
        assert agent.plane.phase == ShutdownPhase.STOPPED
        assert agent._tasks == []

    @pytest.mark.asyncio
    async def test_sigterm_during_start_delay(self, tmp_path):
        admin = FakeAdmin()
        agent = Agent(
            satellite_settings(tmp_path, start_delay=3600),
            connect=lambda config: admin,
            serve_http=False,
        )

        run = asyncio.create_task(agent.run())
        for _ in range(200):
            if agent._loop is not None:
                break
            await asyncio.sleep(0.01)

        os.kill(os.getpid(), signal.SIGTERM)
        result = await asyncio.wait_for(run, timeout=5)

        assert result.trigger == "SIGTERM"
        assert admin.shut_down and admin.closed
        assert agent.plane.phase == ShutdownPhase.STOPPED

    @pytest.mark.asyncio
    async def test_handlers_removed_after_run(self, tmp_path):
        admin = FakeAdmin()
        agent = Agent(satellite_settings(tmp_path), connect=lambda config: admin, serve_http=False)

        run = asyncio.create_task(agent.run())
        await wait_for_tasks(agent)
        agent._handle_signal(signal.SIGINT)
        result = await asyncio.wait_for(run, timeout=5)

        assert result.trigger == "SIGINT"
        assert asyncio.get_running_loop().remove_signal_handler(signal.SIGTERM) is False
