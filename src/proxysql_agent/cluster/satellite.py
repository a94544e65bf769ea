"""
Secondary-role (satellite) resync.

Satellites only accept topology pushed by the primaries. If any primary has
stopped answering cluster health checks, the satellite reloads its cluster
server list from the static config so it can find the primaries again.
"""

import asyncio
import logging

from proxysql_agent.core.errors import AgentError
from proxysql_agent.proxysql import commands
from proxysql_agent.proxysql.state import ControlPlane

logger = logging.getLogger(__name__)


class SatelliteResync:
    """Periodic coarse recovery for secondary-role members."""

    def __init__(self, plane: ControlPlane, interval: float, heartbeat_threshold_ms: int = 30000):
        self._plane = plane
        self.interval = interval
        self.heartbeat_threshold_ms = heartbeat_threshold_ms

    async def missing_primaries(self) -> int | None:
        """Count primaries without a recent heartbeat; None if skipped for shutdown."""
        return await self._plane.aquery_scalar(commands.count_missing_primaries(self.heartbeat_threshold_ms))

    async def resync(self) -> bool:
        """
        Run one resync check.

        Returns True if the resync statements were issued.

        Raises:
            CommandError: if a query or statement fails
        """
        if self._plane.is_shutting_down():
            logger.debug("skipping satellite resync: shutting down")
            return False

        missing = await self.missing_primaries()
        if not missing:
            return False

        logger.info("Resyncing pod to cluster", extra={"extra_fields": {"missing_cores": missing}})
        for statement in commands.SATELLITE_RESYNC:
            if not await self._plane.aexecute(statement):
                return False
        return True

    async def run(self) -> None:
        """Resync every `interval` seconds until cancelled."""
        logger.info(f"Satellite mode initialized, looping every {self.interval}s")
        while True:
            await asyncio.sleep(self.interval)
            if self._plane.is_shutting_down():
                continue
            try:
                await self.resync()
            except AgentError as e:
                logger.error(f"Satellite resync failed: {e}")
