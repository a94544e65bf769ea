"""
Checksum-watermark reconciliation for primary-role members.

The polling alternative to the event feed: list all primaries, digest the
set, and rewrite the cluster server table only when the digest differs from
the one stored after the last successful rewrite. When nothing changed the
servers are still loaded to runtime so that newly joined peers are accepted.
"""

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path

from proxysql_agent.core.errors import AgentError
from proxysql_agent.core.types import Member
from proxysql_agent.proxysql import commands
from proxysql_agent.proxysql.state import ControlPlane

logger = logging.getLogger(__name__)


def membership_digest(members: Iterable[Member]) -> str:
    """Order-independent digest of a membership set."""
    entries = sorted(f"{m.address}:{m.name}:{m.uid}" for m in members)
    return hashlib.sha256("\n".join(entries).encode()).hexdigest()


class Watermark:
    """Digest of the last applied membership set, persisted to a file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> str:
        try:
            return self.path.read_text().strip()
        except FileNotFoundError:
            return ""

    def write(self, digest: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(digest)
        tmp.chmod(0o600)
        tmp.replace(self.path)


class WatermarkPoller:
    """
    Poll-based primary reconciliation.

    Usage:
        poller = WatermarkPoller(plane, feed.list_members, Watermark(path), port=6032, interval=10)
        await poller.run()
    """

    def __init__(
        self,
        plane: ControlPlane,
        list_members: Callable[[], Awaitable[list[Member]]],
        watermark: Watermark,
        port: int,
        interval: float,
    ):
        self._plane = plane
        self._list_members = list_members
        self.watermark = watermark
        self.port = port
        self.interval = interval

    async def poll(self) -> list[str]:
        """
        Run one poll cycle.

        Returns the statements that were issued.

        Raises:
            FeedError: if the member list could not be fetched
            CommandError: on the first failing statement
        """
        members = [m for m in await self._list_members() if m.address]
        if not members:
            logger.error("No pods returned")
            return []

        digest = membership_digest(members)
        if digest == self.watermark.read():
            batch = [commands.LOAD_CLUSTER_SERVERS]
        else:
            batch = commands.full_resync(members, self.port)

        issued = []
        for statement in batch:
            if not await self._plane.aexecute(statement):
                return issued
            issued.append(statement)

        if len(batch) > 1:
            logger.info("Commands ran: " + "; ".join(batch))
            try:
                self.watermark.write(digest)
            except OSError as e:
                logger.error(f"Failed to write watermark file {self.watermark.path}: {e}")
        return issued

    async def run(self) -> None:
        logger.info(f"Core mode initialized, polling every {self.interval}s")
        while True:
            if not self._plane.is_shutting_down():
                try:
                    await self.poll()
                except AgentError as e:
                    logger.error(f"Core poll failed: {e}")
            await asyncio.sleep(self.interval)
