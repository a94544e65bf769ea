"""
Health probes for the ProxySQL agent.

Three flavors for the orchestration platform:

- startup:   admin interface answers a ping
- readiness: full classification; only `ok` is ready
- liveness:  full classification; `ok` and `draining` are alive, so the
             process is never killed mid-drain

Classification (first match wins):

    online == total     -> ok         "all backends online"
    online == 0         -> unhealthy  "all backends offline"
    draining marker     -> draining   "draining traffic"
    otherwise           -> ok         "some backends offline"
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from proxysql_agent.core.errors import AgentError, ProbeError
from proxysql_agent.core.types import BackendCounts, ProbeResult, ProbeStatus
from proxysql_agent.proxysql import commands
from proxysql_agent.proxysql.state import ControlPlane

logger = logging.getLogger(__name__)


def classify(result: ProbeResult) -> ProbeResult:
    """Set status and message on `result` from its counts and draining flag."""
    backends = result.backends

    if backends.online == backends.total:
        status, message = ProbeStatus.OK, "all backends online"
    elif backends.online == 0:
        status, message = ProbeStatus.UNHEALTHY, "all backends offline"
    elif result.draining:
        status, message = ProbeStatus.DRAINING, "draining traffic"
    else:
        # Partial backend loss is deliberately not unhealthy.
        status, message = ProbeStatus.OK, "some backends offline"

    return result.model_copy(update={"status": status, "message": message})


@dataclass
class ProbeOutcome:
    """A probe result plus whether the probe passed."""
    passed: bool
    result: ProbeResult


class ProbeAggregator:
    """
    Computes point-in-time health from the admin tables and the shutdown phase.

    Never mutates the connection or the phase.
    """

    def __init__(self, plane: ControlPlane, draining_file: Path):
        self._plane = plane
        self.draining_file = Path(draining_file)

    def is_shutting_down(self) -> bool:
        return self._plane.is_shutting_down()

    def draining(self) -> bool:
        """True if the draining marker exists."""
        try:
            return self.draining_file.exists()
        except OSError:
            return False

    async def ping(self) -> None:
        """
        Raises:
            ProbeError: if the admin interface does not answer
        """
        try:
            await self._plane.aping()
        except AgentError as e:
            raise ProbeError(str(e)) from e

    async def _count(self, query: str, what: str) -> int:
        try:
            value = await self._plane.aquery_scalar(query)
        except AgentError as e:
            raise ProbeError(f"failed to query {what}: {e}") from e
        return value or 0

    async def backends(self) -> BackendCounts:
        # Zeroes once shutdown began; the connection may be mid-close.
        if self._plane.is_shutting_down():
            return BackendCounts()
        return BackendCounts(
            total=await self._count(commands.COUNT_BACKENDS, "total backends"),
            online=await self._count(commands.COUNT_ONLINE_BACKENDS, "online backends"),
            shunned=await self._count(commands.COUNT_SHUNNED_BACKENDS, "shunned backends"),
        )

    async def clients(self) -> int:
        if self._plane.is_shutting_down():
            return 0
        return await self._count(commands.CONNECTED_CLIENTS, "connection pool stats")

    async def run_probes(self) -> ProbeResult:
        """
        Query and classify.

        Raises:
            ProbeError: if health could not be determined
        """
        result = ProbeResult(
            backends=await self.backends(),
            clients=await self.clients(),
            draining=self.draining(),
        )
        return classify(result)

    # ------------------------------------------------------------------
    # Probe flavors
    # ------------------------------------------------------------------

    def _shutting_down_result(self, probe: str) -> ProbeResult:
        return ProbeResult(
            draining=True,
            status=ProbeStatus.DRAINING,
            message="shutting down",
            probe=probe,
        )

    async def startup(self) -> ProbeOutcome:
        """Ping only; core members must come up even with backends missing."""
        await self.ping()
        return ProbeOutcome(True, ProbeResult(message="ok", probe="startup"))

    async def readiness(self) -> ProbeOutcome:
        if self.is_shutting_down():
            return ProbeOutcome(False, self._shutting_down_result("readiness"))

        result = (await self.run_probes()).model_copy(update={"probe": "readiness"})
        return ProbeOutcome(result.status == ProbeStatus.OK, result)

    async def liveness(self) -> ProbeOutcome:
        if self.is_shutting_down():
            return ProbeOutcome(True, self._shutting_down_result("liveness"))

        result = (await self.run_probes()).model_copy(update={"probe": "liveness"})
        return ProbeOutcome(result.status in (ProbeStatus.OK, ProbeStatus.DRAINING), result)
