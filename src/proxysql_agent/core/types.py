"""
Core data types for the ProxySQL agent.

Members are read-only observations from the orchestration platform; topology
rows mirror the proxy's `proxysql_servers` table; probe results are computed on
every request and never stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# Enums

class MemberRole(str, Enum):
    """Role of a proxy process in the cluster."""
    PRIMARY = "primary-role"
    SECONDARY = "secondary-role"


class MemberPhase(str, Enum):
    """Lifecycle phase as reported by the orchestration platform."""
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str | None) -> MemberPhase:
        for phase in cls:
            if phase.value.lower() == (value or "").lower():
                return phase
        return cls.UNKNOWN


class ProbeStatus(str, Enum):
    """Derived health classification."""
    OK = "ok"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DRAINING = "draining"


# Models

class Member(BaseModel):
    """One process instance of the proxy cluster."""

    model_config = ConfigDict(frozen=True)

    name: str
    address: str = ""
    role: MemberRole = MemberRole.SECONDARY
    phase: MemberPhase = MemberPhase.UNKNOWN
    uid: str = ""

    @property
    def is_primary(self) -> bool:
        return self.role == MemberRole.PRIMARY

    def topology_row(self, port: int) -> TopologyRow:
        """The cluster server row registering this member."""
        return TopologyRow(hostname=self.address, port=port, comment=self.name)


class TopologyRow(BaseModel):
    """One record of the proxy's cluster server table."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    port: int
    weight: int = 0
    comment: str = ""


class BackendCounts(BaseModel):
    """Backend server totals from the runtime server table."""

    total: int = 0
    online: int = 0
    shunned: int = 0


class ProbeResult(BaseModel):
    """Point-in-time health summary."""

    backends: BackendCounts = Field(default_factory=BackendCounts)
    clients: int = 0
    draining: bool = False
    status: ProbeStatus = ProbeStatus.OK
    message: str = ""
    probe: str = ""


# Membership events

@dataclass(frozen=True)
class MemberObserved:
    """A member became known to the feed (initial sync or creation)."""
    member: Member


@dataclass(frozen=True)
class MemberTransitioned:
    """A known member changed state."""
    old: Member
    new: Member


MembershipEvent = MemberObserved | MemberTransitioned
