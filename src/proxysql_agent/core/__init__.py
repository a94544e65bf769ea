"""Core configuration, types and errors."""

from proxysql_agent.core.config import Settings, get_settings, load_settings
from proxysql_agent.core.errors import (
    AdminConnectionError,
    AgentError,
    CacheSyncTimeoutError,
    CommandError,
    ConfigurationError,
    FeedError,
    PhaseTransitionError,
    ProbeError,
)
from proxysql_agent.core.types import (
    BackendCounts,
    Member,
    MemberObserved,
    MemberPhase,
    MemberRole,
    MembershipEvent,
    MemberTransitioned,
    ProbeResult,
    ProbeStatus,
    TopologyRow,
)

__all__ = [
    "AdminConnectionError",
    "AgentError",
    "BackendCounts",
    "CacheSyncTimeoutError",
    "CommandError",
    "ConfigurationError",
    "FeedError",
    "Member",
    "MemberObserved",
    "MemberPhase",
    "MemberRole",
    "MemberTransitioned",
    "MembershipEvent",
    "PhaseTransitionError",
    "ProbeError",
    "ProbeResult",
    "ProbeStatus",
    "Settings",
    "TopologyRow",
    "get_settings",
    "load_settings",
]
