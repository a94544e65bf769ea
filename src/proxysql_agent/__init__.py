"""
ProxySQL Agent - sidecar for ProxySQL clusters on Kubernetes.

Keeps the ProxySQL cluster server table in step with pod membership, serves
startup/readiness/liveness probes, and drains and stops ProxySQL gracefully
when the pod is terminated.

Quick Start:
    from proxysql_agent import Agent, load_settings

    agent = Agent(load_settings(run_mode="core"))
    result = asyncio.run(agent.run())
"""

__version__ = "1.0.0"

from proxysql_agent.core.config import Settings, get_settings, load_settings
from proxysql_agent.core.errors import AgentError
from proxysql_agent.core.types import Member, MemberPhase, MemberRole, ProbeStatus


def __getattr__(name: str):
    # Agent pulls in the HTTP and driver stack; import it on first use.
    if name == "Agent":
        from proxysql_agent.agent import Agent
        return Agent
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    "Agent",
    "AgentError",
    "Member",
    "MemberPhase",
    "MemberRole",
    "ProbeStatus",
    "Settings",
    "get_settings",
    "load_settings",
]
