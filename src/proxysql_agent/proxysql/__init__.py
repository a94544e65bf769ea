"""
ProxySQL admin access.

The admin connection, the statement catalogue, and the control plane that
serializes commands against the shutdown phase.
"""

from proxysql_agent.proxysql.admin import AdminConnection, CommandExecutor
from proxysql_agent.proxysql.state import ControlPlane, RWLock, ShutdownPhase

__all__ = [
    "AdminConnection",
    "CommandExecutor",
    "ControlPlane",
    "RWLock",
    "ShutdownPhase",
]
