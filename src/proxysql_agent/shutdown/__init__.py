"""Graceful drain-and-stop sequence."""

from proxysql_agent.shutdown.orchestrator import (
    RunOnce,
    ShutdownConfig,
    ShutdownOrchestrator,
    ShutdownResult,
    TransportHandle,
)

__all__ = [
    "RunOnce",
    "ShutdownConfig",
    "ShutdownOrchestrator",
    "ShutdownResult",
    "TransportHandle",
]
