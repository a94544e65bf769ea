"""Startup, readiness and liveness probes."""

from proxysql_agent.health.probes import ProbeAggregator, ProbeOutcome, classify

__all__ = ["ProbeAggregator", "ProbeOutcome", "classify"]
