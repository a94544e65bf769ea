"""Probe and prestop HTTP server."""

from proxysql_agent.api.server import UvicornTransport, create_app

__all__ = ["UvicornTransport", "create_app"]
