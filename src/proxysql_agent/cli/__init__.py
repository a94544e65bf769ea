"""
ProxySQL Agent CLI.

Usage:
    proxysql-agent run --run-mode core --config /etc/proxysql-agent/config.yaml
    proxysql-agent config
    proxysql-agent version
"""

from proxysql_agent.cli.main import app

__all__ = ["app"]
