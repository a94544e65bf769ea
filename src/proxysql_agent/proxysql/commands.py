"""
Admin statements issued against ProxySQL.

ProxySQL docs: https://proxysql.com/documentation/proxysql-cluster/
"""

from collections.abc import Iterable

from proxysql_agent.core.types import Member, TopologyRow

# Stands in for "no primary registered yet"; shipped in the static config.
PLACEHOLDER_HOSTNAME = "proxysql-core"

# Later stages depend on state loaded by earlier ones; do not reorder.
LOAD_TO_RUNTIME: tuple[str, ...] = (
    "LOAD PROXYSQL SERVERS TO RUNTIME",
    "LOAD ADMIN VARIABLES TO RUNTIME",
    "LOAD MYSQL VARIABLES TO RUNTIME",
    "LOAD MYSQL SERVERS TO RUNTIME",
    "LOAD MYSQL USERS TO RUNTIME",
    "LOAD MYSQL QUERY RULES TO RUNTIME",
)

LOAD_CLUSTER_SERVERS = LOAD_TO_RUNTIME[0]
CLEAR_CLUSTER_SERVERS = "DELETE FROM proxysql_servers"

SATELLITE_RESYNC: tuple[str, ...] = (
    CLEAR_CLUSTER_SERVERS,
    "LOAD PROXYSQL SERVERS FROM CONFIG",
    LOAD_CLUSTER_SERVERS,
)

PAUSE = "PROXYSQL PAUSE"
SHUTDOWN_SLOW = "PROXYSQL SHUTDOWN SLOW"

COUNT_BACKENDS = "SELECT COUNT(*) FROM runtime_mysql_servers"
COUNT_ONLINE_BACKENDS = "SELECT COUNT(*) FROM runtime_mysql_servers WHERE status = 'ONLINE'"
COUNT_SHUNNED_BACKENDS = "SELECT COUNT(*) FROM runtime_mysql_servers WHERE status = 'SHUNNED'"
CONNECTED_CLIENTS = (
    "SELECT Client_Connections_connected FROM mysql_connections "
    "ORDER BY timestamp DESC LIMIT 1"
)


def quote(value: str) -> str:
    """Render a SQL string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def delete_placeholder() -> str:
    return f"DELETE FROM proxysql_servers WHERE hostname = {quote(PLACEHOLDER_HOSTNAME)}"


def insert_server(row: TopologyRow) -> str:
    return (
        "INSERT OR REPLACE INTO proxysql_servers VALUES "
        f"({quote(row.hostname)}, {int(row.port)}, {int(row.weight)}, {quote(row.comment)})"
    )


def delete_server(address: str) -> str:
    return f"DELETE FROM proxysql_servers WHERE hostname = {quote(address)}"


def count_server(address: str) -> str:
    return f"SELECT count(*) FROM proxysql_servers WHERE hostname = {quote(address)}"


def count_missing_primaries(threshold_ms: int) -> str:
    """Primaries that have not answered a cluster health check within the threshold."""
    return (
        "SELECT COUNT(hostname) FROM stats_proxysql_servers_metrics "
        f"WHERE last_check_ms > {int(threshold_ms)} "
        f"AND hostname != {quote(PLACEHOLDER_HOSTNAME)} "
        "AND Uptime_s > 0"
    )


def full_resync(members: Iterable[Member], port: int) -> list[str]:
    """Replace the whole cluster server table with `members`, ordered by address."""
    commands = [CLEAR_CLUSTER_SERVERS]
    for member in sorted(members, key=lambda m: m.address):
        commands.append(insert_server(member.topology_row(port)))
    commands.extend(LOAD_TO_RUNTIME)
    return commands
