"""
Pytest configuration for ProxySQL agent tests.

Provides an in-memory stand-in for the ProxySQL admin interface that
interprets the agent's statement catalogue, plus fixtures wiring it into a
ControlPlane.
"""

import re
from collections.abc import Callable, Iterable

import pytest

from proxysql_agent.core.config import get_settings
from proxysql_agent.core.errors import AdminConnectionError, CommandError
from proxysql_agent.core.types import Member, MemberPhase, MemberRole, TopologyRow
from proxysql_agent.proxysql import commands
from proxysql_agent.proxysql.state import ControlPlane

INSERT_RE = re.compile(
    r"INSERT OR REPLACE INTO proxysql_servers VALUES \('([^']*)', (\d+), (\d+), '([^']*)'\)$"
)
DELETE_HOST_RE = re.compile(r"DELETE FROM proxysql_servers WHERE hostname = '([^']*)'$")
COUNT_HOST_RE = re.compile(r"SELECT count\(\*\) FROM proxysql_servers WHERE hostname = '([^']*)'$")

PLACEHOLDER_ROW = TopologyRow(hostname=commands.PLACEHOLDER_HOSTNAME, port=6032, weight=0, comment="core")


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow (deselect with '-m \"not slow\"')"
    )


class FakeAdmin:
    """
    In-memory ProxySQL admin interface.

    Keeps `proxysql_servers` as a dict keyed by (hostname, port) and records
    every statement it receives, in order.
    """

    def __init__(
        self,
        servers: Iterable[TopologyRow] = (PLACEHOLDER_ROW,),
        backends: Iterable[str] = ("ONLINE", "ONLINE", "ONLINE"),
        clients: int | None = 0,
    ):
        self.config_servers = {(row.hostname, row.port): row for row in servers}
        self.servers = dict(self.config_servers)
        self.backends = list(backends)
        self.clients = clients
        self.missing_primaries = 0

        self.statements: list[str] = []
        self.runtime_loads: list[str] = []
        self.fail_on: set[str] = set()
        self.ping_error: str | None = None
        self.before_execute: Callable[[str], None] | None = None

        self.paused = False
        self.shut_down = False
        self.closed = False

    @property
    def rows(self) -> set[TopologyRow]:
        return set(self.servers.values())

    @property
    def primary_rows(self) -> set[TopologyRow]:
        return {row for row in self.rows if row.hostname != commands.PLACEHOLDER_HOSTNAME}

    @property
    def has_placeholder(self) -> bool:
        return any(row.hostname == commands.PLACEHOLDER_HOSTNAME for row in self.rows)

    def _check(self, statement: str) -> None:
        self.statements.append(statement)
        if self.closed:
            raise CommandError(statement, RuntimeError("connection closed"))
        if statement in self.fail_on:
            raise CommandError(statement, RuntimeError("simulated failure"))

    def execute(self, statement: str) -> None:
        if self.before_execute is not None:
            self.before_execute(statement)
        self._check(statement)

        if m := INSERT_RE.match(statement):
            row = TopologyRow(hostname=m[1], port=int(m[2]), weight=int(m[3]), comment=m[4])
            self.servers[(row.hostname, row.port)] = row
        elif m := DELETE_HOST_RE.match(statement):
            self.servers = {k: v for k, v in self.servers.items() if v.hostname != m[1]}
        elif statement == commands.CLEAR_CLUSTER_SERVERS:
            self.servers = {}
        elif statement == "LOAD PROXYSQL SERVERS FROM CONFIG":
            self.servers = dict(self.config_servers)
        elif statement in commands.LOAD_TO_RUNTIME:
            self.runtime_loads.append(statement)
        elif statement == commands.PAUSE:
            self.paused = True
        elif statement == commands.SHUTDOWN_SLOW:
            self.shut_down = True
        else:
            raise CommandError(statement, ValueError("unsupported statement"))

    def query_scalar(self, statement: str) -> int | None:
        self._check(statement)

        if m := COUNT_HOST_RE.match(statement):
            return sum(1 for row in self.rows if row.hostname == m[1])
        if statement == commands.COUNT_BACKENDS:
            return len(self.backends)
        if statement == commands.COUNT_ONLINE_BACKENDS:
            return self.backends.count("ONLINE")
        if statement == commands.COUNT_SHUNNED_BACKENDS:
            return self.backends.count("SHUNNED")
        if statement == commands.CONNECTED_CLIENTS:
            return self.clients
        if statement.startswith("SELECT COUNT(hostname) FROM stats_proxysql_servers_metrics"):
            return self.missing_primaries
        raise CommandError(statement, ValueError("unsupported query"))

    def ping(self) -> None:
        if self.ping_error:
            raise AdminConnectionError(self.ping_error)

    def close(self) -> None:
        self.closed = True


def make_member(
    name: str,
    address: str,
    phase: MemberPhase = MemberPhase.RUNNING,
    role: MemberRole = MemberRole.PRIMARY,
) -> Member:
    return Member(name=name, address=address, role=role, phase=phase, uid=f"uid-{name}")


@pytest.fixture(autouse=True)
def clear_settings_cache(monkeypatch, tmp_path):
    """Isolate tests from the host environment and from each other."""
    monkeypatch.delenv("AGENT_CONFIG_FILE", raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_admin() -> FakeAdmin:
    return FakeAdmin()


@pytest.fixture
def plane(fake_admin) -> ControlPlane:
    return ControlPlane(fake_admin)


@pytest.fixture
def member_factory() -> Callable[..., Member]:
    return make_member
