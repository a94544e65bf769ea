"""
Blocking client for the ProxySQL admin interface.

The admin module speaks the MySQL protocol but is backed by SQLite, so
statements are sent fully rendered: mysql-connector parameter processing
queries @@session.sql_mode, which the admin module does not support.

Not thread-safe; `ControlPlane` serializes access.
"""

import logging
from typing import Any, Protocol

import mysql.connector
from mysql.connector import Error as MySQLError

from proxysql_agent.core.config import ProxySQLConfig
from proxysql_agent.core.errors import AdminConnectionError, CommandError

logger = logging.getLogger(__name__)


class CommandExecutor(Protocol):
    """Request/response executor over one long-lived admin connection."""

    def execute(self, statement: str) -> None: ...

    def query_scalar(self, statement: str) -> int | None: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


class AdminConnection:
    """mysql-connector backed `CommandExecutor`."""

    def __init__(self, connection: Any, address: str):
        self._conn = connection
        self.address = address

    @classmethod
    def connect(cls, config: ProxySQLConfig) -> "AdminConnection":
        """
        Open and verify a connection to the admin interface.

        Raises:
            AdminConnectionError: if the connection or the initial ping fails
        """
        host, _, port = config.address.rpartition(":")
        try:
            conn = mysql.connector.connect(
                host=host,
                port=int(port),
                user=config.username,
                password=config.password.get_secret_value(),
                connection_timeout=int(config.connect_timeout),
                use_pure=True,
                autocommit=True,
                ssl_disabled=True,
            )
        except (MySQLError, ValueError) as e:
            raise AdminConnectionError(f"failed to connect to ProxySQL admin at {config.address}: {e}") from e

        admin = cls(conn, config.address)
        try:
            admin.ping()
        except AdminConnectionError:
            admin.close()
            raise

        logger.info("Connected to ProxySQL admin", extra={"extra_fields": {"host": config.address}})
        return admin

    def execute(self, statement: str) -> None:
        cursor = None
        try:
            cursor = self._conn.cursor()
            cursor.execute(statement)
            if cursor.with_rows:
                cursor.fetchall()
        except MySQLError as e:
            raise CommandError(statement, e) from e
        finally:
            if cursor is not None:
                cursor.close()

    def query_scalar(self, statement: str) -> int | None:
        """Return the first column of the first row as an int, or None for no row/NULL."""
        cursor = None
        try:
            cursor = self._conn.cursor()
            cursor.execute(statement)
            row = cursor.fetchone()
            # Drain anything left so the connection stays usable.
            cursor.fetchall()
        except MySQLError as e:
            raise CommandError(statement, e) from e
        finally:
            if cursor is not None:
                cursor.close()

        if row is None or row[0] is None:
            return None
        # The admin module may hand back integers as strings.
        return int(row[0])

    def ping(self) -> None:
        try:
            self._conn.ping(reconnect=False)
        except MySQLError as e:
            raise AdminConnectionError(f"failed to ping ProxySQL: {e}") from e

    def close(self) -> None:
        try:
            self._conn.close()
        except MySQLError as e:
            raise AdminConnectionError(f"failed to close ProxySQL connection: {e}") from e
