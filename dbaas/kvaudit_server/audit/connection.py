"""
Connection handle for the audit database.

An AuditConnection owns one DB-API connection and its open/closed state.
The state is a field on the handle rather than a module global, so a
process can hold several independent handles: the write path keeps one open
for the lifetime of the server, the read coordinator opens and closes its
own as the primary store goes down and comes back.

Invariants:
    - A fresh handle is closed
    - open() on an open handle is a caller bug and raises
    - close() always drops the handle, even when the driver fails

How to change safely:
    - Keep connect factories free of side effects beyond opening the file
    - Never log the raw DSN; use AuditDbConfig.dsn() which redacts secrets
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

from ..config import AuditDbConfig
from ..errors import AuditConnectionError

logger = logging.getLogger(__name__)

ConnectFactory = Callable[[AuditDbConfig], sqlite3.Connection]


def sqlite_connect(config: AuditDbConfig) -> sqlite3.Connection:
    """Open the SQLite file backing the audit trail.

    Args:
        config: Audit database configuration

    Returns:
        Connection in autocommit mode with row access by column name
    """
    db_path = config.db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        timeout=config.busy_timeout_ms / 1000.0,
        isolation_level=None,  # Autocommit by default, explicit transactions
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {config.busy_timeout_ms}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


class AuditConnection:
    """Open/closed handle on the audit database.

    Example:
        >>> handle = AuditConnection(AuditDbConfig(database="kv", data_dir="/tmp"))
        >>> if not handle.is_open:
        ...     handle.open()
        >>> handle.connection.execute("SELECT 1")
        >>> handle.close()
    """

    def __init__(
        self,
        config: AuditDbConfig,
        connect: ConnectFactory = sqlite_connect,
        name: str = "audit",
    ) -> None:
        """Initialize a closed handle.

        Args:
            config: Connection parameters
            connect: Factory producing a DB-API connection
            name: Label used in log lines
        """
        self.config = config
        self.name = name
        self._connect = connect
        self._conn: sqlite3.Connection | None = None

    @property
    def is_open(self) -> bool:
        """Whether a live connection is held."""
        return self._conn is not None

    @property
    def connection(self) -> sqlite3.Connection:
        """The live connection.

        Raises:
            AuditConnectionError: If the handle is closed
        """
        if self._conn is None:
            raise AuditConnectionError(
                f"Audit connection '{self.name}' is not open", dsn=self.config.dsn()
            )
        return self._conn

    def open(self) -> None:
        """Open the connection.

        Raises:
            AuditConnectionError: If already open or the driver fails
        """
        if self._conn is not None:
            raise AuditConnectionError(
                f"Audit connection '{self.name}' is already open", dsn=self.config.dsn()
            )

        logger.debug(f"Opening audit connection '{self.name}' to {self.config.dsn()}")
        try:
            self._conn = self._connect(self.config)
        except (sqlite3.Error, OSError) as e:
            raise AuditConnectionError(
                f"Cannot open audit connection '{self.name}': {e}", dsn=self.config.dsn()
            ) from e

    def close(self) -> None:
        """Close the connection.

        Raises:
            AuditConnectionError: If the driver fails to close
        """
        conn, self._conn = self._conn, None
        if conn is None:
            return

        logger.debug(f"Closing audit connection '{self.name}'")
        try:
            conn.close()
        except sqlite3.Error as e:
            raise AuditConnectionError(
                f"Cannot close audit connection '{self.name}': {e}", dsn=self.config.dsn()
            ) from e
