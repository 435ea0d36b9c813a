"""
Versioned audit trail of key-value mutations.

The audit store keeps one row per historical state of a key in a relational
table. It serves two purposes: a forensic record of every accepted write, and
the data source of the degraded read path when the primary store cannot be
reached.

Invariants:
    - Sets insert a new row with the next version of (key, datacenter)
    - Deletes flip the deleted flag of existing rows in place; they never
      insert rows and never consume a version
    - Versions of a (key, datacenter) pair are 1, 2, 3, ... with no gaps
    - The current value is the max-version row, and only if it is not deleted
    - Rows are never physically removed

How to change safely:
    - Keep deletes as in-place flag flips; version numbering depends on it
    - Keep every value parameterized; prefix patterns go through escape_like()
    - Schema changes must keep the column names, other tools read this table

Table schema:
    kv:
        - timestamp INTEGER (Unix ms)
        - createIndex, modifyIndex, lockIndex INTEGER
        - flags INTEGER
        - session TEXT
        - kvkey TEXT
        - kvvalue BLOB
        - regex TEXT
        - version INTEGER
        - datacenter TEXT
        - acl TEXT (token of the writer)
        - deleted INTEGER (0/1)
        - UNIQUE (kvkey, datacenter, version)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass

from ..errors import PersistenceError, QueryError, VersionConflictError
from ..primary.base import DirEntry
from .connection import AuditConnection
from .versions import VersionAllocator

logger = logging.getLogger(__name__)

LIKE_ESCAPE = "\\"


def escape_like(prefix: str) -> str:
    """Escape LIKE wildcards so prefix matches literally."""
    return (
        prefix.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


@dataclass
class AuditRecord:
    """One historical state of a key.

    Attributes:
        key: Key path
        value: Value bytes
        datacenter: Datacenter the write was made in
        version: Version within (key, datacenter); 0 until allocated
        deleted: Soft-delete flag
        timestamp: Time of the write (Unix ms)
        create_index: Create index of the originating entry
        modify_index: Modify index of the originating entry
        lock_index: Lock index of the originating entry
        session: Session of the originating entry
        flags: Client flags of the originating entry
        acl: Token the write was made with
        regex: Validation pattern stored with the value
    """

    key: str
    value: bytes
    datacenter: str
    version: int = 0
    deleted: bool = False
    timestamp: int = 0
    create_index: int = 0
    modify_index: int = 0
    lock_index: int = 0
    session: str = ""
    flags: int = 0
    acl: str = ""
    regex: str = ""

    @classmethod
    def from_entry(cls, entry: DirEntry, datacenter: str, acl: str = "") -> AuditRecord:
        """Build a record from the entry of a write request."""
        return cls(
            key=entry.key,
            value=entry.value,
            datacenter=datacenter,
            create_index=entry.create_index,
            modify_index=entry.modify_index,
            lock_index=entry.lock_index,
            session=entry.session,
            flags=entry.flags,
            acl=acl,
            regex=entry.regex,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> AuditRecord:
        value = row["kvvalue"]
        if value is None:
            value = b""
        elif isinstance(value, str):
            value = value.encode("utf-8")
        return cls(
            key=row["kvkey"],
            value=bytes(value),
            datacenter=row["datacenter"],
            version=row["version"],
            deleted=bool(row["deleted"]),
            timestamp=row["timestamp"],
            create_index=row["createIndex"],
            modify_index=row["modifyIndex"],
            lock_index=row["lockIndex"],
            session=row["session"] or "",
            flags=row["flags"],
            acl=row["acl"] or "",
            regex=row["regex"] or "",
        )

    def to_entry(self) -> DirEntry:
        """Shape the record like an entry returned by the primary store."""
        return DirEntry(
            key=self.key,
            value=self.value,
            flags=self.flags,
            session=self.session,
            lock_index=self.lock_index,
            create_index=self.create_index,
            modify_index=self.modify_index,
            regex=self.regex,
        )

    def to_dict(self) -> dict:
        data = self.to_entry().to_dict()
        data.update(
            {
                "Version": self.version,
                "Datacenter": self.datacenter,
                "Deleted": self.deleted,
                "Timestamp": self.timestamp,
            }
        )
        return data


class AuditStore:
    """Append-on-write, read-current access to the audit table.

    Every operation runs on the connection held by the handle passed in; the
    store never opens or closes it.

    Thread safety:
        Writes to the same (key, datacenter) are serialized through the
        version allocator's scope lock. Operations are synchronous SQLite
        calls made from coroutines on a single event loop.

    Example:
        >>> store = AuditStore(handle)
        >>> await store.initialize()
        >>> version = await store.append_set(AuditRecord("app/a", b"1", "dc1"))
        >>> record = await store.read_current("app/a", "dc1")
    """

    def __init__(
        self,
        handle: AuditConnection,
        allocator: VersionAllocator | None = None,
    ) -> None:
        """Initialize the audit store.

        Args:
            handle: Connection handle to run statements on
            allocator: Version allocator (shared between stores writing the
                same database so their scopes serialize each other)
        """
        self.handle = handle
        self.allocator = allocator or VersionAllocator()

    async def initialize(self) -> None:
        """Create the table and indexes if they don't exist."""
        try:
            self.handle.connection.executescript("""
                CREATE TABLE IF NOT EXISTS kv (
                    timestamp INTEGER NOT NULL,
                    createIndex INTEGER NOT NULL DEFAULT 0,
                    flags INTEGER NOT NULL DEFAULT 0,
                    kvkey TEXT NOT NULL,
                    lockIndex INTEGER NOT NULL DEFAULT 0,
                    modifyIndex INTEGER NOT NULL DEFAULT 0,
                    session TEXT NOT NULL DEFAULT '',
                    kvvalue BLOB,
                    regex TEXT NOT NULL DEFAULT '',
                    version INTEGER NOT NULL,
                    datacenter TEXT NOT NULL,
                    acl TEXT NOT NULL DEFAULT '',
                    deleted INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (kvkey, datacenter, version)
                );

                CREATE INDEX IF NOT EXISTS idx_kv_current
                    ON kv(kvkey, datacenter, deleted);
            """)
        except sqlite3.Error as e:
            raise QueryError(f"Cannot create audit schema: {e}") from e
        logger.info("Initialized audit schema")

    async def append_set(self, record: AuditRecord) -> int:
        """Record a set as a new row with the next version.

        Args:
            record: State to record; its version and deleted fields are ignored

        Returns:
            The version assigned to the row

        Raises:
            VersionConflictError: If the version was taken concurrently
            PersistenceError: If the insert did not create exactly one row
            QueryError: If a statement fails
        """
        timestamp = record.timestamp or int(time.time() * 1000)

        async with self.allocator.allocation_scope(record.key, record.datacenter):
            conn = self.handle.connection
            version = self.allocator.next_version(conn, record.key, record.datacenter)

            try:
                cursor = conn.execute(
                    """
                    INSERT INTO kv (timestamp, createIndex, flags, kvkey, lockIndex,
                                    modifyIndex, session, kvvalue, regex, version,
                                    datacenter, acl, deleted)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        timestamp,
                        record.create_index,
                        record.flags,
                        record.key,
                        record.lock_index,
                        record.modify_index,
                        record.session,
                        record.value,
                        record.regex,
                        version,
                        record.datacenter,
                        record.acl,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise VersionConflictError(record.key, record.datacenter, version) from e
            except sqlite3.Error as e:
                raise QueryError(f"Cannot record '{record.key}': {e}", key=record.key) from e

            # Exactly one row must be created, anything else is a storage anomaly
            if cursor.rowcount != 1:
                raise PersistenceError(
                    f"Affected rows should be 1 but is {cursor.rowcount}",
                    key=record.key,
                    affected=cursor.rowcount,
                )

        record.version = version
        record.timestamp = timestamp
        record.deleted = False
        logger.debug(
            "Recorded KV change",
            extra={"key": record.key, "datacenter": record.datacenter, "version": version},
        )
        return version

    async def append_delete(self, key: str, datacenter: str) -> int:
        """Soft-delete every live row of exactly this key.

        Returns:
            Number of rows flipped to deleted
        """
        try:
            cursor = self.handle.connection.execute(
                "UPDATE kv SET deleted = 1 WHERE kvkey = ? AND datacenter = ? AND deleted = 0",
                (key, datacenter),
            )
        except sqlite3.Error as e:
            raise QueryError(f"Cannot delete '{key}': {e}", key=key) from e

        if cursor.rowcount < 1:
            logger.warning(f"Audit delete found no entry for key {key} in {datacenter}")
        return max(cursor.rowcount, 0)

    async def append_delete_tree(self, prefix: str, datacenter: str) -> int:
        """Soft-delete every live row whose key starts with prefix.

        The prefix is matched literally; an empty prefix matches every key.

        Returns:
            Number of rows flipped to deleted
        """
        pattern = escape_like(prefix) + "%"
        try:
            # LIKE is case-insensitive in SQLite, the substr check keeps the
            # match exact
            cursor = self.handle.connection.execute(
                """
                UPDATE kv SET deleted = 1
                WHERE kvkey LIKE ? ESCAPE '\\'
                  AND substr(kvkey, 1, ?) = ?
                  AND datacenter = ?
                  AND deleted = 0
                """,
                (pattern, len(prefix), prefix, datacenter),
            )
        except sqlite3.Error as e:
            raise QueryError(f"Cannot delete tree '{prefix}': {e}", key=prefix) from e

        if cursor.rowcount < 1:
            logger.warning(f"Audit delete-tree found no entry for prefix {prefix} in {datacenter}")
        return max(cursor.rowcount, 0)

    async def read_current(self, key: str, datacenter: str) -> AuditRecord | None:
        """Get the current value of a key.

        Returns:
            The max-version row if it is not deleted, otherwise None
        """
        try:
            row = self.handle.connection.execute(
                """
                SELECT * FROM kv
                WHERE kvkey = ? AND datacenter = ? AND deleted = 0
                  AND version = (
                      SELECT MAX(version) FROM kv WHERE kvkey = ? AND datacenter = ?
                  )
                ORDER BY timestamp DESC, rowid DESC
                LIMIT 1
                """,
                (key, datacenter, key, datacenter),
            ).fetchone()
        except sqlite3.Error as e:
            raise QueryError(f"Cannot read '{key}': {e}", key=key) from e

        if row is None:
            return None
        return AuditRecord.from_row(row)

    async def history(self, key: str, datacenter: str) -> list[AuditRecord]:
        """Get every row of a key in version order, deleted ones included."""
        try:
            rows = self.handle.connection.execute(
                """
                SELECT * FROM kv
                WHERE kvkey = ? AND datacenter = ?
                ORDER BY version ASC, rowid ASC
                """,
                (key, datacenter),
            ).fetchall()
        except sqlite3.Error as e:
            raise QueryError(f"Cannot read history of '{key}': {e}", key=key) from e

        return [AuditRecord.from_row(row) for row in rows]
