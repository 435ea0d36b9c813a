"""
Version allocation for audited keys.

Versions are numbered independently per (key, datacenter), starting at 1.
The allocator reads max(version) over every row of the pair, deleted or not,
so a soft delete never frees a version for reuse.

Allocation and the insert that consumes the version must run inside
allocation_scope() for the same pair; otherwise two writers can read the same
maximum and collide on the unique version constraint.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from ..errors import QueryError

logger = logging.getLogger(__name__)


def coerce_version(value: Any) -> int:
    """Interpret a MAX(version) result; NULL and junk count as zero."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass
class _ScopeLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class VersionAllocator:
    """Computes the next version of a key and serializes its writers."""

    def __init__(self) -> None:
        self._scopes: dict[tuple[str, str], _ScopeLock] = {}

    def next_version(self, conn: sqlite3.Connection, key: str, datacenter: str) -> int:
        """Return max(version) + 1 for the pair, or 1 if it has no rows.

        Raises:
            QueryError: If the query fails
        """
        try:
            row = conn.execute(
                "SELECT MAX(version) FROM kv WHERE kvkey = ? AND datacenter = ?",
                (key, datacenter),
            ).fetchone()
        except sqlite3.Error as e:
            raise QueryError(f"Cannot read latest version of '{key}': {e}", key=key) from e

        current = coerce_version(row[0] if row is not None else None)
        return current + 1

    @asynccontextmanager
    async def allocation_scope(self, key: str, datacenter: str) -> AsyncIterator[None]:
        """Hold the per-(key, datacenter) lock across allocation and insert."""
        scope = (key, datacenter)
        entry = self._scopes.get(scope)
        if entry is None:
            entry = self._scopes[scope] = _ScopeLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._scopes[scope]

    @property
    def active_scopes(self) -> int:
        """Number of pairs currently locked or waited on."""
        return len(self._scopes)
