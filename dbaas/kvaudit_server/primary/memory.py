"""
In-memory primary store implementation for testing.

This module provides a simple in-memory primary store for:
- Unit tests of the read coordinator and the write gateway
- Integration tests of the HTTP gateway
- Local development without a running cluster

Invariants:
    - All data is lost on process exit
    - A single monotonically increasing index stands in for the raft index
    - Conditional operations follow the same rules as the real store
    - While marked unreachable, every call raises NoServersError

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with PrimaryStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import replace

from .base import (
    ApplyRequest,
    DirEntry,
    IndexedEntries,
    IndexedKeys,
    KVOp,
    NoServersError,
    PrimaryStoreError,
    QueryMeta,
)

logger = logging.getLogger(__name__)

NO_SERVERS_MESSAGE = "No known servers"


class InMemoryPrimaryStore:
    """In-memory implementation of PrimaryStore for testing.

    Entries are partitioned by datacenter. Reads and writes go through an
    asyncio lock so concurrent coroutines observe a consistent index.

    Attributes:
        calls: Names of the RPC methods invoked, in order (testing helper)

    Example:
        >>> store = InMemoryPrimaryStore()
        >>> await store.apply(ApplyRequest(KVOp.SET, DirEntry("a", b"1"), "dc1"))
        >>> store.set_reachable(False)
        >>> await store.get("a", "dc1")  # raises NoServersError
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, DirEntry]] = defaultdict(dict)
        self._index = 0
        self._reachable = True
        self._next_error: PrimaryStoreError | None = None
        self._lock = asyncio.Lock()
        self.calls: list[str] = []

    async def get(self, key: str, datacenter: str, token: str = "") -> IndexedEntries:
        """KVS.Get for one key."""
        self._enter("KVS.Get")
        async with self._lock:
            entry = self._entries[datacenter].get(key)
            entries = [replace(entry)] if entry else []
            return IndexedEntries(entries=entries, meta=self._meta())

    async def list(self, prefix: str, datacenter: str, token: str = "") -> IndexedEntries:
        """KVS.List for every key under prefix."""
        self._enter("KVS.List")
        async with self._lock:
            entries = [
                replace(entry)
                for key, entry in sorted(self._entries[datacenter].items())
                if key.startswith(prefix)
            ]
            return IndexedEntries(entries=entries, meta=self._meta())

    async def list_keys(
        self,
        prefix: str,
        separator: str,
        datacenter: str,
        token: str = "",
    ) -> IndexedKeys:
        """KVS.ListKeys, rolling up keys at the first separator after prefix."""
        self._enter("KVS.ListKeys")
        async with self._lock:
            keys: list[str] = []
            seen: set[str] = set()
            for key in sorted(self._entries[datacenter]):
                if not key.startswith(prefix):
                    continue
                if separator:
                    pos = key.find(separator, len(prefix))
                    if pos >= 0:
                        key = key[: pos + len(separator)]
                if key not in seen:
                    seen.add(key)
                    keys.append(key)
            return IndexedKeys(keys=keys, meta=self._meta())

    async def apply(self, request: ApplyRequest) -> bool:
        """KVS.Apply for every supported operation."""
        self._enter("KVS.Apply")
        async with self._lock:
            table = self._entries[request.datacenter]
            entry = request.entry
            existing = table.get(entry.key)

            if request.op == KVOp.SET:
                self._set(table, entry, existing)
                return True

            if request.op == KVOp.DELETE:
                table.pop(entry.key, None)
                self._index += 1
                return True

            if request.op == KVOp.DELETE_TREE:
                for key in [k for k in table if k.startswith(entry.key)]:
                    del table[key]
                self._index += 1
                return True

            if request.op == KVOp.CAS:
                # Index 0 means "only if the key does not exist yet"
                if entry.modify_index == 0:
                    if existing is not None:
                        return False
                elif existing is None or existing.modify_index != entry.modify_index:
                    return False
                self._set(table, entry, existing)
                return True

            if request.op == KVOp.DELETE_CAS:
                if existing is None or existing.modify_index != entry.modify_index:
                    return False
                del table[entry.key]
                self._index += 1
                return True

            if request.op == KVOp.LOCK:
                if not entry.session:
                    raise PrimaryStoreError("Missing session")
                if existing is not None and existing.session:
                    if existing.session != entry.session:
                        return False
                    # Re-acquire by the holder only updates the value
                    self._set(table, entry, existing)
                    return True
                stored = self._set(table, entry, existing)
                stored.session = entry.session
                stored.lock_index += 1
                return True

            if request.op == KVOp.UNLOCK:
                if existing is None or existing.session != entry.session:
                    return False
                stored = self._set(table, entry, existing)
                stored.session = ""
                return True

            raise PrimaryStoreError(f"Invalid KVS operation '{request.op}'")

    async def close(self) -> None:
        """Close (no-op for in-memory)."""
        logger.debug("InMemoryPrimaryStore closed")

    def _set(
        self,
        table: dict[str, DirEntry],
        entry: DirEntry,
        existing: DirEntry | None,
    ) -> DirEntry:
        self._index += 1
        stored = DirEntry(
            key=entry.key,
            value=entry.value,
            flags=entry.flags,
            regex=entry.regex,
            create_index=existing.create_index if existing else self._index,
            modify_index=self._index,
            session=existing.session if existing else "",
            lock_index=existing.lock_index if existing else 0,
        )
        table[entry.key] = stored
        return stored

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if not self._reachable:
            raise NoServersError(NO_SERVERS_MESSAGE)
        if self._next_error is not None:
            error, self._next_error = self._next_error, None
            raise error

    def _meta(self) -> QueryMeta:
        return QueryMeta(index=self._index, known_leader=True, last_contact_ms=0)

    # Testing helpers

    def set_reachable(self, reachable: bool) -> None:
        """Simulate the loss (or return) of every store node."""
        self._reachable = reachable

    def inject_failure(self, error: PrimaryStoreError) -> None:
        """Make the next call raise this error."""
        self._next_error = error

    def snapshot(self, datacenter: str) -> dict[str, DirEntry]:
        """Copy of every entry in a datacenter."""
        return {key: replace(entry) for key, entry in self._entries[datacenter].items()}
