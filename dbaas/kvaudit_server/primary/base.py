"""
Base protocol and types for the primary key-value store.

The primary store is the consensus-backed, authoritative backend. This
package never implements consensus: it only calls the store through the
PrimaryStore protocol and reacts to its typed failures.

This module defines:
- DirEntry: one key-value entry as exchanged with the store
- QueryMeta: consistency metadata returned with reads
- KVOp / ApplyRequest: write operations sent to KVS.Apply
- PrimaryStoreError and its typed subclasses
- PrimaryStore: the protocol all backends implement

Invariants:
    - Failure kinds are distinguished by exception class, never by message
    - NoServersError is the only error that enables the degraded read path
    - Entry values are bytes; they are base64 encoded on the wire

How to change safely:
    - Protocol changes require updating all implementations
    - New error messages from the store must be added to classify_error()
"""

from __future__ import annotations

import base64
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class PrimaryStoreError(Exception):
    """Base exception for primary store RPC failures."""

    pass


class NoServersError(PrimaryStoreError):
    """No reachable primary store nodes."""

    pass


class NoLeaderError(PrimaryStoreError):
    """The cluster has no leader."""

    pass


class NoPathToDatacenterError(PrimaryStoreError):
    """The requested datacenter is not reachable."""

    pass


class NotReadyForConsistentReadsError(PrimaryStoreError):
    """The server cannot serve consistent reads yet."""

    pass


class RateLimitExceededError(PrimaryStoreError):
    """RPC rate limit exceeded."""

    pass


# Error messages emitted by the primary store, mapped to typed errors.
_ERROR_MESSAGES: dict[str, type[PrimaryStoreError]] = {
    "No known Consul servers": NoServersError,
    "No known servers": NoServersError,
    "No cluster leader": NoLeaderError,
    "No path to datacenter": NoPathToDatacenterError,
    "Not ready to serve consistent reads": NotReadyForConsistentReadsError,
    "RPC rate limit exceeded": RateLimitExceededError,
}


def classify_error(message: str) -> PrimaryStoreError:
    """Turn an error message from the store into a typed exception.

    Unknown messages become a plain PrimaryStoreError.

    Args:
        message: Error text as reported by the store

    Returns:
        Exception instance matching the message
    """
    for known, error_cls in _ERROR_MESSAGES.items():
        if known in message:
            return error_cls(message)
    return PrimaryStoreError(message)


class KVOp(str, Enum):
    """Operations accepted by KVS.Apply."""

    SET = "set"
    DELETE = "delete"
    DELETE_TREE = "delete-tree"
    CAS = "cas"
    LOCK = "lock"
    UNLOCK = "unlock"
    DELETE_CAS = "delete-cas"

    @property
    def is_conditional(self) -> bool:
        """Whether the store may reject the op and report False."""
        return self in (KVOp.CAS, KVOp.LOCK, KVOp.UNLOCK, KVOp.DELETE_CAS)


@dataclass
class DirEntry:
    """A key-value entry.

    Attributes:
        key: Slash-separated key path
        value: Raw value bytes
        flags: Opaque client flags
        session: Session holding the lock on this key, if any
        lock_index: Number of times the lock was acquired
        create_index: Raft index at creation
        modify_index: Raft index at last modification
        regex: Validation pattern stored alongside the value
    """

    key: str
    value: bytes = b""
    flags: int = 0
    session: str = ""
    lock_index: int = 0
    create_index: int = 0
    modify_index: int = 0
    regex: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire/JSON representation."""
        return {
            "Key": self.key,
            "Value": base64.b64encode(self.value).decode("ascii") if self.value else None,
            "Flags": self.flags,
            "Session": self.session,
            "LockIndex": self.lock_index,
            "CreateIndex": self.create_index,
            "ModifyIndex": self.modify_index,
            "Regex": self.regex,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DirEntry:
        """Create from the wire/JSON representation."""
        raw = data.get("Value")
        return cls(
            key=data["Key"],
            value=base64.b64decode(raw) if raw else b"",
            flags=int(data.get("Flags", 0)),
            session=data.get("Session") or "",
            lock_index=int(data.get("LockIndex", 0)),
            create_index=int(data.get("CreateIndex", 0)),
            modify_index=int(data.get("ModifyIndex", 0)),
            regex=data.get("Regex") or "",
        )


@dataclass
class QueryMeta:
    """Consistency metadata attached to read results."""

    index: int = 0
    known_leader: bool = False
    last_contact_ms: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueryMeta:
        return cls(
            index=int(data.get("Index", 0)),
            known_leader=bool(data.get("KnownLeader", False)),
            last_contact_ms=int(data.get("LastContact", 0)),
        )


@dataclass
class IndexedEntries:
    """Result of KVS.Get and KVS.List."""

    entries: list[DirEntry] = field(default_factory=list)
    meta: QueryMeta = field(default_factory=QueryMeta)


@dataclass
class IndexedKeys:
    """Result of KVS.ListKeys."""

    keys: list[str] = field(default_factory=list)
    meta: QueryMeta = field(default_factory=QueryMeta)


@dataclass
class ApplyRequest:
    """A write sent to KVS.Apply.

    Attributes:
        op: Operation kind
        entry: Target entry; modify_index carries the CAS index and
            session the lock session
        datacenter: Target datacenter
        token: ACL token of the caller
    """

    op: KVOp
    entry: DirEntry
    datacenter: str
    token: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "Op": self.op.value,
            "DirEnt": self.entry.to_dict(),
            "Datacenter": self.datacenter,
            "Token": self.token,
        }


@runtime_checkable
class PrimaryStore(Protocol):
    """Protocol for primary store backends.

    Read methods raise NoServersError when no store node can be reached;
    that is the signal the read coordinator fails over on.

    Example:
        >>> store = InMemoryPrimaryStore()
        >>> await store.apply(ApplyRequest(KVOp.SET, DirEntry("a", b"1"), "dc1"))
        True
        >>> result = await store.get("a", "dc1")
    """

    @abstractmethod
    async def get(self, key: str, datacenter: str, token: str = "") -> IndexedEntries:
        """KVS.Get: fetch a single entry."""
        ...

    @abstractmethod
    async def list(self, prefix: str, datacenter: str, token: str = "") -> IndexedEntries:
        """KVS.List: fetch all entries under a prefix."""
        ...

    @abstractmethod
    async def list_keys(
        self,
        prefix: str,
        separator: str,
        datacenter: str,
        token: str = "",
    ) -> IndexedKeys:
        """KVS.ListKeys: list key names under a prefix, rolled up at separator."""
        ...

    @abstractmethod
    async def apply(self, request: ApplyRequest) -> bool:
        """KVS.Apply: perform a write.

        Returns:
            Result of the operation; False when a conditional op was rejected
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...


def create_primary_store(config: "ServerConfig") -> PrimaryStore:
    """Factory function to create the primary store client from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate PrimaryStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import PrimaryBackend
    from .memory import InMemoryPrimaryStore
    from .rpc import RpcPrimaryStore

    if config.primary.backend == PrimaryBackend.MEMORY:
        return InMemoryPrimaryStore()
    elif config.primary.backend == PrimaryBackend.RPC:
        return RpcPrimaryStore(config.primary)
    else:
        raise ValueError(f"Unsupported primary backend: {config.primary.backend}")
