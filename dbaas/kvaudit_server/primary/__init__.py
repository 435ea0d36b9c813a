"""
Primary store abstraction for the KV audit gateway.

This module provides a pluggable client interface for the consensus-backed
key-value store supporting:
- Remote agents over HTTP/JSON RPC (production)
- In-memory (for testing)

Invariants:
    - The primary store is the source of truth for key-value state
    - Unreachability is reported as NoServersError, never as a string
    - Conditional writes report rejection as False, not as an error

How to change safely:
    - New backends must implement PrimaryStore protocol
    - Keep typed errors in sync with the messages the store emits
"""

from .base import (
    ApplyRequest,
    DirEntry,
    IndexedEntries,
    IndexedKeys,
    KVOp,
    NoLeaderError,
    NoPathToDatacenterError,
    NoServersError,
    NotReadyForConsistentReadsError,
    PrimaryStore,
    PrimaryStoreError,
    QueryMeta,
    RateLimitExceededError,
    classify_error,
    create_primary_store,
)
from .memory import InMemoryPrimaryStore
from .rpc import RpcPrimaryStore

__all__ = [
    # Protocol and types
    "PrimaryStore",
    "DirEntry",
    "QueryMeta",
    "IndexedEntries",
    "IndexedKeys",
    "KVOp",
    "ApplyRequest",
    # Errors
    "PrimaryStoreError",
    "NoServersError",
    "NoLeaderError",
    "NoPathToDatacenterError",
    "NotReadyForConsistentReadsError",
    "RateLimitExceededError",
    "classify_error",
    # Factory
    "create_primary_store",
    # Implementations
    "InMemoryPrimaryStore",
    "RpcPrimaryStore",
]
