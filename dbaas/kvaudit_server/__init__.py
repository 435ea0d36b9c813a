"""
KV Audit Gateway - audited writes and degraded reads for a distributed key-value store.

This package sits in front of a consensus-backed key-value store and adds:
- A versioned audit trail of every mutation, with soft deletes
- A degraded read path that answers single-key reads from the audit trail
  while no primary store server is reachable

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌─────────────────┐
    │   Client    │────▶│ HTTP gateway │────▶│  Primary store  │
    │             │     │   /v1/kv     │     │ (KVS.Get/Apply) │
    └─────────────┘     └──────┬───────┘     └─────────────────┘
                               │                      ▲
                 ┌─────────────┴──────────┐           │
                 ▼                        ▼           │
          ┌─────────────┐         ┌──────────────┐    │
          │  KVWriter   │         │DualPathReader│────┘
          └──────┬──────┘         └──────┬───────┘
                 │ append                │ fallback (NoServersError)
                 ▼                       ▼
          ┌────────────────────────────────────────┐
          │          Audit store (kv table)        │
          └────────────────────────────────────────┘

Invariants:
    - The primary store is the source of truth; the audit trail is a history
    - Versions per (key, datacenter) start at 1 and never repeat
    - Only NoServersError switches reads to the audit trail
    - Fallback reads return at most one entry

How to change safely:
    - Keep the audit table append-only (deletes are flag flips)
    - Test failover and failback together; they share one state machine
"""

__version__ = "0.1.0"

from .audit import AuditConnection, AuditRecord, AuditStore, VersionAllocator
from .config import ServerConfig
from .errors import (
    AuditConnectionError,
    AuditError,
    KvAuditError,
    PayloadTooLargeError,
    PersistenceError,
    QueryError,
    ValidationError,
    VersionConflictError,
)
from .gateway import DualPathReader, KVWriter, MutationIntent, ReadPathState

__all__ = [
    # Config
    "ServerConfig",
    # Audit
    "AuditConnection",
    "AuditRecord",
    "AuditStore",
    "VersionAllocator",
    # Gateway
    "DualPathReader",
    "KVWriter",
    "MutationIntent",
    "ReadPathState",
    # Errors
    "KvAuditError",
    "AuditError",
    "AuditConnectionError",
    "QueryError",
    "PersistenceError",
    "VersionConflictError",
    "ValidationError",
    "PayloadTooLargeError",
]
