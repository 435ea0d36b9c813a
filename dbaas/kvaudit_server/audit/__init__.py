"""
Audit subsystem for the KV audit gateway.

This module contains:
- AuditStore: versioned history table with soft deletes
- VersionAllocator: next version per (key, datacenter), serialized writers
- AuditConnection: open/closed handle on the audit database

Invariants:
    - Versions per (key, datacenter) are gapless from 1 and never reused
    - Deletes never remove rows
    - A store never opens or closes the handle it runs on

How to change safely:
    - Keep the table readable by the degraded read path at all times
    - Test version numbering under concurrent writers
"""

from .connection import AuditConnection, sqlite_connect
from .store import AuditRecord, AuditStore, escape_like
from .versions import VersionAllocator, coerce_version

__all__ = [
    "AuditConnection",
    "AuditRecord",
    "AuditStore",
    "VersionAllocator",
    "coerce_version",
    "escape_like",
    "sqlite_connect",
]
