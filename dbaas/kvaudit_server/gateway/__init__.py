"""
Read and write paths of the KV audit gateway.

This module contains:
- DualPathReader: primary-first reads with audit-trail fallback
- KVWriter: primary apply followed by audit append
- MutationIntent: normalized description of one write

Invariants:
    - Reads fail over only on NoServersError
    - Writes reach the audit trail whatever the primary store answered
"""

from .reader import DualPathReader, ReadPathState, ReadResult
from .writer import KVWriter, MutationIntent

__all__ = [
    "DualPathReader",
    "KVWriter",
    "MutationIntent",
    "ReadPathState",
    "ReadResult",
]
