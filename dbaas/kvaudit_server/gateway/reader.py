"""
Dual-path read coordinator.

Reads go to the primary store first. When the primary store reports that no
server is reachable, single-key reads are answered from the audit trail
instead, and the coordinator keeps its own audit connection open until a
primary read succeeds again.

State machine:
    PRIMARY_HEALTHY --(NoServersError on get)--> FALLBACK_ACTIVE   (opens connection)
    FALLBACK_ACTIVE --(any primary read succeeds)--> PRIMARY_HEALTHY (closes connection)

Invariants:
    - The coordinator is the only code that opens or closes its fallback handle
    - NoServersError is the only primary error turned into fallback behavior;
      every other error propagates with the state untouched
    - Fallback answers hold at most one entry; listings never fall back
    - A fallback connection that cannot be opened yields "not found", not an error

Staleness:
    Fallback answers reflect the last value this gateway audited. They may
    miss writes accepted by the primary store through other paths, and two
    consecutive fallback reads are independent queries.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from ..audit.connection import AuditConnection
from ..audit.store import AuditStore
from ..errors import AuditConnectionError
from ..primary.base import DirEntry, IndexedKeys, NoServersError, PrimaryStore, QueryMeta

logger = logging.getLogger(__name__)


class ReadPathState(Enum):
    """Which store single-key reads are currently answered from."""

    PRIMARY_HEALTHY = "primary_healthy"
    FALLBACK_ACTIVE = "fallback_active"


@dataclass
class ReadResult:
    """Entries returned by a read.

    Attributes:
        entries: Matching entries; empty means not found
        meta: Query metadata of the answering store
        degraded: True when the answer came from the audit trail
    """

    entries: list[DirEntry] = field(default_factory=list)
    meta: QueryMeta = field(default_factory=QueryMeta)
    degraded: bool = False


class DualPathReader:
    """Routes reads between the primary store and the audit trail.

    Attributes:
        primary: Primary store client
        audit_store: Audit store running on the fallback handle, or None
            when auditing is disabled
        fallback: Connection handle owned by this coordinator

    Example:
        >>> reader = DualPathReader(primary, AuditStore(handle), handle)
        >>> result = await reader.get("service/config", "dc1")
        >>> result.degraded
        False
    """

    def __init__(
        self,
        primary: PrimaryStore,
        audit_store: AuditStore | None = None,
        fallback: AuditConnection | None = None,
    ) -> None:
        if (audit_store is None) != (fallback is None):
            raise ValueError("audit_store and fallback must be given together")
        self.primary = primary
        self.audit_store = audit_store
        self.fallback = fallback
        self._state = ReadPathState.PRIMARY_HEALTHY
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ReadPathState:
        return self._state

    @property
    def fallback_enabled(self) -> bool:
        return self.audit_store is not None

    async def get(self, key: str, datacenter: str, token: str = "") -> ReadResult:
        """Read one key, falling back to the audit trail if no server is reachable.

        Raises:
            PrimaryStoreError: For primary failures other than NoServersError,
                or for NoServersError when auditing is disabled
            QueryError: If the audit query fails during fallback
        """
        try:
            out = await self.primary.get(key, datacenter, token)
        except NoServersError:
            if not self.fallback_enabled:
                raise
            return await self._fallback_get(key, datacenter)

        await self._primary_recovered()
        return ReadResult(entries=out.entries, meta=out.meta)

    async def list(self, prefix: str, datacenter: str, token: str = "") -> ReadResult:
        """Read every entry under prefix. Never served from the audit trail."""
        out = await self.primary.list(prefix, datacenter, token)
        await self._primary_recovered()
        return ReadResult(entries=out.entries, meta=out.meta)

    async def list_keys(
        self,
        prefix: str,
        separator: str,
        datacenter: str,
        token: str = "",
    ) -> IndexedKeys:
        """List key names under prefix. Never served from the audit trail."""
        out = await self.primary.list_keys(prefix, separator, datacenter, token)
        await self._primary_recovered()
        return out

    async def close(self) -> None:
        """Close the fallback connection if this coordinator left it open."""
        async with self._lock:
            if self.fallback is not None and self.fallback.is_open:
                self.fallback.close()
            self._state = ReadPathState.PRIMARY_HEALTHY

    async def _fallback_get(self, key: str, datacenter: str) -> ReadResult:
        logger.info(f"Primary store unreachable, reading key {key} from audit trail for {datacenter}")

        async with self._lock:
            if self._state == ReadPathState.PRIMARY_HEALTHY:
                try:
                    if not self.fallback.is_open:
                        self.fallback.open()
                except AuditConnectionError as e:
                    logger.error(f"Cannot open audit fallback connection: {e}")
                    return ReadResult(degraded=True)
                self._state = ReadPathState.FALLBACK_ACTIVE
                logger.info("Switched reads to audit fallback")

        # The lock only guards the transition; queries run concurrently. A
        # failback closing the handle meanwhile surfaces as a connection error.
        try:
            record = await self.audit_store.read_current(key, datacenter)
        except AuditConnectionError as e:
            logger.error(f"Audit fallback connection unavailable: {e}")
            return ReadResult(degraded=True)

        if record is None:
            return ReadResult(degraded=True)

        return ReadResult(
            entries=[record.to_entry()],
            meta=QueryMeta(index=record.modify_index, known_leader=False),
            degraded=True,
        )

    async def _primary_recovered(self) -> None:
        if self._state != ReadPathState.FALLBACK_ACTIVE:
            return

        async with self._lock:
            if self._state != ReadPathState.FALLBACK_ACTIVE:
                return
            self._state = ReadPathState.PRIMARY_HEALTHY
            logger.info("Primary store reachable again, closing audit fallback connection")
            try:
                self.fallback.close()
            except AuditConnectionError as e:
                logger.error(f"Cannot close audit fallback connection: {e}")
