"""
Write gateway: primary apply plus audit append.

Every write is sent to the primary store first. Whatever the primary store
answers, qualifying operations are then appended to the audit trail. There
is no two-phase commit between the two stores: an audit failure after a
successful primary write is logged and reported, never compensated.

Audit policy:
    - set, delete, delete-tree are audited by default, whether or not the
      primary call succeeded
    - cas, lock, unlock, delete-cas are audited only when listed in the
      policy, and only when the primary store accepted them; set-like ones
      record a new version, delete-cas records a delete

Invariants:
    - A primary error is raised after the audit attempt, never instead of it
    - An audit error is raised when the primary call itself succeeded
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass

from ..audit.store import AuditRecord, AuditStore
from ..config import DEFAULT_AUDIT_OPERATIONS
from ..errors import AuditError
from ..primary.base import ApplyRequest, DirEntry, KVOp, PrimaryStore, PrimaryStoreError

logger = logging.getLogger(__name__)

_SET_LIKE = frozenset({KVOp.SET, KVOp.CAS, KVOp.LOCK, KVOp.UNLOCK})
_DELETE_LIKE = frozenset({KVOp.DELETE, KVOp.DELETE_CAS})


@dataclass
class MutationIntent:
    """One inbound write.

    Attributes:
        op: Operation kind
        key: Target key (a prefix for delete-tree)
        datacenter: Target datacenter
        value: Value payload
        regex: Validation pattern stored with the value
        flags: Client flags
        cas_index: Expected modify index for cas / delete-cas
        session: Lock session for lock / unlock
        token: ACL token of the caller
    """

    op: KVOp
    key: str
    datacenter: str
    value: bytes = b""
    regex: str = ""
    flags: int = 0
    cas_index: int | None = None
    session: str = ""
    token: str = ""

    def to_apply_request(self) -> ApplyRequest:
        return ApplyRequest(
            op=self.op,
            entry=DirEntry(
                key=self.key,
                value=self.value,
                flags=self.flags,
                session=self.session,
                modify_index=self.cas_index or 0,
                regex=self.regex,
            ),
            datacenter=self.datacenter,
            token=self.token,
        )


class KVWriter:
    """Applies mutation intents to the primary store and the audit trail.

    Example:
        >>> writer = KVWriter(primary, audit_store)
        >>> await writer.apply(MutationIntent(KVOp.SET, "app/a", "dc1", b"1"))
        True
    """

    def __init__(
        self,
        primary: PrimaryStore,
        audit_store: AuditStore | None = None,
        audited_ops: Collection[KVOp] = DEFAULT_AUDIT_OPERATIONS,
    ) -> None:
        """Initialize the writer.

        Args:
            primary: Primary store client
            audit_store: Audit store on an open connection, or None to
                disable auditing
            audited_ops: Operations that produce audit rows
        """
        self.primary = primary
        self.audit_store = audit_store
        self.audited_ops = frozenset(audited_ops)

    async def apply(self, intent: MutationIntent) -> bool:
        """Apply one write.

        Returns:
            The primary result for conditional operations, True otherwise

        Raises:
            PrimaryStoreError: If the primary store failed
            AuditError: If the primary store succeeded but the audit append failed
        """
        request = intent.to_apply_request()

        result = False
        primary_error: PrimaryStoreError | None = None
        try:
            result = await self.primary.apply(request)
        except PrimaryStoreError as e:
            logger.error(f"KVS.Apply {intent.op.value} failed for key {intent.key}: {e}")
            primary_error = e

        audit_error: AuditError | None = None
        try:
            await self._audit(request, accepted=primary_error is None and result)
        except AuditError as e:
            audit_error = e

        if primary_error is not None:
            raise primary_error
        if audit_error is not None:
            raise audit_error

        if intent.op.is_conditional:
            return result
        return True

    async def _audit(self, request: ApplyRequest, accepted: bool) -> None:
        if self.audit_store is None or request.op not in self.audited_ops:
            return
        if request.op.is_conditional and not accepted:
            return

        key = request.entry.key
        try:
            if request.op in _SET_LIKE:
                record = AuditRecord.from_entry(request.entry, request.datacenter, request.token)
                version = await self.audit_store.append_set(record)
                logger.debug(f"Logged KV change for key: {key} (version: {version})")
            elif request.op in _DELETE_LIKE:
                await self.audit_store.append_delete(key, request.datacenter)
                logger.debug(f"Logged delete for key: {key}")
            elif request.op == KVOp.DELETE_TREE:
                await self.audit_store.append_delete_tree(key, request.datacenter)
                logger.debug(f"Logged delete-tree for key: {key}")
        except AuditError as e:
            logger.error(f"Audit {request.op.value} failed (for key {key}): {e}")
            raise
