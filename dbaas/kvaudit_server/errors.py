"""
Error types for the KV audit gateway.

This module defines the exceptions raised by the audit store, the fallback
connection handle and the HTTP request parser:
- KvAuditError: Base exception
- AuditError: Anything raised by the audit subsystem
- AuditConnectionError: Audit database cannot be opened or closed
- QueryError: A statement against the audit database failed
- PersistenceError: An insert did not create exactly one row
- VersionConflictError: Two writers allocated the same version
- ValidationError: Malformed HTTP request shape
- PayloadTooLargeError: PUT body exceeds the configured limit

Primary store errors live in primary/base.py.

Invariants:
    - All errors inherit from KvAuditError
    - Errors carry a code for programmatic handling
    - Error messages never contain audit database credentials
"""

from __future__ import annotations

from typing import Any


class KvAuditError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KVAUDIT_ERROR"
        self.details = details or {}


class AuditError(KvAuditError):
    """Base class for audit subsystem failures."""

    pass


class AuditConnectionError(AuditError):
    """Audit database connection could not be opened or closed.

    Fatal to the fallback read path only: the read coordinator logs it and
    answers "not found" instead of failing the request.
    """

    def __init__(self, message: str, dsn: str | None = None) -> None:
        super().__init__(message, code="AUDIT_CONNECTION_ERROR", details={"dsn": dsn})
        self.dsn = dsn


class QueryError(AuditError):
    """A statement against the audit database failed."""

    def __init__(
        self,
        message: str,
        key: str | None = None,
        code: str = "QUERY_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"key": key})
        self.key = key


class PersistenceError(QueryError):
    """An audit insert affected zero or more than one row."""

    def __init__(self, message: str, key: str | None = None, affected: int = 0) -> None:
        super().__init__(message, key=key, code="PERSISTENCE_ERROR")
        self.affected = affected
        self.details["affected"] = affected


class VersionConflictError(QueryError):
    """The (key, datacenter, version) triple already exists.

    Raised when the unique version constraint rejects an insert, which means
    another writer allocated the same version concurrently.
    """

    def __init__(self, key: str, datacenter: str, version: int) -> None:
        super().__init__(
            f"Version {version} already recorded for key '{key}' in {datacenter}",
            key=key,
            code="VERSION_CONFLICT",
        )
        self.datacenter = datacenter
        self.version = version
        self.details.update({"datacenter": datacenter, "version": version})


class ValidationError(KvAuditError):
    """Inbound request is malformed.

    Raised when:
    - The key is missing where one is required
    - Mutually exclusive modifiers are combined
    - A numeric modifier does not parse
    """

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details={"field": field_name})
        self.field_name = field_name


class PayloadTooLargeError(KvAuditError):
    """Request body exceeds the maximum value size."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Value exceeds {limit} byte limit",
            code="PAYLOAD_TOO_LARGE",
            details={"limit": limit},
        )
        self.limit = limit
