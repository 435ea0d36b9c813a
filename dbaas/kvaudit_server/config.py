"""
Configuration management for the KV audit gateway.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Leaving AUDIT_DB_NAME unset disables the audit subsystem entirely
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import quote, urlencode

from .primary.base import KVOp

logger = logging.getLogger(__name__)

# Largest accepted PUT body. Anything bigger is likely abuse of the KV store.
DEFAULT_MAX_KV_SIZE = 512 * 1024

DEFAULT_AUDIT_OPERATIONS = frozenset({KVOp.SET, KVOp.DELETE, KVOp.DELETE_TREE})


class PrimaryBackend(Enum):
    """Supported primary store clients."""

    MEMORY = "memory"
    RPC = "rpc"


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        max_kv_size: Maximum PUT body size in bytes
    """

    host: str = "0.0.0.0"
    port: int = 8500
    max_kv_size: int = DEFAULT_MAX_KV_SIZE

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8500")),
            max_kv_size=int(os.getenv("MAX_KV_SIZE", str(DEFAULT_MAX_KV_SIZE))),
        )


@dataclass(frozen=True)
class AuditDbConfig:
    """Audit database connection parameters.

    The audit trail lives in a SQLite file named after the database under
    data_dir. Host, port, credentials and server instance identify the
    logical server the trail belongs to and are rendered into the DSN used in
    log lines.

    Attributes:
        host: Database host
        port: Database port
        username: Login name
        password: Login password (never logged)
        server: Named server instance
        database: Database name; empty disables auditing
        data_dir: Directory holding the database file
        busy_timeout_ms: SQLite busy timeout
        connect_timeout_seconds: Connection timeout advertised in the DSN
    """

    host: str = "localhost"
    port: int = 1433
    username: str = ""
    password: str = ""
    server: str = ""
    database: str = ""
    data_dir: str = "/var/lib/kvaudit"
    busy_timeout_ms: int = 5000
    connect_timeout_seconds: int = 30

    @property
    def enabled(self) -> bool:
        """Auditing is on only when a database name is configured."""
        return bool(self.database)

    @property
    def db_path(self) -> Path:
        """Path of the SQLite file backing the audit trail."""
        safe_name = "".join(c for c in self.database if c.isalnum() or c in "-_")
        return Path(self.data_dir) / f"{safe_name}.db"

    def dsn(self, redact: bool = True) -> str:
        """Render the connection parameters as a URL.

        Args:
            redact: Replace the password with asterisks

        Returns:
            DSN string such as
            ``sqlserver://audit:***@db:1433/AUDIT?connection+timeout=30&database=kv``
        """
        password = "***" if redact and self.password else self.password
        userinfo = ""
        if self.username:
            userinfo = quote(self.username, safe="")
            if password:
                userinfo += ":" + quote(password, safe="*")
            userinfo += "@"
        query = urlencode(
            {"connection timeout": self.connect_timeout_seconds, "database": self.database}
        )
        path = f"/{self.server}" if self.server else ""
        return f"sqlserver://{userinfo}{self.host}:{self.port}{path}?{query}"

    @classmethod
    def from_env(cls) -> AuditDbConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("AUDIT_DB_HOST", "localhost"),
            port=int(os.getenv("AUDIT_DB_PORT", "1433")),
            username=os.getenv("AUDIT_DB_USERNAME", ""),
            password=os.getenv("AUDIT_DB_PASSWORD", ""),
            server=os.getenv("AUDIT_DB_SERVER", ""),
            database=os.getenv("AUDIT_DB_NAME", ""),
            data_dir=os.getenv("AUDIT_DATA_DIR", "/var/lib/kvaudit"),
            busy_timeout_ms=int(os.getenv("AUDIT_BUSY_TIMEOUT_MS", "5000")),
            connect_timeout_seconds=int(os.getenv("AUDIT_CONNECT_TIMEOUT", "30")),
        )


def parse_operations(raw: str) -> frozenset[KVOp]:
    """Parse a comma-separated list of KV operation names.

    Raises:
        ValueError: If a name is not a known operation
    """
    ops = set()
    for name in raw.split(","):
        name = name.strip().lower()
        if not name:
            continue
        try:
            ops.add(KVOp(name))
        except ValueError:
            valid = ", ".join(op.value for op in KVOp)
            raise ValueError(f"Invalid audit operation '{name}'. Must be one of: {valid}")
    return frozenset(ops)


@dataclass(frozen=True)
class AuditPolicyConfig:
    """Which write operations produce audit rows.

    Attributes:
        operations: Audited operation kinds. Conditional kinds (cas, lock,
            unlock, delete-cas) are only audited when the primary store
            accepted them.
    """

    operations: frozenset[KVOp] = DEFAULT_AUDIT_OPERATIONS

    @classmethod
    def from_env(cls) -> AuditPolicyConfig:
        """Load configuration from environment variables."""
        raw = os.getenv("AUDIT_OPERATIONS")
        if raw is None:
            return cls()
        return cls(operations=parse_operations(raw))


@dataclass(frozen=True)
class PrimaryConfig:
    """Primary store client configuration.

    Attributes:
        backend: Which client to use
        rpc_address: Base URL of the agent RPC endpoint
        timeout_seconds: Per-call timeout
    """

    backend: PrimaryBackend = PrimaryBackend.RPC
    rpc_address: str = "http://127.0.0.1:8300"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> PrimaryConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("PRIMARY_BACKEND", "rpc").lower()
        try:
            backend = PrimaryBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid PRIMARY_BACKEND '{backend_str}'. Must be one of: memory, rpc")
        return cls(
            backend=backend,
            rpc_address=os.getenv("PRIMARY_RPC_ADDRESS", "http://127.0.0.1:8300"),
            timeout_seconds=float(os.getenv("PRIMARY_RPC_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        datacenter: Datacenter used when a request names none
        http: HTTP server configuration
        audit_db: Audit database configuration
        audit_policy: Audited operations
        primary: Primary store client configuration
        observability: Logging configuration
    """

    datacenter: str = "dc1"
    http: HttpConfig = field(default_factory=HttpConfig)
    audit_db: AuditDbConfig = field(default_factory=AuditDbConfig)
    audit_policy: AuditPolicyConfig = field(default_factory=AuditPolicyConfig)
    primary: PrimaryConfig = field(default_factory=PrimaryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            datacenter=os.getenv("DATACENTER", "dc1"),
            http=HttpConfig.from_env(),
            audit_db=AuditDbConfig.from_env(),
            audit_policy=AuditPolicyConfig.from_env(),
            primary=PrimaryConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.datacenter:
            raise ValueError("DATACENTER must not be empty")

        if self.http.max_kv_size <= 0:
            raise ValueError("MAX_KV_SIZE must be positive")

        if self.primary.backend == PrimaryBackend.RPC and not self.primary.rpc_address:
            raise ValueError("PRIMARY_RPC_ADDRESS is required when PRIMARY_BACKEND=rpc")

        if self.audit_db.enabled and not os.path.exists(self.audit_db.data_dir):
            logger.warning(
                f"Audit data directory does not exist: {self.audit_db.data_dir}. "
                "It will be created on first open."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "datacenter": self.datacenter,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "primary_backend": self.primary.backend.value,
                "primary_rpc_address": self.primary.rpc_address
                if self.primary.backend == PrimaryBackend.RPC
                else None,
                "audit_enabled": self.audit_db.enabled,
                "audit_dsn": self.audit_db.dsn() if self.audit_db.enabled else None,
                "audit_operations": sorted(op.value for op in self.audit_policy.operations),
                "log_level": self.observability.log_level,
            },
        )
