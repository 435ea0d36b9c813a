"""
KV audit gateway - Main entry point.

This module starts the gateway with all components:
- Primary store client
- Audit store on a write connection (opened at start, kept open)
- Dual-path reader with its own fallback connection (opened on demand)
- HTTP server

Usage:
    python -m dbaas.kvaudit_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The audit schema exists before the HTTP server accepts requests
    - Without AUDIT_DB_NAME the gateway is a pass-through to the primary store
    - Graceful shutdown closes the HTTP server before the stores

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .audit import AuditConnection, AuditStore, VersionAllocator
from .config import ServerConfig
from .gateway import DualPathReader, KVWriter
from .primary import PrimaryStore, create_primary_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        # Structured fields passed through extra= become JSON keys
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Server:
    """Gateway orchestrator.

    Manages the lifecycle of all components.

    Attributes:
        config: Server configuration
        primary: Primary store client
        write_connection: Audit connection used by the writer
        fallback_connection: Audit connection owned by the reader
        reader: Dual-path read coordinator
        writer: Write gateway

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in setup())
        self.primary: PrimaryStore | None = None
        self.write_connection: AuditConnection | None = None
        self.fallback_connection: AuditConnection | None = None
        self.reader: DualPathReader | None = None
        self.writer: KVWriter | None = None
        self.app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    async def setup(self) -> web.Application:
        """Build every component and the HTTP application without serving it."""
        self.primary = create_primary_store(self.config)

        audit_writer: AuditStore | None = None
        audit_reader: AuditStore | None = None
        if self.config.audit_db.enabled:
            allocator = VersionAllocator()

            self.write_connection = AuditConnection(self.config.audit_db, name="writer")
            self.write_connection.open()
            audit_writer = AuditStore(self.write_connection, allocator)
            await audit_writer.initialize()

            self.fallback_connection = AuditConnection(self.config.audit_db, name="fallback")
            audit_reader = AuditStore(self.fallback_connection, allocator)
            logger.info(f"Auditing enabled, database {self.config.audit_db.dsn()}")
        else:
            logger.info("Auditing disabled, AUDIT_DB_NAME is not set")

        self.reader = DualPathReader(self.primary, audit_reader, self.fallback_connection)
        self.writer = KVWriter(
            self.primary,
            audit_writer,
            audited_ops=self.config.audit_policy.operations,
        )
        self.app = create_http_app(
            self.reader,
            self.writer,
            self.config.http,
            datacenter=self.config.datacenter,
        )
        return self.app

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting KV audit gateway")
        self.config.log_config()

        try:
            app = await self.setup()

            self._runner = web.AppRunner(app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.config.http.host, self.config.http.port)
            await site.start()

            self._running = True
            logger.info(
                f"HTTP server running on http://{self.config.http.host}:{self.config.http.port}"
            )

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping KV audit gateway")
        await self._cleanup()
        self._running = False
        logger.info("KV audit gateway stopped")

    async def _cleanup(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        if self.reader:
            await self.reader.close()

        if self.write_connection and self.write_connection.is_open:
            self.write_connection.close()

        if self.primary:
            await self.primary.close()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
