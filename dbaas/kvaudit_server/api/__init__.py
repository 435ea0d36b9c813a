"""
API module for the KV audit gateway.

This module provides the external interface: the HTTP key-value API.

Invariants:
    - Request shape is validated before any store is touched
    - Reads go through the dual-path reader, writes through the writer

How to change safely:
    - Keep the /v1/kv surface compatible with existing clients
    - Add new endpoints, don't change the meaning of existing ones
"""

from .http_server import KVGateway, create_http_app

__all__ = [
    "KVGateway",
    "create_http_app",
]
