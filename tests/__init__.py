"""
KV Audit Gateway Test Suite.

This package contains:
- unit/: Unit tests (SQLite in a temporary directory, in-memory primary store)
- integration/: HTTP gateway tests against an in-process aiohttp server
"""
