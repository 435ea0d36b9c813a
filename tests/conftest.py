"""
Shared fixtures for the KV audit gateway tests.

Every audit database lives in a temporary directory that is removed after
the test, so tests never share rows.
"""

import tempfile

import pytest
import pytest_asyncio

from dbaas.kvaudit_server.audit import AuditConnection, AuditStore, VersionAllocator
from dbaas.kvaudit_server.config import AuditDbConfig
from dbaas.kvaudit_server.primary import InMemoryPrimaryStore


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def audit_config(data_dir):
    """Audit database configuration pointing at the temporary directory."""
    return AuditDbConfig(
        host="db.internal",
        username="audit",
        password="s3cret",
        server="AUDIT",
        database="kvaudit",
        data_dir=data_dir,
    )


@pytest.fixture
def allocator():
    return VersionAllocator()


@pytest.fixture
def write_handle(audit_config):
    """Open write connection, closed at teardown."""
    handle = AuditConnection(audit_config, name="writer")
    handle.open()
    yield handle
    handle.close()


@pytest_asyncio.fixture
async def audit_store(write_handle, allocator):
    """Audit store with its schema created."""
    store = AuditStore(write_handle, allocator)
    await store.initialize()
    return store


@pytest.fixture
def primary():
    """Fresh in-memory primary store."""
    return InMemoryPrimaryStore()
