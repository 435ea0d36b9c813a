"""
Unit tests for the audit store.

Tests cover:
- Version numbering of sets
- Soft deletes and delete-tree prefix matching
- Current value lookup
- History
- Insert anomalies (conflicts, wrong row counts)
"""

import logging
import sqlite3
from types import SimpleNamespace

import pytest

from dbaas.kvaudit_server.audit import AuditConnection, AuditRecord, AuditStore
from dbaas.kvaudit_server.audit.connection import sqlite_connect
from dbaas.kvaudit_server.audit.store import escape_like
from dbaas.kvaudit_server.errors import (
    AuditConnectionError,
    PersistenceError,
    QueryError,
    VersionConflictError,
)


class ZeroRowConnection:
    """Connection whose inserts report that nothing was written."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def execute(self, sql, params=()):
        cursor = self._conn.execute(sql, params)
        if sql.lstrip().upper().startswith("INSERT"):
            return SimpleNamespace(rowcount=0)
        return cursor

    def executescript(self, script):
        return self._conn.executescript(script)

    def close(self):
        self._conn.close()


class TestEscapeLike:
    """Tests for escape_like."""

    def test_plain_prefix_unchanged(self):
        assert escape_like("app/") == "app/"

    def test_wildcards_escaped(self):
        assert escape_like("50%_off") == "50\\%\\_off"

    def test_escape_character_escaped(self):
        assert escape_like("a\\b") == "a\\\\b"


class TestAppendSet:
    """Tests for AuditStore.append_set."""

    @pytest.mark.asyncio
    async def test_versions_are_gapless(self, audit_store):
        """N sets of a key produce versions 1..N."""
        versions = []
        for i in range(5):
            versions.append(await audit_store.append_set(AuditRecord("app/a", f"v{i}".encode(), "dc1")))

        assert versions == [1, 2, 3, 4, 5]
        history = await audit_store.history("app/a", "dc1")
        assert [record.version for record in history] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_record_updated_in_place(self, audit_store):
        record = AuditRecord("app/a", b"1", "dc1")

        await audit_store.append_set(record)

        assert record.version == 1
        assert record.timestamp > 0
        assert record.deleted is False

    @pytest.mark.asyncio
    async def test_fields_are_stored(self, audit_store):
        await audit_store.append_set(
            AuditRecord(
                "app/a",
                b"payload",
                "dc1",
                create_index=4,
                modify_index=9,
                lock_index=2,
                session="sess-1",
                flags=42,
                acl="token-1",
                regex="^p",
            )
        )

        record = await audit_store.read_current("app/a", "dc1")

        assert record.value == b"payload"
        assert record.create_index == 4
        assert record.modify_index == 9
        assert record.lock_index == 2
        assert record.session == "sess-1"
        assert record.flags == 42
        assert record.acl == "token-1"
        assert record.regex == "^p"

    @pytest.mark.asyncio
    async def test_version_conflict(self, audit_store, write_handle, monkeypatch):
        """A version taken behind the allocator's back is reported as a conflict."""
        await audit_store.append_set(AuditRecord("app/a", b"1", "dc1"))
        monkeypatch.setattr(audit_store.allocator, "next_version", lambda conn, key, dc: 1)

        with pytest.raises(VersionConflictError) as exc_info:
            await audit_store.append_set(AuditRecord("app/a", b"2", "dc1"))

        assert exc_info.value.version == 1
        assert exc_info.value.datacenter == "dc1"
        assert exc_info.value.code == "VERSION_CONFLICT"

    @pytest.mark.asyncio
    async def test_insert_without_row_is_persistence_error(self, audit_config):
        handle = AuditConnection(audit_config, connect=lambda cfg: ZeroRowConnection(sqlite_connect(cfg)))
        handle.open()
        store = AuditStore(handle)
        await store.initialize()

        with pytest.raises(PersistenceError) as exc_info:
            await store.append_set(AuditRecord("app/a", b"1", "dc1"))

        assert exc_info.value.affected == 0
        assert exc_info.value.key == "app/a"
        assert store.allocator.active_scopes == 0
        handle.close()

    @pytest.mark.asyncio
    async def test_closed_handle(self, audit_store, write_handle):
        write_handle.close()

        with pytest.raises(AuditConnectionError):
            await audit_store.append_set(AuditRecord("app/a", b"1", "dc1"))


class TestSoftDelete:
    """Tests for AuditStore.append_delete."""

    @pytest.mark.asyncio
    async def test_delete_hides_key(self, audit_store):
        await audit_store.append_set(AuditRecord("app/a", b"1", "dc1"))

        flipped = await audit_store.append_delete("app/a", "dc1")

        assert flipped == 1
        assert await audit_store.read_current("app/a", "dc1") is None

    @pytest.mark.asyncio
    async def test_set_after_delete(self, audit_store):
        """set, delete, set: the second value is current."""
        await audit_store.append_set(AuditRecord("app/a", b"first", "dc1"))
        await audit_store.append_delete("app/a", "dc1")
        version = await audit_store.append_set(AuditRecord("app/a", b"second", "dc1"))

        record = await audit_store.read_current("app/a", "dc1")

        assert version == 2
        assert record.value == b"second"
        assert record.version == 2

    @pytest.mark.asyncio
    async def test_delete_keeps_rows(self, audit_store):
        await audit_store.append_set(AuditRecord("app/a", b"1", "dc1"))
        await audit_store.append_set(AuditRecord("app/a", b"2", "dc1"))
        await audit_store.append_delete("app/a", "dc1")

        history = await audit_store.history("app/a", "dc1")

        assert [(r.version, r.deleted) for r in history] == [(1, True), (2, True)]

    @pytest.mark.asyncio
    async def test_delete_is_exact(self, audit_store):
        await audit_store.append_set(AuditRecord("app/a", b"1", "dc1"))
        await audit_store.append_set(AuditRecord("app/ab", b"2", "dc1"))

        await audit_store.append_delete("app/a", "dc1")

        assert await audit_store.read_current("app/ab", "dc1") is not None

    @pytest.mark.asyncio
    async def test_delete_unknown_key_warns(self, audit_store, caplog):
        with caplog.at_level(logging.WARNING):
            flipped = await audit_store.append_delete("missing", "dc1")

        assert flipped == 0
        assert "no entry for key missing" in caplog.text

    @pytest.mark.asyncio
    async def test_delete_other_datacenter_untouched(self, audit_store):
        await audit_store.append_set(AuditRecord("app/a", b"1", "dc1"))
        await audit_store.append_set(AuditRecord("app/a", b"2", "dc2"))

        await audit_store.append_delete("app/a", "dc2")

        assert (await audit_store.read_current("app/a", "dc1")).value == b"1"
        assert await audit_store.read_current("app/a", "dc2") is None


class TestDeleteTree:
    """Tests for AuditStore.append_delete_tree."""

    @pytest.mark.asyncio
    async def test_prefix_match(self, audit_store):
        """app/ covers app/a and app/b/c but not application/x."""
        for key in ("app/a", "app/b/c", "application/x"):
            await audit_store.append_set(AuditRecord(key, b"v", "dc1"))

        flipped = await audit_store.append_delete_tree("app/", "dc1")

        assert flipped == 2
        assert await audit_store.read_current("app/a", "dc1") is None
        assert await audit_store.read_current("app/b/c", "dc1") is None
        assert await audit_store.read_current("application/x", "dc1") is not None

    @pytest.mark.asyncio
    async def test_wildcards_match_literally(self, audit_store):
        for key in ("a_b/1", "axb/1", "50%/x", "500/x"):
            await audit_store.append_set(AuditRecord(key, b"v", "dc1"))

        await audit_store.append_delete_tree("a_b/", "dc1")
        await audit_store.append_delete_tree("50%", "dc1")

        assert await audit_store.read_current("a_b/1", "dc1") is None
        assert await audit_store.read_current("axb/1", "dc1") is not None
        assert await audit_store.read_current("50%/x", "dc1") is None
        assert await audit_store.read_current("500/x", "dc1") is not None

    @pytest.mark.asyncio
    async def test_prefix_is_case_sensitive(self, audit_store):
        await audit_store.append_set(AuditRecord("App/a", b"v", "dc1"))

        await audit_store.append_delete_tree("app/", "dc1")

        assert await audit_store.read_current("App/a", "dc1") is not None

    @pytest.mark.asyncio
    async def test_empty_prefix_matches_everything(self, audit_store):
        for key in ("a", "b/c"):
            await audit_store.append_set(AuditRecord(key, b"v", "dc1"))

        flipped = await audit_store.append_delete_tree("", "dc1")

        assert flipped == 2


class TestReadCurrent:
    """Tests for AuditStore.read_current and history."""

    @pytest.mark.asyncio
    async def test_unknown_key(self, audit_store):
        assert await audit_store.read_current("missing", "dc1") is None

    @pytest.mark.asyncio
    async def test_latest_version_wins(self, audit_store):
        for value in (b"v1", b"v2", b"v3"):
            await audit_store.append_set(AuditRecord("app/a", value, "dc1"))

        record = await audit_store.read_current("app/a", "dc1")

        assert record.value == b"v3"
        assert record.version == 3

    @pytest.mark.asyncio
    async def test_other_datacenter(self, audit_store):
        await audit_store.append_set(AuditRecord("app/a", b"1", "dc1"))

        assert await audit_store.read_current("app/a", "dc2") is None

    @pytest.mark.asyncio
    async def test_empty_value(self, audit_store):
        await audit_store.append_set(AuditRecord("app/a", b"", "dc1"))

        record = await audit_store.read_current("app/a", "dc1")

        assert record.value == b""
        assert record.to_entry().to_dict()["Value"] is None

    @pytest.mark.asyncio
    async def test_history_of_unknown_key(self, audit_store):
        assert await audit_store.history("missing", "dc1") == []

    @pytest.mark.asyncio
    async def test_history_dict_shape(self, audit_store):
        await audit_store.append_set(AuditRecord("app/a", b"1", "dc1"))

        data = (await audit_store.history("app/a", "dc1"))[0].to_dict()

        assert data["Key"] == "app/a"
        assert data["Version"] == 1
        assert data["Datacenter"] == "dc1"
        assert data["Deleted"] is False

    @pytest.mark.asyncio
    async def test_read_without_schema(self, write_handle):
        store = AuditStore(write_handle)

        with pytest.raises(QueryError):
            await store.read_current("app/a", "dc1")
