"""
Unit tests for HTTP request parsing.

Tests cover:
- GET modifiers (raw, recurse, keys, separator spellings)
- PUT and DELETE modifiers and their conflicts
- PUT body decoding
"""

import pytest

from dbaas.kvaudit_server.api.http_server import (
    decode_put_body,
    parse_delete_intent,
    parse_put_intent,
    parse_read_intent,
)
from dbaas.kvaudit_server.errors import ValidationError
from dbaas.kvaudit_server.primary import KVOp


class TestParseReadIntent:
    """Tests for parse_read_intent."""

    def test_plain_get(self):
        intent = parse_read_intent("app/a", {})

        assert intent.kind == "get"
        assert not intent.raw

    def test_raw(self):
        assert parse_read_intent("app/a", {"raw": ""}).raw

    def test_recurse_allows_empty_key(self):
        intent = parse_read_intent("", {"recurse": ""})

        assert intent.kind == "list"
        assert intent.key == ""

    def test_keys_takes_priority(self):
        assert parse_read_intent("app/", {"keys": "", "recurse": ""}).kind == "keys"

    def test_get_requires_key(self):
        with pytest.raises(ValidationError, match="Missing key name"):
            parse_read_intent("", {})

    def test_separator(self):
        assert parse_read_intent("", {"keys": "", "separator": "/"}).separator == "/"

    def test_misspelled_separator(self):
        assert parse_read_intent("", {"keys": "", "seperator": "-"}).separator == "-"

    def test_correct_spelling_wins(self):
        query = {"keys": "", "seperator": "-", "separator": "/"}

        assert parse_read_intent("", query).separator == "/"


class TestParsePutIntent:
    """Tests for parse_put_intent."""

    def test_set(self):
        intent = parse_put_intent("app/a", {"flags": "42"}, "dc1", "tok")

        assert intent.op == KVOp.SET
        assert intent.flags == 42
        assert intent.token == "tok"
        assert intent.datacenter == "dc1"

    def test_cas(self):
        intent = parse_put_intent("app/a", {"cas": "12"}, "dc1")

        assert intent.op == KVOp.CAS
        assert intent.cas_index == 12

    def test_acquire_and_release(self):
        acquire = parse_put_intent("lock", {"acquire": "s1"}, "dc1")
        release = parse_put_intent("lock", {"release": "s1"}, "dc1")

        assert (acquire.op, acquire.session) == (KVOp.LOCK, "s1")
        assert (release.op, release.session) == (KVOp.UNLOCK, "s1")

    @pytest.mark.parametrize(
        "query",
        [
            {"cas": "1", "acquire": "s1"},
            {"cas": "1", "release": "s1"},
            {"acquire": "s1", "release": "s1"},
        ],
    )
    def test_conflicting_flags(self, query):
        with pytest.raises(ValidationError, match="Conflicting flags"):
            parse_put_intent("app/a", query, "dc1")

    def test_missing_key_checked_first(self):
        with pytest.raises(ValidationError, match="Missing key name"):
            parse_put_intent("", {"cas": "1", "acquire": "s1"}, "dc1")

    @pytest.mark.parametrize("name,raw", [("cas", "abc"), ("cas", "-1"), ("flags", "1.5")])
    def test_invalid_numbers(self, name, raw):
        with pytest.raises(ValidationError) as exc_info:
            parse_put_intent("app/a", {name: raw}, "dc1")

        assert exc_info.value.field_name == name


class TestParseDeleteIntent:
    """Tests for parse_delete_intent."""

    def test_delete(self):
        assert parse_delete_intent("app/a", {}, "dc1").op == KVOp.DELETE

    def test_delete_tree_allows_empty_key(self):
        intent = parse_delete_intent("", {"recurse": ""}, "dc1")

        assert intent.op == KVOp.DELETE_TREE
        assert intent.key == ""

    def test_delete_cas(self):
        intent = parse_delete_intent("app/a", {"cas": "3"}, "dc1")

        assert intent.op == KVOp.DELETE_CAS
        assert intent.cas_index == 3

    def test_recurse_and_cas_conflict(self):
        with pytest.raises(ValidationError, match="Conflicting flags"):
            parse_delete_intent("app/", {"recurse": "", "cas": "1"}, "dc1")

    def test_missing_key(self):
        with pytest.raises(ValidationError, match="Missing key name"):
            parse_delete_intent("", {}, "dc1")


class TestDecodePutBody:
    """Tests for decode_put_body."""

    def test_value_and_regex(self):
        assert decode_put_body(b'{"value": "hello", "regex": "^h"}') == (b"hello", "^h")

    def test_value_only(self):
        assert decode_put_body(b'{"value": "hello"}') == (b"hello", "")

    def test_raw_body(self):
        assert decode_put_body(b"hello-raw") == (b"hello-raw", "")

    def test_json_non_object_is_raw(self):
        assert decode_put_body(b"[1, 2]") == (b"[1, 2]", "")

    def test_non_string_value_is_raw(self):
        body = b'{"value": 5}'

        assert decode_put_body(body) == (body, "")

    def test_empty_body(self):
        assert decode_put_body(b"") == (b"", "")

    def test_object_without_value_is_raw(self):
        body = b'{"name": "svc"}'

        assert decode_put_body(body) == (body, "")
