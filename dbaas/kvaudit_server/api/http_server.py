"""
HTTP key-value gateway.

This module exposes the key-value API over HTTP:

    GET    /v1/kv/<key>     read one key (?raw), a tree (?recurse) or key names (?keys)
    PUT    /v1/kv/<key>     set (?cas=<index>, ?acquire=<session>, ?release=<session>, ?flags=<n>)
    DELETE /v1/kv/<key>     delete one key, a tree (?recurse) or conditionally (?cas=<index>)
    GET    /v1/audit/<key>  audit history of a key
    GET    /v1/health       read path state

Every KV request takes ``?dc=`` (default: configured datacenter) and a token
from ``?token=`` or the ``X-KV-Token`` header.

Invariants:
    - Malformed requests are rejected before any store is touched
    - PUT bodies above the size limit are rejected without being read further
    - Status codes: 400 bad request, 404 not found, 405 bad method,
      413 payload too large, 500 store failure

How to change safely:
    - Keep query modifier names stable, clients depend on them
    - New modifiers must be added to the conflicting-flag groups if they
      cannot be combined
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from aiohttp import web

from ..audit.store import AuditStore
from ..config import DEFAULT_MAX_KV_SIZE, HttpConfig
from ..errors import PayloadTooLargeError, ValidationError
from ..gateway.reader import DualPathReader, ReadPathState
from ..gateway.writer import KVWriter, MutationIntent
from ..primary.base import KVOp, QueryMeta

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-KV-Token"

PUT_EXCLUSIVE_FLAGS = ("cas", "acquire", "release")
DELETE_EXCLUSIVE_FLAGS = ("recurse", "cas")


@dataclass
class ReadIntent:
    """Normalized GET request.

    Attributes:
        kind: "get", "list" or "keys"
        key: Key, or prefix for list/keys
        separator: Roll-up separator for keys
        raw: Return the value as the raw body
    """

    kind: str
    key: str
    separator: str = ""
    raw: bool = False


def missing_key(key: str) -> None:
    """Raise ValidationError if key is empty."""
    if key == "":
        raise ValidationError("Missing key name", field_name="key")


def conflicting_flags(query: Mapping[str, str], *flags: str) -> None:
    """Raise ValidationError if more than one of flags is present."""
    present = [flag for flag in flags if flag in query]
    if len(present) > 1:
        raise ValidationError(f"Conflicting flags: {', '.join(present)}", field_name=present[1])


def parse_uint(query: Mapping[str, str], name: str) -> int:
    """Parse an unsigned integer modifier."""
    raw = query.get(name, "")
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name} value '{raw}'", field_name=name)
    if value < 0:
        raise ValidationError(f"Invalid {name} value '{raw}'", field_name=name)
    return value


def decode_put_body(body: bytes) -> tuple[bytes, str]:
    """Split a PUT body into value and validation pattern.

    Bodies shaped like ``{"value": "...", "regex": "..."}`` carry both.
    Anything else is taken literally as the value, with no pattern.
    """
    try:
        data = json.loads(body)
    except ValueError:
        return body, ""

    if not isinstance(data, dict):
        return body, ""

    value = _field(data, "value", "Value")
    regex = _field(data, "regex", "RegEx", "Regex")
    if regex is None:
        regex = ""
    if not isinstance(value, str) or not isinstance(regex, str):
        return body, ""
    return value.encode("utf-8"), regex


def _field(data: dict, *names: str) -> object:
    for name in names:
        if name in data:
            return data[name]
    return None


def parse_read_intent(key: str, query: Mapping[str, str]) -> ReadIntent:
    """Translate a GET request into a ReadIntent.

    Raises:
        ValidationError: If a plain get has no key
    """
    if "keys" in query:
        # Historic misspelling is still accepted; the correct spelling wins
        separator = ""
        if "seperator" in query:
            separator = query["seperator"]
        if "separator" in query:
            separator = query["separator"]
        return ReadIntent(kind="keys", key=key, separator=separator)

    if "recurse" in query:
        return ReadIntent(kind="list", key=key)

    missing_key(key)
    return ReadIntent(kind="get", key=key, raw="raw" in query)


def parse_put_intent(
    key: str,
    query: Mapping[str, str],
    datacenter: str,
    token: str = "",
) -> MutationIntent:
    """Translate a PUT request (without its body) into a MutationIntent.

    Raises:
        ValidationError: On a missing key, conflicting or malformed modifiers
    """
    missing_key(key)
    conflicting_flags(query, *PUT_EXCLUSIVE_FLAGS)

    intent = MutationIntent(op=KVOp.SET, key=key, datacenter=datacenter, token=token)

    if "flags" in query:
        intent.flags = parse_uint(query, "flags")

    if "cas" in query:
        intent.cas_index = parse_uint(query, "cas")
        intent.op = KVOp.CAS

    if "acquire" in query:
        intent.session = query["acquire"]
        intent.op = KVOp.LOCK

    if "release" in query:
        intent.session = query["release"]
        intent.op = KVOp.UNLOCK

    return intent


def parse_delete_intent(
    key: str,
    query: Mapping[str, str],
    datacenter: str,
    token: str = "",
) -> MutationIntent:
    """Translate a DELETE request into a MutationIntent.

    Raises:
        ValidationError: On conflicting modifiers, a missing key for a
            single-key delete, or a malformed cas index
    """
    conflicting_flags(query, *DELETE_EXCLUSIVE_FLAGS)

    intent = MutationIntent(op=KVOp.DELETE, key=key, datacenter=datacenter, token=token)

    if "recurse" in query:
        intent.op = KVOp.DELETE_TREE
    else:
        missing_key(key)

    if "cas" in query:
        intent.cas_index = parse_uint(query, "cas")
        intent.op = KVOp.DELETE_CAS

    return intent


class KVGateway:
    """Request handlers bound to a reader and a writer.

    Attributes:
        reader: Dual-path read coordinator
        writer: Write gateway
        datacenter: Datacenter used when a request names none
        max_kv_size: PUT body limit in bytes
    """

    def __init__(
        self,
        reader: DualPathReader,
        writer: KVWriter,
        datacenter: str = "dc1",
        max_kv_size: int = DEFAULT_MAX_KV_SIZE,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.datacenter = datacenter
        self.max_kv_size = max_kv_size

    @property
    def audit_store(self) -> AuditStore | None:
        return self.writer.audit_store

    def request_context(self, request: web.Request) -> tuple[str, str]:
        """Extract (datacenter, token) from a request."""
        datacenter = request.query.get("dc") or self.datacenter
        token = request.query.get("token") or request.headers.get(TOKEN_HEADER, "")
        return datacenter, token

    async def handle_kv(self, request: web.Request) -> web.StreamResponse:
        """Handle /v1/kv/<key> - dispatch on method."""
        if request.method == "GET":
            return await self.handle_get(request)
        if request.method == "PUT":
            return await self.handle_put(request)
        if request.method == "DELETE":
            return await self.handle_delete(request)
        return web.Response(status=405)

    async def handle_get(self, request: web.Request) -> web.StreamResponse:
        """Handle GET /v1/kv/<key> - single key, tree or key names."""
        key = request.match_info["key"]
        datacenter, token = self.request_context(request)
        intent = parse_read_intent(key, request.query)

        if intent.kind == "keys":
            out = await self.reader.list_keys(intent.key, intent.separator, datacenter, token)
            # No 404 for the root, just the empty list
            if not out.keys and intent.key != "":
                return set_meta(web.Response(status=404), out.meta)
            return set_meta(web.json_response(out.keys), out.meta)

        if intent.kind == "list":
            result = await self.reader.list(intent.key, datacenter, token)
        else:
            result = await self.reader.get(intent.key, datacenter, token)

        if not result.entries:
            response = set_meta(web.Response(status=404), result.meta, result.degraded)
            return response

        if intent.raw:
            response = web.Response(body=result.entries[0].value)
            return set_meta(response, result.meta, result.degraded)

        response = web.json_response([entry.to_dict() for entry in result.entries])
        return set_meta(response, result.meta, result.degraded)

    async def handle_put(self, request: web.Request) -> web.StreamResponse:
        """Handle PUT /v1/kv/<key> - set, cas, lock acquire/release."""
        key = request.match_info["key"]
        datacenter, token = self.request_context(request)
        intent = parse_put_intent(key, request.query, datacenter, token)

        if request.content_length is not None and request.content_length > self.max_kv_size:
            raise PayloadTooLargeError(self.max_kv_size)

        body = await read_limited_body(request, self.max_kv_size)
        intent.value, intent.regex = decode_put_body(body)

        result = await self.writer.apply(intent)
        return web.json_response(result)

    async def handle_delete(self, request: web.Request) -> web.StreamResponse:
        """Handle DELETE /v1/kv/<key> - delete, delete tree, cas delete."""
        key = request.match_info["key"]
        datacenter, token = self.request_context(request)
        intent = parse_delete_intent(key, request.query, datacenter, token)

        result = await self.writer.apply(intent)
        return web.json_response(result)

    async def handle_audit(self, request: web.Request) -> web.Response:
        """Handle GET /v1/audit/<key> - audit history of a key."""
        key = request.match_info["key"]
        missing_key(key)
        datacenter, _ = self.request_context(request)

        if self.audit_store is None:
            return web.json_response({"error": "Auditing is disabled"}, status=404)

        records = await self.audit_store.history(key, datacenter)
        if not records:
            return web.Response(status=404)
        return web.json_response([record.to_dict() for record in records])

    async def handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /v1/health - read path state."""
        fallback = self.reader.fallback
        return web.json_response(
            {
                "healthy": self.reader.state == ReadPathState.PRIMARY_HEALTHY,
                "read_path": self.reader.state.value,
                "audit_enabled": self.audit_store is not None,
                "fallback_open": fallback.is_open if fallback is not None else False,
            }
        )


async def read_limited_body(request: web.Request, limit: int) -> bytes:
    """Read the request body, stopping as soon as it exceeds limit.

    Raises:
        PayloadTooLargeError: If the body is larger than limit
    """
    body = bytearray()
    async for chunk in request.content.iter_chunked(64 * 1024):
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLargeError(limit)
    return bytes(body)


def set_meta(response: web.Response, meta: QueryMeta, degraded: bool = False) -> web.Response:
    """Attach query metadata headers."""
    response.headers["X-KV-Index"] = str(meta.index)
    response.headers["X-KV-KnownLeader"] = "true" if meta.known_leader else "false"
    response.headers["X-KV-LastContact"] = str(meta.last_contact_ms)
    if degraded:
        response.headers["X-KV-Degraded"] = "true"
    return response


def create_http_app(
    reader: DualPathReader,
    writer: KVWriter,
    config: HttpConfig | None = None,
    datacenter: str = "dc1",
) -> web.Application:
    """Create the HTTP application.

    Args:
        reader: Dual-path read coordinator
        writer: Write gateway
        config: HTTP server configuration
        datacenter: Datacenter used when a request names none

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    gateway = KVGateway(reader, writer, datacenter=datacenter, max_kv_size=config.max_kv_size)
    app = web.Application()

    app.router.add_route("*", "/v1/kv/{key:.*}", gateway.handle_kv)
    app.router.add_get("/v1/audit/{key:.*}", gateway.handle_audit)
    app.router.add_get("/v1/health", gateway.handle_health)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ValidationError as e:
            return web.Response(status=400, text=e.message)
        except PayloadTooLargeError as e:
            return web.Response(status=413, text=e.message)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": getattr(e, "code", "INTERNAL")},
                status=500,
            )

    app.middlewares.append(error_middleware)

    return app
