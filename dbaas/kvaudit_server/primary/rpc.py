"""
HTTP/JSON RPC client for a remote primary store.

Each RPC method is a POST to ``{address}/v1/rpc/{method}`` with a JSON body.
Responses carry entries in the same shape DirEntry.to_dict() produces, plus
the query metadata fields ``Index``, ``KnownLeader`` and ``LastContact``.

Failure mapping:
    - Connection refused / connect timeout -> NoServersError
    - Error response with a known message -> the matching typed error
    - Any other transport or HTTP failure  -> PrimaryStoreError
    - Success response that is not a JSON object -> PrimaryStoreError

How to change safely:
    - Keep the method names identical to the server side (KVS.Get, ...)
    - New server error messages belong in base.classify_error()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from .base import (
    ApplyRequest,
    DirEntry,
    IndexedEntries,
    IndexedKeys,
    NoServersError,
    PrimaryStoreError,
    QueryMeta,
    classify_error,
)

if TYPE_CHECKING:
    from ..config import PrimaryConfig

logger = logging.getLogger(__name__)


class RpcPrimaryStore:
    """PrimaryStore backed by a remote agent reachable over HTTP.

    Example:
        >>> store = RpcPrimaryStore(PrimaryConfig(rpc_address="http://127.0.0.1:8300"))
        >>> result = await store.get("service/config", "dc1")
        >>> await store.close()
    """

    def __init__(
        self,
        config: "PrimaryConfig",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Primary store configuration
            transport: Optional transport override (tests use httpx.MockTransport)
        """
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.rpc_address,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def get(self, key: str, datacenter: str, token: str = "") -> IndexedEntries:
        data = await self._call("KVS.Get", {"Key": key, "Datacenter": datacenter, "Token": token})
        return self._entries(data)

    async def list(self, prefix: str, datacenter: str, token: str = "") -> IndexedEntries:
        data = await self._call(
            "KVS.List", {"Key": prefix, "Datacenter": datacenter, "Token": token}
        )
        return self._entries(data)

    async def list_keys(
        self,
        prefix: str,
        separator: str,
        datacenter: str,
        token: str = "",
    ) -> IndexedKeys:
        data = await self._call(
            "KVS.ListKeys",
            {"Prefix": prefix, "Seperator": separator, "Datacenter": datacenter, "Token": token},
        )
        return IndexedKeys(keys=list(data.get("Keys") or []), meta=QueryMeta.from_dict(data))

    async def apply(self, request: ApplyRequest) -> bool:
        data = await self._call("KVS.Apply", request.to_dict())
        return bool(data.get("Result", False))

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        """Issue one RPC and decode its JSON response.

        Raises:
            NoServersError: If no server accepted the connection
            PrimaryStoreError: For every other failure
        """
        try:
            response = await self._client.post(f"/v1/rpc/{method}", json=body)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.debug(f"RPC {method} could not reach {self.config.rpc_address}: {e}")
            raise NoServersError("No known servers") from e
        except httpx.HTTPError as e:
            raise PrimaryStoreError(f"RPC {method} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            raise classify_error(_error_message(data, response.text))

        if not isinstance(data, dict):
            raise PrimaryStoreError(
                f"RPC {method} returned a malformed response (HTTP {response.status_code})"
            )
        return data

    @staticmethod
    def _entries(data: dict[str, Any]) -> IndexedEntries:
        return IndexedEntries(
            entries=[DirEntry.from_dict(item) for item in data.get("Entries") or []],
            meta=QueryMeta.from_dict(data),
        )


def _error_message(data: Any, text: str) -> str:
    """Pick the error text out of a decoded error body."""
    if isinstance(data, dict) and isinstance(data.get("error"), str) and data["error"]:
        return data["error"]
    if isinstance(data, str) and data:
        return data
    return text
