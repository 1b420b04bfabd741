"""
Ledger and messaging-gateway clients.

Two transports, both on ``httpx``:

* ``_RpcClient`` talks JSON-RPC 2.0 to a ledger full node (event queries,
  owned-object enumeration, object reads, transaction execution).
* ``_HttpClient`` talks to the messaging gateway, the trusted service that
  owns the encryption primitives: it issues session challenges, decrypts
  channel messages and prepares unsigned encrypt-and-append transactions.

``LedgerClient`` bundles both behind small sub-managers::

    ledger = LedgerClient(rpc_url, gateway_url, gateway_api_key="gw_key")
    page = await ledger.events.query(package_id, "message", cursor=None)
    await ledger.aclose()
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import random
from typing import Any

import httpx

from channel_agent.exceptions import AgentError, RpcError
from channel_agent.types import (
    Credential,
    EncryptionKeyRef,
    EventCursor,
    EventPage,
    OwnedObjectPage,
    SessionChallenge,
)

logger = logging.getLogger(__name__)


class _HttpClient:
    """Thin wrapper around httpx for messaging-gateway requests."""

    def __init__(self, gateway_url: str, api_key: str = "", timeout: float = 30.0) -> None:
        self.base_url = gateway_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
        )

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        max_retries: int = 4,
    ) -> Any:
        """Make a request to the gateway.

        A 429 is retried up to ``max_retries`` times. The wait doubles from
        5s (capped at 60s), honours Retry-After when longer, and is jittered.
        """
        for attempt in range(max_retries + 1):
            response = await self._client.request(method=method, url=path, json=body)
            if response.status_code != 429 or attempt == max_retries:
                break
            delay = max(float(response.headers.get("retry-after", "0")), min(5 * 2**attempt, 60))
            delay *= random.uniform(0.8, 1.2)
            logger.info(
                "Rate limited (429), retrying in %.1fs (attempt %d/%d)",
                delay, attempt + 1, max_retries,
            )
            await asyncio.sleep(delay)

        # Never use raise_for_status(): it puts the whole response body,
        # which may echo session material, into the exception message.
        if response.status_code >= 400:
            err_msg = "Request failed"
            try:
                err_data = response.json()
            except ValueError:
                err_data = None
            if isinstance(err_data, dict):
                err_msg = err_data.get("error") or err_data.get("message") or err_msg
            raise httpx.HTTPStatusError(
                f"Gateway request failed ({response.status_code}): {err_msg}",
                request=response.request,
                response=response,
            )

        if response.status_code == 204:
            return {}

        try:
            return response.json()
        except ValueError as exc:
            raise AgentError(
                f"Gateway returned a non-JSON body ({response.status_code}) for {path}"
            ) from exc

    async def close(self) -> None:
        await self._client.aclose()


class _RpcClient:
    """JSON-RPC 2.0 client for a ledger full node."""

    def __init__(self, rpc_url: str, timeout: float = 30.0) -> None:
        self.url = rpc_url
        self._client = httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def call(self, method: str, params: list[Any]) -> Any:
        """Invoke ``method`` and return its ``result``.

        Raises:
            RpcError: If the node answers with an error object or a body that
                is not a JSON-RPC response.
            httpx.HTTPError: On transport failures or non-2xx responses.
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = await self._client.post(self.url, json=payload)
        if response.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"RPC request {method} failed ({response.status_code})",
                request=response.request,
                response=response,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise RpcError(method, None, "response is not JSON") from exc
        if not isinstance(data, dict):
            raise RpcError(method, None, "response is not a JSON-RPC object")
        if data.get("error"):
            err = data["error"]
            if not isinstance(err, dict):
                raise RpcError(method, None, str(err))
            raise RpcError(method, err.get("code"), err.get("message", "unknown error"))
        return data.get("result")

    async def call_object(self, method: str, params: list[Any]) -> dict[str, Any]:
        """Like ``call``, for methods whose result is a JSON object (``{}`` if null)."""
        result = await self.call(method, params)
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise RpcError(method, None, f"expected an object result, got {type(result).__name__}")
        return result

    async def close(self) -> None:
        await self._client.aclose()


# ============================================================
#  Sub-managers
# ============================================================


class _EventQueries:
    """Move event stream queries."""

    def __init__(self, rpc: _RpcClient) -> None:
        self._rpc = rpc

    async def query(
        self,
        package_id: str,
        module: str,
        cursor: EventCursor | None = None,
        limit: int = 50,
        descending: bool = False,
    ) -> EventPage:
        query = {"MoveEventModule": {"package": package_id, "module": module}}
        result = await self._rpc.call_object(
            "suix_queryEvents",
            [query, cursor.to_rpc() if cursor else None, limit, descending],
        )
        return EventPage(**result)


class _ObjectQueries:
    """Owned-object enumeration and single-object reads."""

    def __init__(self, rpc: _RpcClient) -> None:
        self._rpc = rpc

    async def owned(
        self,
        owner: str,
        struct_type: str,
        cursor: str | None = None,
        limit: int = 50,
    ) -> OwnedObjectPage:
        query = {"filter": {"StructType": struct_type}, "options": {"showContent": True}}
        result = await self._rpc.call_object("suix_getOwnedObjects", [owner, query, cursor, limit])
        return OwnedObjectPage(**result)

    async def get(self, object_id: str) -> dict[str, Any]:
        """Read an object with its Move content.

        Returns the ``data`` section. Raises ``RpcError`` if the node reports
        the object as missing or deleted.
        """
        result = await self._rpc.call_object("sui_getObject", [object_id, {"showContent": True}])
        if result.get("error") or not result.get("data"):
            err = result.get("error") or {}
            raise RpcError("sui_getObject", None, str(err.get("code", "object not found")))
        return result["data"]


class _TransactionExecutor:
    """Submit signed transactions and wait for finality."""

    def __init__(self, rpc: _RpcClient) -> None:
        self._rpc = rpc

    async def execute(self, tx_bytes: bytes, signature: str) -> dict[str, Any]:
        return await self._rpc.call(
            "sui_executeTransactionBlock",
            [
                base64.b64encode(tx_bytes).decode("ascii"),
                [signature],
                {"showEffects": True},
                "WaitForLocalExecution",
            ],
        )

    async def wait_for(
        self,
        digest: str,
        timeout: float = 60.0,
        interval: float = 1.0,
    ) -> dict[str, Any]:
        """Poll until the transaction is indexed with its effects.

        Raises:
            TimeoutError: If the transaction is not visible within ``timeout``.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                return await self._rpc.call(
                    "sui_getTransactionBlock", [digest, {"showEffects": True}]
                )
            except RpcError as exc:
                if loop.time() + interval > deadline:
                    raise TimeoutError(f"Transaction {digest} not final after {timeout}s") from exc
                logger.debug("Transaction %s not yet visible, polling again", digest)
                await asyncio.sleep(interval)


class _MessagingGateway:
    """Session challenges, decryption and send preparation.

    Every call that touches encrypted content carries the exported session
    credential; the gateway keeps no session state of its own.
    """

    def __init__(self, http: _HttpClient) -> None:
        self._http = http

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        data = await self._http.request("POST", path, body)
        if not isinstance(data, dict):
            raise AgentError(f"Gateway returned {type(data).__name__} for {path}, expected an object")
        return data

    async def request_challenge(
        self,
        address: str,
        package_id: str,
        ttl_minutes: int,
    ) -> SessionChallenge:
        data = await self._post(
            "/v1/session/challenge",
            {"address": address, "packageId": package_id, "ttlMin": ttl_minutes},
        )
        return SessionChallenge(**data)

    async def decrypt(
        self,
        credential: Credential,
        user_address: str,
        channel_id: str,
        message_index: int,
    ) -> str | None:
        data = await self._post(
            "/v1/messages/decrypt",
            {
                "channelId": channel_id,
                "messageIndex": message_index,
                "userAddress": user_address,
                "sessionKey": credential.export(),
            },
        )
        text = data.get("text")
        return text if isinstance(text, str) else None

    async def prepare_send(
        self,
        credential: Credential,
        sender: str,
        channel_id: str,
        member_cap_id: str,
        text: str,
        key_ref: EncryptionKeyRef,
    ) -> bytes:
        """Build the unsigned encrypt-and-append transaction.

        Returns:
            Serialized transaction bytes with ``sender`` set.
        """
        data = await self._post(
            "/v1/prepare/send-message",
            {
                "channelId": channel_id,
                "memberCapId": member_cap_id,
                "sender": sender,
                "message": text,
                "encryptedKey": key_ref.to_wire(),
                "sessionKey": credential.export(),
            },
        )
        if "txBytes" not in data:
            raise AgentError(f"Gateway did not return txBytes, got keys: {list(data.keys())}")
        return base64.b64decode(data["txBytes"])


class LedgerClient:
    """Facade over the ledger node and messaging gateway."""

    def __init__(
        self,
        rpc_url: str,
        gateway_url: str,
        gateway_api_key: str = "",
        timeout: float = 30.0,
    ) -> None:
        self._rpc = _RpcClient(rpc_url, timeout=timeout)
        self._http = _HttpClient(gateway_url, gateway_api_key, timeout=timeout)

        self.events = _EventQueries(self._rpc)
        self.objects = _ObjectQueries(self._rpc)
        self.transactions = _TransactionExecutor(self._rpc)
        self.messaging = _MessagingGateway(self._http)

    async def aclose(self) -> None:
        await self._rpc.close()
        await self._http.close()
