"""
Shared fixtures for the channel agent tests.

HTTP is mocked with respx. ``FakeNode`` plays the ledger full node: it
answers JSON-RPC calls from an in-memory event stream, a set of owned member
capabilities, channel objects and transactions.
"""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio
import respx

from channel_agent.client import LedgerClient
from channel_agent.types import ChannelEvent, Credential, EventCursor
from channel_agent.wallet import AgentWallet

RPC_URL = "http://ledger.test/rpc"
GATEWAY_URL = "http://gateway.test"
GATEWAY_KEY = "gw_test_key"
PACKAGE_ID = "0x" + "ab" * 32
AGENT_KEY = "0x" + "11" * 32
OTHER_ADDRESS = "0x" + "22" * 32
START_MS = 1_700_000_000_000
MESSAGE_EVENT_TYPE = f"{PACKAGE_ID}::message::MessageAddedEvent"


class RpcFault:
    """Return from a FakeNode handler to answer with a JSON-RPC error."""

    def __init__(self, message: str, code: int = -32000) -> None:
        self.message = message
        self.code = code


def ledger_event(
    seq: int,
    channel_id: str,
    sender: str = OTHER_ADDRESS,
    timestamp_ms: int = START_MS + 1000,
    message_index: int = 0,
    event_type: str = MESSAGE_EVENT_TYPE,
) -> dict[str, Any]:
    """A raw ``suix_queryEvents`` entry."""
    return {
        "id": {"txDigest": f"tx{seq}", "eventSeq": "0"},
        "packageId": PACKAGE_ID,
        "transactionModule": "message",
        "sender": sender,
        "type": event_type,
        "parsedJson": {
            "channel_id": channel_id,
            "sender": sender,
            "message_index": str(message_index),
            "key_version": "1",
        },
        "timestampMs": str(timestamp_ms),
    }


def channel_event(
    seq: int,
    channel_id: str,
    message_index: int | None = None,
    sender: str = OTHER_ADDRESS,
) -> ChannelEvent:
    return ChannelEvent.from_ledger_event(
        ledger_event(seq, channel_id, sender=sender, message_index=seq if message_index is None else message_index)
    )


def channel_object(channel_id: str, key: bytes = b"\x01\x02\x03", version: int | str = "2") -> dict[str, Any]:
    """``sui_getObject`` result for a channel with an encryption key history."""
    return {
        "data": {
            "objectId": channel_id,
            "content": {
                "dataType": "moveObject",
                "fields": {
                    "id": {"id": channel_id},
                    "encryption_key_history": {
                        "type": f"{PACKAGE_ID}::encryption_key_history::EncryptionKeyHistory",
                        "fields": {"latest": list(key), "latest_version": str(version)},
                    },
                },
            },
        }
    }


class FakeNode:
    """In-memory JSON-RPC ledger node for respx ``side_effect``."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.member_caps: dict[str, str] = {}
        self.channels: dict[str, dict[str, Any]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.owned_page_size = 2
        self.calls: list[tuple[str, list[Any]]] = []
        self.handlers: dict[str, Callable[[list[Any]], Any]] = {
            "suix_queryEvents": self._query_events,
            "suix_getOwnedObjects": self._owned_objects,
            "sui_getObject": self._get_object,
            "sui_executeTransactionBlock": self._execute,
            "sui_getTransactionBlock": self._get_transaction,
        }
        self._tx_counter = 0
        self.next_status = "success"

    def on(self, method: str, handler: Callable[[list[Any]], Any]) -> None:
        self.handlers[method] = handler

    def calls_to(self, method: str) -> list[list[Any]]:
        return [params for name, params in self.calls if name == method]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method, params = payload["method"], payload["params"]
        self.calls.append((method, params))
        handler = self.handlers.get(method)
        if handler is None:
            result: Any = RpcFault("method not found", -32601)
        else:
            result = handler(params)
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, RpcFault):
            body = {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": result.code, "message": result.message}}
        else:
            body = {"jsonrpc": "2.0", "id": payload["id"], "result": result}
        return httpx.Response(200, json=body)

    # -- default handlers ---------------------------------------------------

    def _query_events(self, params: list[Any]) -> dict[str, Any]:
        _query, cursor, limit, descending = params
        if descending:
            page = list(reversed(self.events))[:limit]
            return {"data": page, "nextCursor": page[-1]["id"] if page else None, "hasNextPage": False}
        start = 0
        if cursor is not None:
            ids = [e["id"] for e in self.events]
            start = ids.index(cursor) + 1
        page = self.events[start:start + limit]
        return {
            "data": page,
            "nextCursor": page[-1]["id"] if page else None,
            "hasNextPage": start + limit < len(self.events),
        }

    def _owned_objects(self, params: list[Any]) -> dict[str, Any]:
        _owner, _query, cursor, _limit = params
        items = sorted(self.member_caps.items())
        start = int(cursor) if cursor else 0
        chunk = items[start:start + self.owned_page_size]
        end = start + len(chunk)
        return {
            "data": [
                {
                    "data": {
                        "objectId": cap_id,
                        "content": {"dataType": "moveObject", "fields": {"id": {"id": cap_id}, "channel_id": channel_id}},
                    }
                }
                for channel_id, cap_id in chunk
            ],
            "nextCursor": str(end) if end < len(items) else None,
            "hasNextPage": end < len(items),
        }

    def _get_object(self, params: list[Any]) -> Any:
        object_id = params[0]
        if object_id not in self.channels:
            return {"error": {"code": "notExists", "object_id": object_id}}
        return self.channels[object_id]

    def _execute(self, params: list[Any]) -> dict[str, Any]:
        self._tx_counter += 1
        digest = f"digest{self._tx_counter}"
        effects = {"status": {"status": self.next_status}}
        if self.next_status != "success":
            effects["status"]["error"] = "MoveAbort"
        self.transactions[digest] = {"digest": digest, "effects": effects}
        return {"digest": digest}

    def _get_transaction(self, params: list[Any]) -> Any:
        digest = params[0]
        if digest not in self.transactions:
            return RpcFault(f"Could not find the referenced transaction {digest}")
        return self.transactions[digest]


# ============================================================
#  Fixtures
# ============================================================


@pytest.fixture
def wallet() -> AgentWallet:
    return AgentWallet.from_private_key(AGENT_KEY)


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def router(node: FakeNode):
    with respx.mock(assert_all_called=False) as router:
        router.post(RPC_URL).mock(side_effect=node)
        yield router


@pytest_asyncio.fixture
async def ledger(router: respx.MockRouter):
    client = LedgerClient(RPC_URL, GATEWAY_URL, gateway_api_key=GATEWAY_KEY)
    yield client
    await client.aclose()


class Clock:
    """Mutable clock in seconds."""

    def __init__(self, now_ms: int = START_MS) -> None:
        self.now = now_ms / 1000

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> Clock:
    return Clock()


def make_credential(
    address: str,
    issued_at_ms: int = START_MS,
    ttl_minutes: int = 30,
    session_id: str = "sess-1",
) -> Credential:
    return Credential(
        owner_address=address,
        scope=PACKAGE_ID,
        issued_at_ms=issued_at_ms,
        ttl_minutes=ttl_minutes,
        signature="c2ln",
        session_id=session_id,
    )


def cursor_of(seq: int) -> EventCursor:
    return EventCursor(tx_digest=f"tx{seq}", event_seq="0")
