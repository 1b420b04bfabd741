"""
Tests for MembershipCache against a fake ledger node.
"""

from __future__ import annotations

import httpx
import pytest

from channel_agent.client import LedgerClient
from channel_agent.exceptions import MembershipError
from channel_agent.membership import MembershipCache, member_cap_type

from conftest import PACKAGE_ID, FakeNode, RpcFault


@pytest.mark.asyncio
async def test_refresh_paginates_all_capabilities(node: FakeNode, ledger: LedgerClient) -> None:
    """Every page of owned capabilities is enumerated."""
    node.member_caps = {"0xa": "0xcap_a", "0xb": "0xcap_b", "0xc": "0xcap_c"}
    cache = MembershipCache(ledger, "0xagent", PACKAGE_ID)

    channels = await cache.refresh()

    assert channels == frozenset({"0xa", "0xb", "0xc"})
    assert len(node.calls_to("suix_getOwnedObjects")) == 2
    assert cache.capability_for("0xc") == "0xcap_c"
    assert "0xb" in cache
    assert len(cache) == 3


@pytest.mark.asyncio
async def test_refresh_filters_by_capability_type(node: FakeNode, ledger: LedgerClient) -> None:
    """The owned-object query asks for the package's MemberCap type only."""
    cache = MembershipCache(ledger, "0xagent", PACKAGE_ID)
    await cache.refresh()

    owner, query, _, _ = node.calls_to("suix_getOwnedObjects")[0]
    assert owner == "0xagent"
    assert query["filter"] == {"StructType": member_cap_type(PACKAGE_ID)}
    assert query["options"]["showContent"] is True


@pytest.mark.asyncio
async def test_refresh_replaces_snapshot(node: FakeNode, ledger: LedgerClient) -> None:
    """Removed channels disappear; the old snapshot is not merged in."""
    node.member_caps = {"0xa": "0xcap_a", "0xb": "0xcap_b"}
    cache = MembershipCache(ledger, "0xagent", PACKAGE_ID)
    await cache.refresh()

    node.member_caps = {"0xb": "0xcap_b", "0xd": "0xcap_d"}
    await cache.refresh()

    assert cache.channels == frozenset({"0xb", "0xd"})
    assert cache.capability_for("0xa") is None


@pytest.mark.asyncio
async def test_refresh_failure_keeps_previous(node: FakeNode, ledger: LedgerClient) -> None:
    """A failure mid-enumeration leaves the last good snapshot untouched."""
    node.member_caps = {"0xa": "0xcap_a", "0xb": "0xcap_b", "0xc": "0xcap_c"}
    cache = MembershipCache(ledger, "0xagent", PACKAGE_ID)
    await cache.refresh()
    before = cache.channels

    node.member_caps["0xz"] = "0xcap_z"
    first_page = node.handlers["suix_getOwnedObjects"]
    node.on(
        "suix_getOwnedObjects",
        lambda params: first_page(params) if params[2] is None else RpcFault("node overloaded"),
    )

    with pytest.raises(MembershipError):
        await cache.refresh()

    assert cache.channels == before
    assert "0xz" not in cache


@pytest.mark.asyncio
async def test_refresh_transport_error(node: FakeNode, ledger: LedgerClient) -> None:
    """Transport failures become MembershipError."""
    cache = MembershipCache(ledger, "0xagent", PACKAGE_ID)
    node.on("suix_getOwnedObjects", lambda params: httpx.Response(502))

    with pytest.raises(MembershipError):
        await cache.refresh()
    assert cache.channels == frozenset()

    node.on(
        "suix_getOwnedObjects",
        lambda params: httpx.Response(200, text="<html>502 Bad Gateway</html>"),
    )
    with pytest.raises(MembershipError):
        await cache.refresh()
    assert cache.channels == frozenset()


@pytest.mark.asyncio
async def test_refresh_skips_non_move_objects(node: FakeNode, ledger: LedgerClient) -> None:
    """Entries without Move content or a channel id are ignored."""
    node.on(
        "suix_getOwnedObjects",
        lambda params: {
            "data": [
                {"data": {"objectId": "0xpkg", "content": {"dataType": "package"}}},
                {"data": {"objectId": "0xcap_x", "content": {"dataType": "moveObject", "fields": {}}}},
                {"error": {"code": "deleted"}},
                {
                    "data": {
                        "objectId": "0xcap_a",
                        "content": {"dataType": "moveObject", "fields": {"channel_id": "0xa"}},
                    }
                },
            ],
            "nextCursor": None,
            "hasNextPage": False,
        },
    )
    cache = MembershipCache(ledger, "0xagent", PACKAGE_ID)

    assert await cache.refresh() == frozenset({"0xa"})
