"""
Membership cache: which channels the agent currently belongs to.

Membership is proven by capability objects owned by the agent's address.
The cache is rebuilt from the ledger every cycle and never merged with
stale entries.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Mapping

import httpx
from pydantic import ValidationError

from channel_agent.client import LedgerClient
from channel_agent.exceptions import MembershipError, RpcError

logger = logging.getLogger(__name__)


def member_cap_type(package_id: str) -> str:
    return f"{package_id}::member_cap::MemberCap"


def _capability_entry(obj: dict[str, Any]) -> tuple[str, str] | None:
    """Extract ``(channel_id, cap_object_id)`` from an owned-object entry."""
    data = obj.get("data") or {}
    content = data.get("content") or {}
    if content.get("dataType") != "moveObject":
        return None
    channel_id = (content.get("fields") or {}).get("channel_id")
    object_id = data.get("objectId")
    if not channel_id or not object_id:
        return None
    return channel_id, object_id


class MembershipCache:
    """Snapshot of ``channel_id -> capability object id`` for the agent."""

    def __init__(self, ledger: LedgerClient, agent_address: str, package_id: str) -> None:
        self._ledger = ledger
        self._agent_address = agent_address
        self._cap_type = member_cap_type(package_id)
        self._caps: Mapping[str, str] = MappingProxyType({})

    async def refresh(self) -> frozenset[str]:
        """Re-enumerate every capability owned by the agent.

        The new mapping replaces the old one in a single assignment; readers
        never observe a partially built set.

        Raises:
            MembershipError: If enumeration fails. The previous snapshot is
                left untouched.
        """
        caps: dict[str, str] = {}
        cursor: str | None = None
        try:
            while True:
                page = await self._ledger.objects.owned(self._agent_address, self._cap_type, cursor)
                for obj in page.data:
                    entry = _capability_entry(obj)
                    if entry:
                        caps[entry[0]] = entry[1]
                if not page.has_next_page or page.next_cursor is None:
                    break
                cursor = page.next_cursor
        except (httpx.HTTPError, RpcError, ValidationError) as exc:
            raise MembershipError(f"Failed to enumerate member capabilities: {exc}") from exc

        previous = self._caps
        self._caps = MappingProxyType(caps)

        added = caps.keys() - previous.keys()
        removed = previous.keys() - caps.keys()
        if added or removed:
            logger.info(
                "Membership changed: %d channel(s) (+%d / -%d)",
                len(caps), len(added), len(removed),
            )
        else:
            logger.debug("Tracking %d channel(s)", len(caps))
        return self.channels

    @property
    def channels(self) -> frozenset[str]:
        return frozenset(self._caps)

    def capability_for(self, channel_id: str) -> str | None:
        """Capability object id for ``channel_id``, or ``None`` if not a member."""
        return self._caps.get(channel_id)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._caps

    def __len__(self) -> int:
        return len(self._caps)
