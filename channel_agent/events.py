"""
Event cursor tracking over the ledger's message event stream.

The tracker pulls message-module events after a cursor and filters them down
to messages the agent should answer: message-added events in channels the
agent belongs to, not sent by the agent itself, and not older than the
process.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

import httpx
from pydantic import ValidationError

from channel_agent.client import LedgerClient
from channel_agent.exceptions import EventDecodeError, RpcError
from channel_agent.membership import MembershipCache
from channel_agent.types import MESSAGE_ADDED_SUFFIX, ChannelEvent, EventBatch, EventCursor

logger = logging.getLogger(__name__)

MESSAGE_MODULE = "message"


class EventCursorTracker:
    """Fetches new channel-message events since a cursor."""

    def __init__(
        self,
        ledger: LedgerClient,
        membership: MembershipCache,
        agent_address: str,
        package_id: str,
        page_size: int = 50,
        start_time_ms: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._membership = membership
        self._agent_address = agent_address.lower()
        self._package_id = package_id
        self._page_size = page_size
        self.start_time_ms = start_time_ms if start_time_ms is not None else int(clock() * 1000)

    async def initial_cursor(self) -> EventCursor | None:
        """Cursor positioned at "now": the id of the newest message event.

        History before process start is never replayed. Returns ``None`` when
        the stream is still empty.
        """
        page = await self._ledger.events.query(
            self._package_id, MESSAGE_MODULE, cursor=None, limit=1, descending=True
        )
        if not page.data:
            return None
        try:
            return EventCursor(**page.data[0]["id"])
        except (KeyError, TypeError, ValidationError):
            # Fall back to the page cursor, which points at the same event.
            return page.next_cursor

    async def events_since(self, cursor: EventCursor | None) -> EventBatch:
        """Filtered events after ``cursor`` in ascending order.

        On transport failure the batch is empty and ``next_cursor`` echoes the
        input cursor, so the caller never advances on an error.
        """
        try:
            page = await self._ledger.events.query(
                self._package_id, MESSAGE_MODULE, cursor=cursor, limit=self._page_size
            )
        except (httpx.HTTPError, RpcError, ValidationError) as exc:
            logger.error("Error fetching events since %s: %s", cursor, exc)
            return EventBatch(events=[], next_cursor=cursor)

        events = self._filter(page.data)
        if page.data:
            logger.debug(
                "Fetched %d event(s), %d relevant (more pending: %s)",
                len(page.data), len(events), page.has_next_page,
            )
        return EventBatch(events=events, next_cursor=page.next_cursor or cursor)

    def _filter(self, raw_events: list[dict]) -> list[ChannelEvent]:
        channels = self._membership.channels
        kept: list[ChannelEvent] = []
        for raw in raw_events:
            if not str(raw.get("type", "")).endswith(MESSAGE_ADDED_SUFFIX):
                continue
            try:
                event = ChannelEvent.from_ledger_event(raw)
            except EventDecodeError as exc:
                logger.warning("Dropping malformed event %s: %s", raw.get("id"), exc)
                continue
            if event.channel_id not in channels:
                continue
            # Never answer our own replies.
            if event.sender_address.lower() == self._agent_address:
                continue
            if event.timestamp_ms < self.start_time_ms:
                continue
            kept.append(event)
        return kept
