"""
PollOrchestrator: the agent's main loop.

Each cycle walks a fixed sequence of states::

    IDLE → RENEW_CREDENTIAL → REFRESH_MEMBERSHIP → FETCH_EVENTS
         → PROCESS_BATCH → ADVANCE_CURSOR → SLEEP → IDLE

Messages in a batch are handled strictly one after another: decrypt, ask the
reply oracle (with the channel's recent history), record both turns, and
dispatch the reply. The cursor only moves once the batch is done, so a failure
part-way through makes the next cycle fetch the same range again. Delivery is
at-least-once: a message answered before the failure may be answered twice.

Usage::

    orchestrator = PollOrchestrator(
        credentials, membership, tracker, decoder, dispatcher, context,
        generate_reply=oracle.generate,
        poll_interval=10.0,
    )
    token = CancellationToken()
    await orchestrator.run(token)        # token.cancel() from a signal handler
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable

from channel_agent.content_safety import redact_secrets
from channel_agent.context import ConversationContextStore
from channel_agent.credentials import CredentialManager
from channel_agent.decoder import MessageDecoder
from channel_agent.dispatcher import ReplyDispatcher
from channel_agent.events import EventCursorTracker
from channel_agent.exceptions import TRANSIENT_ERRORS
from channel_agent.membership import MembershipCache
from channel_agent.oracle import DEFAULT_MAX_REPLY_CHARS, GenerateReplyFn, truncate_reply
from channel_agent.types import (
    ChannelEvent,
    ConversationRecord,
    CycleReport,
    DeliveryMode,
    EventBatch,
    EventCursor,
)

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    RENEW_CREDENTIAL = "renew_credential"
    REFRESH_MEMBERSHIP = "refresh_membership"
    FETCH_EVENTS = "fetch_events"
    PROCESS_BATCH = "process_batch"
    ADVANCE_CURSOR = "advance_cursor"
    SLEEP = "sleep"
    STOPPED = "stopped"


class CancellationToken:
    """Cooperative stop request, checked at cycle boundaries."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


class PollOrchestrator:
    """Drives credential renewal, polling, replies and cursor advancement.

    The orchestrator is the only caller of ``CredentialManager.get_or_create``
    and registers the decoder and dispatcher as credential dependents.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        membership: MembershipCache,
        tracker: EventCursorTracker,
        decoder: MessageDecoder,
        dispatcher: ReplyDispatcher,
        context: ConversationContextStore,
        generate_reply: GenerateReplyFn,
        *,
        poll_interval: float = 10.0,
        max_reply_chars: int = DEFAULT_MAX_REPLY_CHARS,
        delivery_mode: DeliveryMode = DeliveryMode.BATCH,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._membership = membership
        self._tracker = tracker
        self._decoder = decoder
        self._dispatcher = dispatcher
        self._context = context
        self._generate_reply = generate_reply
        self._poll_interval = poll_interval
        self._max_reply_chars = max_reply_chars
        self._delivery_mode = delivery_mode
        self._clock = clock

        self._credentials.register(decoder)
        self._credentials.register(dispatcher)

        self._state = CycleState.IDLE
        self._cursor: EventCursor | None = None
        self._cursor_ready = False
        self._last_report: CycleReport | None = None
        self._token = CancellationToken()

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def cursor(self) -> EventCursor | None:
        return self._cursor

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    def stop(self) -> None:
        """Request shutdown after the current cycle."""
        self._token.cancel()

    def _set_state(self, state: CycleState) -> None:
        self._state = state
        logger.debug("state → %s", state.value)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ================================================================
    #  Loop
    # ================================================================

    async def run(self, token: CancellationToken | None = None) -> None:
        """Run cycles at a fixed interval until cancelled.

        Cancellation is honoured between cycles; a cycle that has started
        always runs to completion.
        """
        if token is not None:
            self._token = token
        token = self._token
        logger.info("Starting message polling loop (interval %.1fs)", self._poll_interval)

        while not token.cancelled:
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Unexpected error in poll cycle, retrying next cycle")
                self._set_state(CycleState.IDLE)
            if token.cancelled:
                break
            self._set_state(CycleState.SLEEP)
            if await token.sleep(self._poll_interval):
                break
            self._set_state(CycleState.IDLE)

        self._set_state(CycleState.STOPPED)
        logger.info("Polling loop stopped")

    async def run_cycle(self) -> CycleReport:
        """Run a single poll cycle and return its report."""
        report = CycleReport(started_at_ms=self._now_ms())
        try:
            self._set_state(CycleState.RENEW_CREDENTIAL)
            await self._credentials.get_or_create()

            self._set_state(CycleState.REFRESH_MEMBERSHIP)
            await self._membership.refresh()

            self._set_state(CycleState.FETCH_EVENTS)
            if not self._cursor_ready:
                self._cursor = await self._tracker.initial_cursor()
                self._cursor_ready = True
                logger.info("Starting from latest cursor (skipping historical messages)")
            batch = await self._tracker.events_since(self._cursor)
        except TRANSIENT_ERRORS as exc:
            logger.error("Cycle aborted during %s: %s", self._state.value, exc)
            report.error = str(exc)
            return self._finish(report)

        report.fetched = len(batch.events)
        if batch.events:
            logger.info("Found %d new message(s)", len(batch.events))

        self._set_state(CycleState.PROCESS_BATCH)
        advance, target = await self._process_batch(batch, report)

        self._set_state(CycleState.ADVANCE_CURSOR)
        if advance and target != self._cursor:
            self._cursor = target
            report.cursor_advanced = True
        elif not advance:
            logger.warning("Cursor held at %s; unfinished messages will be refetched", self._cursor)
        return self._finish(report)

    def _finish(self, report: CycleReport) -> CycleReport:
        report.finished_at_ms = self._now_ms()
        self._last_report = report
        self._set_state(CycleState.IDLE)
        return report

    # ================================================================
    #  Batch processing
    # ================================================================

    async def _process_batch(
        self,
        batch: EventBatch,
        report: CycleReport,
    ) -> tuple[bool, EventCursor | None]:
        """Handle events in order. Returns ``(advance, target_cursor)``."""
        last_done: EventCursor | None = None
        for event in batch.events:
            try:
                handled = await self._handle_event(event)
            except Exception as exc:
                report.failed += 1
                report.error = str(exc)
                logger.error(
                    "Failed to reply to message %d in channel %s: %s",
                    event.message_index, event.channel_id, exc,
                )
                if self._delivery_mode is DeliveryMode.PER_MESSAGE and last_done is not None:
                    return True, last_done
                return False, None
            if handled:
                report.processed += 1
            else:
                report.skipped += 1
            last_done = event.id
        return True, batch.next_cursor

    async def _handle_event(self, event: ChannelEvent) -> bool:
        """Reply to one event. Returns False if the event was skipped."""
        message = await self._decoder.decode(event)
        if message is None:
            logger.info(
                "Skipping undecodable message %d in channel %s",
                event.message_index, event.channel_id,
            )
            return False

        logger.info(
            "Processing message %d from %s in channel %s",
            message.message_index, message.sender_address[:10], message.channel_id[:10],
        )
        history = self._context.recent(message.channel_id)
        reply = await self._generate_reply(message.text, history)
        reply = truncate_reply(redact_secrets(reply or ""), self._max_reply_chars)
        if not reply:
            logger.warning("Empty reply for message %d, not sending", message.message_index)
            return False

        self._context.append(message.channel_id, ConversationRecord(role="user", text=message.text))
        self._context.append(message.channel_id, ConversationRecord(role="agent", text=reply))
        try:
            await self._dispatcher.send(message.channel_id, reply)
        except Exception:
            # The message is refetched after a failed send; drop the undelivered turns.
            self._context.replace(message.channel_id, history)
            raise
        return True
