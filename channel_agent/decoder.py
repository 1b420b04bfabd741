"""
Message decoder: resolves a channel message reference to plaintext.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

import httpx
from pydantic import ValidationError

from channel_agent.client import LedgerClient
from channel_agent.exceptions import AgentError
from channel_agent.types import ChannelEvent, Credential, DecryptedMessage

logger = logging.getLogger(__name__)


class MessageDecoder:
    """Decrypts channel messages with the active session credential.

    Failures are logged and reported as ``None``; a message that cannot be
    decoded is skipped by the caller, never fatal to the cycle.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        agent_address: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._agent_address = agent_address
        self._clock = clock
        self._credential: Credential | None = None

    def update_credential(self, credential: Credential) -> None:
        self._credential = credential

    async def decrypt(self, channel_id: str, message_index: int) -> str | None:
        credential = self._credential
        if credential is None or not credential.is_valid(int(self._clock() * 1000)):
            logger.warning(
                "No valid credential to decrypt message %d in channel %s",
                message_index, channel_id,
            )
            return None
        try:
            text = await self._ledger.messaging.decrypt(
                credential, self._agent_address, channel_id, message_index
            )
        except (httpx.HTTPError, AgentError, ValidationError) as exc:
            logger.error(
                "Failed to decrypt message %d in channel %s: %s",
                message_index, channel_id, exc,
            )
            return None
        if not text:
            logger.warning("Message %d in channel %s has no text content", message_index, channel_id)
            return None
        return text

    async def decode(self, event: ChannelEvent) -> DecryptedMessage | None:
        text = await self.decrypt(event.channel_id, event.message_index)
        if text is None:
            return None
        return DecryptedMessage(
            channel_id=event.channel_id,
            sender_address=event.sender_address,
            text=text,
            timestamp_ms=event.timestamp_ms,
            message_index=event.message_index,
            key_version=event.key_version,
        )
