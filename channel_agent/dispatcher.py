"""
Reply dispatcher: publishes a reply onto a channel as a signed transaction.

A send is a chain of independent steps, any of which fails the whole send:

1. resolve the agent's capability for the channel;
2. read the channel's latest encrypted key (fresh every send, keys rotate);
3. have the messaging gateway build the encrypt-and-append transaction with
   the agent as sender;
4. sign it with the agent wallet and submit it;
5. wait for finality and check the execution status.

There is no retry here. The orchestrator decides what a failed send means
for the cursor.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx
from pydantic import ValidationError

from channel_agent.client import LedgerClient
from channel_agent.exceptions import (
    AgentError,
    CredentialError,
    NoEncryptionKeyError,
    NotAMemberError,
    SendFailedError,
)
from channel_agent.membership import MembershipCache
from channel_agent.types import Credential, EncryptionKeyRef, SendConfirmation
from channel_agent.wallet import AgentWallet

logger = logging.getLogger(__name__)


def _struct_fields(value: Any) -> dict[str, Any]:
    """Unwrap a nested Move struct (``{"type": ..., "fields": {...}}``)."""
    if isinstance(value, dict) and isinstance(value.get("fields"), dict):
        return value["fields"]
    return value if isinstance(value, dict) else {}


def encryption_key_from_channel(channel_id: str, data: dict[str, Any]) -> EncryptionKeyRef:
    """Build an ``EncryptionKeyRef`` from a channel object's content."""
    fields = _struct_fields((data.get("content") or {}).get("fields"))
    history = _struct_fields(fields.get("encryption_key_history"))
    latest = history.get("latest")
    version = history.get("latest_version")
    if not latest or version is None:
        raise NoEncryptionKeyError(channel_id, "channel has no key history")
    try:
        return EncryptionKeyRef(
            channel_id=channel_id,
            encrypted_key_bytes=latest,
            key_version=version,
        )
    except ValidationError as exc:
        raise NoEncryptionKeyError(channel_id, "malformed key history") from exc


def _execution_status(result: dict[str, Any] | None) -> tuple[str | None, str | None]:
    status = ((result or {}).get("effects") or {}).get("status") or {}
    return status.get("status"), status.get("error")


class ReplyDispatcher:
    """Builds, signs, submits and confirms reply transactions."""

    def __init__(
        self,
        ledger: LedgerClient,
        wallet: AgentWallet,
        membership: MembershipCache,
        finality_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._wallet = wallet
        self._membership = membership
        self._finality_timeout = finality_timeout
        self._clock = clock
        self._credential: Credential | None = None

    def update_credential(self, credential: Credential) -> None:
        self._credential = credential

    async def send(self, channel_id: str, text: str) -> SendConfirmation:
        """Send ``text`` to ``channel_id`` and wait for finality.

        Raises:
            NotAMemberError: The agent holds no capability for the channel.
            NoEncryptionKeyError: The channel object or its key is unreadable.
            SendFailedError: The transaction did not execute successfully.
            CredentialError: No valid session credential is installed.
            httpx.HTTPError / AgentError: Transport or gateway failures.
        """
        credential = self._credential
        if credential is None or not credential.is_valid(int(self._clock() * 1000)):
            raise CredentialError("No valid session credential for sending")

        member_cap_id = self._membership.capability_for(channel_id)
        if not member_cap_id:
            raise NotAMemberError(channel_id)

        key_ref = await self._resolve_key(channel_id)

        logger.info("Sending reply to channel %s (%d chars)", channel_id, len(text))
        tx_bytes = await self._ledger.messaging.prepare_send(
            credential,
            sender=self._wallet.address,
            channel_id=channel_id,
            member_cap_id=member_cap_id,
            text=text,
            key_ref=key_ref,
        )
        signature = self._wallet.sign_transaction(tx_bytes)
        submitted = await self._ledger.transactions.execute(tx_bytes, signature)
        digest = (submitted or {}).get("digest")
        if not digest:
            raise SendFailedError(channel_id, "<none>", "not submitted")

        status, error = _execution_status(submitted)
        if status is not None and status != "success":
            raise SendFailedError(channel_id, digest, status, error)

        try:
            final = await self._ledger.transactions.wait_for(digest, timeout=self._finality_timeout)
        except TimeoutError as exc:
            raise SendFailedError(channel_id, digest, "timeout") from exc
        status, error = _execution_status(final)
        if status != "success":
            raise SendFailedError(channel_id, digest, status or "unknown", error)

        logger.info("Reply sent to channel %s (tx: %s)", channel_id, digest)
        return SendConfirmation(channel_id=channel_id, digest=digest, status=status)

    async def _resolve_key(self, channel_id: str) -> EncryptionKeyRef:
        try:
            data = await self._ledger.objects.get(channel_id)
        except (httpx.HTTPError, AgentError) as exc:
            raise NoEncryptionKeyError(channel_id, str(exc)) from exc
        return encryption_key_from_channel(channel_id, data)
