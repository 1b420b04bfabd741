"""
Pydantic models for the channel agent runtime.

Wire payloads from the ledger node and the messaging gateway use camelCase
(or the ledger's snake_case Move field names); models expose snake_case
attributes and validate at the deserialization boundary.
"""

from __future__ import annotations

import base64
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from channel_agent.exceptions import EventDecodeError

# Ledger JSON carries u64/u256 values as decimal strings. They are converted
# to int exactly once, here.
WideInt = Annotated[int, Field(ge=0)]

MESSAGE_ADDED_SUFFIX = "MessageAddedEvent"


def _decode_bytes(value: Any) -> Any:
    """Accept raw bytes, a list of byte values, or a base64 string."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, str):
        return base64.b64decode(value)
    return value


# ============================================================
#  Event stream
# ============================================================


class EventCursor(BaseModel):
    """Position in the ledger event stream (the id of an event)."""

    tx_digest: str = Field(alias="txDigest")
    event_seq: str = Field(alias="eventSeq")

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("event_seq", mode="before")
    @classmethod
    def _seq_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    def to_rpc(self) -> dict[str, str]:
        return {"txDigest": self.tx_digest, "eventSeq": self.event_seq}


class MessageAddedPayload(BaseModel):
    """``parsedJson`` of a message-added event."""

    channel_id: str
    sender: str
    message_index: WideInt
    key_version: WideInt = 0


class ChannelEvent(BaseModel):
    """A message-added event addressed to some channel."""

    id: EventCursor
    channel_id: str
    sender_address: str
    message_index: WideInt
    key_version: WideInt
    timestamp_ms: WideInt
    event_kind: str

    @classmethod
    def from_ledger_event(cls, raw: dict[str, Any]) -> ChannelEvent:
        """Build a ChannelEvent from a raw ``suix_queryEvents`` entry.

        Raises:
            EventDecodeError: If the envelope or payload is malformed.
        """
        try:
            payload = MessageAddedPayload(**(raw.get("parsedJson") or {}))
            return cls(
                id=EventCursor(**raw["id"]),
                channel_id=payload.channel_id,
                sender_address=payload.sender,
                message_index=payload.message_index,
                key_version=payload.key_version,
                timestamp_ms=raw.get("timestampMs") or 0,
                event_kind=raw["type"],
            )
        except (KeyError, TypeError, ValidationError) as exc:
            raise EventDecodeError(f"Malformed message event: {exc}") from exc


class EventPage(BaseModel):
    """One raw page of ``suix_queryEvents``."""

    data: list[dict[str, Any]] = []
    next_cursor: EventCursor | None = Field(None, alias="nextCursor")
    has_next_page: bool = Field(False, alias="hasNextPage")

    model_config = {"populate_by_name": True}


class OwnedObjectPage(BaseModel):
    """One raw page of ``suix_getOwnedObjects``."""

    data: list[dict[str, Any]] = []
    next_cursor: str | None = Field(None, alias="nextCursor")
    has_next_page: bool = Field(False, alias="hasNextPage")

    model_config = {"populate_by_name": True}


class EventBatch(BaseModel):
    """Filtered events since a cursor, plus the cursor to resume from."""

    events: list[ChannelEvent] = []
    next_cursor: EventCursor | None = None


# ============================================================
#  Credentials
# ============================================================


class SessionChallenge(BaseModel):
    """Unsigned session challenge handed out by the issuing authority."""

    session_id: str = Field(alias="sessionId")
    personal_message: bytes = Field(alias="personalMessage")
    creation_time_ms: WideInt = Field(alias="creationTimeMs")
    ttl_minutes: int = Field(alias="ttlMin")

    model_config = {"populate_by_name": True}

    @field_validator("personal_message", mode="before")
    @classmethod
    def _decode_message(cls, value: Any) -> Any:
        return _decode_bytes(value)


class Credential(BaseModel):
    """Time-limited signed session credential used to decrypt and send."""

    owner_address: str
    scope: str
    issued_at_ms: WideInt
    ttl_minutes: int
    signature: str
    session_id: str
    personal_message: bytes = b""

    model_config = {"frozen": True}

    @property
    def expires_at_ms(self) -> int:
        return self.issued_at_ms + self.ttl_minutes * 60_000

    def is_valid(self, now_ms: int) -> bool:
        return now_ms < self.expires_at_ms

    def export(self) -> dict[str, Any]:
        """Wire form attached to gateway decrypt / prepare requests."""
        return {
            "sessionId": self.session_id,
            "address": self.owner_address,
            "packageId": self.scope,
            "creationTimeMs": self.issued_at_ms,
            "ttlMin": self.ttl_minutes,
            "personalMessageSignature": self.signature,
        }


# ============================================================
#  Messages
# ============================================================


class DecryptedMessage(BaseModel):
    """Plaintext of one channel message. Never persisted."""

    channel_id: str
    sender_address: str
    text: str
    timestamp_ms: WideInt
    message_index: WideInt
    key_version: WideInt


class ConversationRecord(BaseModel):
    """One turn of per-channel conversation history."""

    role: Literal["user", "agent"]
    text: str


class EncryptionKeyRef(BaseModel):
    """Latest encrypted channel key. Fetched per send, never cached."""

    channel_id: str
    encrypted_key_bytes: bytes
    key_version: WideInt

    @field_validator("encrypted_key_bytes", mode="before")
    @classmethod
    def _decode_key(cls, value: Any) -> Any:
        return _decode_bytes(value)

    def to_wire(self) -> dict[str, Any]:
        return {
            "$kind": "Encrypted",
            "encryptedBytes": base64.b64encode(self.encrypted_key_bytes).decode("ascii"),
            "version": self.key_version,
        }


class SendConfirmation(BaseModel):
    """A reply transaction that reached finality."""

    channel_id: str
    digest: str
    status: str


# ============================================================
#  Orchestration
# ============================================================


class DeliveryMode(str, Enum):
    """How far the cursor may advance when a batch stops on an error."""

    BATCH = "batch"
    PER_MESSAGE = "per_message"


class CycleReport(BaseModel):
    """Outcome of one poll cycle."""

    started_at_ms: int
    finished_at_ms: int | None = None
    fetched: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    cursor_advanced: bool = False
    error: str | None = None
