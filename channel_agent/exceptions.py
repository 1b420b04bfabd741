"""
Exception hierarchy for the channel agent runtime.

Errors fall into three groups, matching how the poll loop reacts to them:

* transient-cycle errors (``MembershipError``, ``CredentialError``, transport
  failures) abort the current cycle and are retried on the next one;
* per-message errors (``DispatchError`` and friends, ``ReplyGenerationError``)
  stop the batch so its cursor is not advanced past unfinished work;
* ``ConfigError`` is fatal at startup.
"""

from __future__ import annotations

import httpx
from pydantic import ValidationError


class AgentError(Exception):
    """Base class for every error raised by the runtime."""


class ConfigError(AgentError):
    """Missing or unparsable configuration (agent key, settings)."""


class RpcError(AgentError):
    """The ledger node answered a JSON-RPC call with an error object."""

    def __init__(self, method: str, code: int | None, message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.message = message


class MembershipError(AgentError):
    """Enumerating the agent's channel capabilities failed."""


class CredentialError(AgentError):
    """A session credential could not be issued, signed, or is unusable."""


class EventDecodeError(AgentError):
    """A ledger event did not match the expected message-added schema."""


class DispatchError(AgentError):
    """Sending a reply to a channel failed."""

    def __init__(self, channel_id: str, message: str) -> None:
        super().__init__(message)
        self.channel_id = channel_id


class NotAMemberError(DispatchError):
    def __init__(self, channel_id: str) -> None:
        super().__init__(channel_id, f"Not a member of channel {channel_id}")


class NoEncryptionKeyError(DispatchError):
    def __init__(self, channel_id: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(channel_id, f"No encryption key for channel {channel_id}{detail}")


class SendFailedError(DispatchError):
    def __init__(self, channel_id: str, digest: str, status: str, error: str | None = None) -> None:
        detail = f" ({error})" if error else ""
        super().__init__(channel_id, f"Send failed for tx {digest}: {status}{detail}")
        self.digest = digest
        self.status = status


class ReplyGenerationError(AgentError):
    """The reply oracle failed or produced no usable text."""


# Caught at the cycle boundary by the poll orchestrator. ValidationError covers
# ledger responses that do not match the expected page shapes.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (httpx.HTTPError, AgentError, ValidationError)
