"""
Session credential lifecycle.

A credential is a signed, time-limited session key scoped to the messaging
package. The manager owns the single active credential for the process and
pushes every renewal to the components that hold a reference to it.

Renewal is not safe for concurrent callers: ``get_or_create()`` must only be
called from the poll orchestrator, once per cycle.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Protocol

import httpx
from pydantic import ValidationError

from channel_agent.client import LedgerClient
from channel_agent.exceptions import AgentError, CredentialError
from channel_agent.types import Credential
from channel_agent.wallet import AgentWallet

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30
DEFAULT_RENEW_MARGIN_SECONDS = 60.0


class CredentialDependent(Protocol):
    def update_credential(self, credential: Credential) -> None: ...


class CredentialManager:
    """Issues, caches and renews the agent's session credential."""

    def __init__(
        self,
        ledger: LedgerClient,
        wallet: AgentWallet,
        package_id: str,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        renew_margin_seconds: float = DEFAULT_RENEW_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._wallet = wallet
        self._package_id = package_id
        self._ttl_minutes = ttl_minutes
        self._margin_ms = int(renew_margin_seconds * 1000)
        self._clock = clock
        self._active: Credential | None = None
        self._dependents: list[CredentialDependent] = []
        self.renewals = 0

    @property
    def active(self) -> Credential | None:
        return self._active

    def register(self, dependent: CredentialDependent) -> None:
        """Add a component that must receive every renewed credential."""
        self._dependents.append(dependent)
        if self._active is not None:
            dependent.update_credential(self._active)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def needs_renewal(self) -> bool:
        cred = self._active
        return cred is None or self._now_ms() >= cred.expires_at_ms - self._margin_ms

    async def get_or_create(self) -> Credential:
        """Return the active credential, renewing it if it is near expiry.

        On renewal the new credential replaces the old one and is pushed to
        every registered dependent before this method returns.

        Raises:
            CredentialError: If a challenge cannot be obtained or signed.
        """
        if not self.needs_renewal():
            assert self._active is not None
            return self._active

        credential = await self._issue()
        self._active = credential
        for dependent in self._dependents:
            dependent.update_credential(credential)
        self.renewals += 1
        logger.info(
            "Session credential %s (expires in %.0fs)",
            "renewed" if self.renewals > 1 else "created",
            (credential.expires_at_ms - self._now_ms()) / 1000,
        )
        return credential

    async def _issue(self) -> Credential:
        address = self._wallet.address
        try:
            challenge = await self._ledger.messaging.request_challenge(
                address, self._package_id, self._ttl_minutes
            )
            signature = self._wallet.sign_personal_message(challenge.personal_message)
        except (httpx.HTTPError, AgentError, ValidationError, ValueError) as exc:
            raise CredentialError(f"Failed to create session credential: {exc}") from exc

        credential = Credential(
            owner_address=address,
            scope=self._package_id,
            issued_at_ms=challenge.creation_time_ms or self._now_ms(),
            ttl_minutes=challenge.ttl_minutes or self._ttl_minutes,
            signature=signature,
            session_id=challenge.session_id,
            personal_message=challenge.personal_message,
        )
        if self._now_ms() >= credential.expires_at_ms - self._margin_ms:
            raise CredentialError("Issued credential is already inside its renewal margin")
        return credential
