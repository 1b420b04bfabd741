"""
Tests for CredentialManager: issuance, freshness, renewal and propagation.
"""

from __future__ import annotations

import base64
import json

import httpx
import pytest
import respx

from channel_agent.client import LedgerClient
from channel_agent.credentials import CredentialManager
from channel_agent.exceptions import CredentialError
from channel_agent.types import Credential
from channel_agent.wallet import AgentWallet

from conftest import GATEWAY_URL, PACKAGE_ID, Clock

CHALLENGE_URL = f"{GATEWAY_URL}/v1/session/challenge"


class Recorder:
    """Credential dependent that records every update."""

    def __init__(self) -> None:
        self.received: list[Credential] = []

    def update_credential(self, credential: Credential) -> None:
        self.received.append(credential)


def _challenge_route(router: respx.MockRouter, clock: Clock, ttl: int = 30) -> respx.Route:
    counter = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        counter["n"] += 1
        return httpx.Response(
            200,
            json={
                "sessionId": f"sess-{counter['n']}",
                "personalMessage": base64.b64encode(b"challenge").decode(),
                "creationTimeMs": str(int(clock() * 1000)),
                "ttlMin": ttl,
            },
        )

    return router.post(CHALLENGE_URL).mock(side_effect=handler)


@pytest.mark.asyncio
async def test_first_call_issues_credential(
    router: respx.MockRouter, ledger: LedgerClient, wallet: AgentWallet, clock: Clock
) -> None:
    """The first call requests and signs a challenge for the agent address."""
    route = _challenge_route(router, clock)
    manager = CredentialManager(ledger, wallet, PACKAGE_ID, ttl_minutes=30, clock=clock)

    credential = await manager.get_or_create()

    body = json.loads(route.calls.last.request.content)
    assert body == {"address": wallet.address, "packageId": PACKAGE_ID, "ttlMin": 30}
    assert credential.owner_address == wallet.address
    assert credential.scope == PACKAGE_ID
    assert credential.session_id == "sess-1"
    assert credential.personal_message == b"challenge"
    assert base64.b64decode(credential.signature)[0] == 0x01
    assert manager.active is credential


@pytest.mark.asyncio
async def test_fresh_credential_is_reused(
    router: respx.MockRouter, ledger: LedgerClient, wallet: AgentWallet, clock: Clock
) -> None:
    """No new challenge is requested while the credential is outside the margin."""
    route = _challenge_route(router, clock)
    manager = CredentialManager(ledger, wallet, PACKAGE_ID, renew_margin_seconds=60, clock=clock)

    first = await manager.get_or_create()
    clock.advance(28 * 60)
    second = await manager.get_or_create()

    assert second is first
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_renews_inside_margin(
    router: respx.MockRouter, ledger: LedgerClient, wallet: AgentWallet, clock: Clock
) -> None:
    """A credential within the renewal margin of expiry is replaced."""
    route = _challenge_route(router, clock)
    manager = CredentialManager(ledger, wallet, PACKAGE_ID, renew_margin_seconds=60, clock=clock)

    first = await manager.get_or_create()
    clock.advance(29 * 60 + 1)
    second = await manager.get_or_create()

    assert second is not first
    assert second.session_id == "sess-2"
    assert second.expires_at_ms > first.expires_at_ms
    assert route.call_count == 2
    assert manager.renewals == 2


@pytest.mark.asyncio
async def test_renewal_reaches_dependents(
    router: respx.MockRouter, ledger: LedgerClient, wallet: AgentWallet, clock: Clock
) -> None:
    """Every registered dependent receives each new credential."""
    _challenge_route(router, clock)
    manager = CredentialManager(ledger, wallet, PACKAGE_ID, clock=clock)
    decoder, dispatcher = Recorder(), Recorder()
    manager.register(decoder)
    manager.register(dispatcher)

    first = await manager.get_or_create()
    clock.advance(31 * 60)
    second = await manager.get_or_create()

    assert decoder.received == [first, second]
    assert dispatcher.received == [first, second]


@pytest.mark.asyncio
async def test_late_registration_gets_active(
    router: respx.MockRouter, ledger: LedgerClient, wallet: AgentWallet, clock: Clock
) -> None:
    """A dependent registered after issuance is handed the active credential."""
    _challenge_route(router, clock)
    manager = CredentialManager(ledger, wallet, PACKAGE_ID, clock=clock)
    credential = await manager.get_or_create()

    late = Recorder()
    manager.register(late)

    assert late.received == [credential]


@pytest.mark.asyncio
async def test_issue_failure_raises_and_keeps_old(
    router: respx.MockRouter, ledger: LedgerClient, wallet: AgentWallet, clock: Clock
) -> None:
    """Gateway failures raise CredentialError and leave the old credential active."""
    route = _challenge_route(router, clock)
    manager = CredentialManager(ledger, wallet, PACKAGE_ID, clock=clock)
    first = await manager.get_or_create()

    route.mock(side_effect=None, return_value=httpx.Response(500, json={"error": "down"}))
    clock.advance(30 * 60)
    with pytest.raises(CredentialError):
        await manager.get_or_create()

    assert manager.active is first
    assert manager.needs_renewal()


@pytest.mark.asyncio
async def test_malformed_challenge_raises(
    router: respx.MockRouter, ledger: LedgerClient, wallet: AgentWallet, clock: Clock
) -> None:
    """A challenge missing required fields is a CredentialError."""
    router.post(CHALLENGE_URL).mock(return_value=httpx.Response(200, json={"sessionId": "s"}))
    manager = CredentialManager(ledger, wallet, PACKAGE_ID, clock=clock)

    with pytest.raises(CredentialError):
        await manager.get_or_create()
    assert manager.active is None


@pytest.mark.asyncio
async def test_short_lived_credential_rejected(
    router: respx.MockRouter, ledger: LedgerClient, wallet: AgentWallet, clock: Clock
) -> None:
    """A credential that would already need renewal is refused."""
    _challenge_route(router, clock, ttl=1)
    manager = CredentialManager(ledger, wallet, PACKAGE_ID, renew_margin_seconds=120, clock=clock)

    with pytest.raises(CredentialError, match="renewal margin"):
        await manager.get_or_create()
