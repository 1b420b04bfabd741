"""
Command-line entry point.

    channel-agent run [--env-file .env] [--log-level DEBUG] [--no-http]
    channel-agent address
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click

from channel_agent.client import LedgerClient
from channel_agent.config import AgentSettings, load_settings
from channel_agent.context import ConversationContextStore
from channel_agent.credentials import CredentialManager
from channel_agent.decoder import MessageDecoder
from channel_agent.dispatcher import ReplyDispatcher
from channel_agent.events import EventCursorTracker
from channel_agent.exceptions import ConfigError
from channel_agent.membership import MembershipCache
from channel_agent.oracle import OpenAIReplyOracle
from channel_agent.orchestrator import CancellationToken, PollOrchestrator
from channel_agent.server import AgentHttpServer
from channel_agent.wallet import AgentWallet

logger = logging.getLogger("channel_agent")


def build_agent(settings: AgentSettings, wallet: AgentWallet) -> tuple[LedgerClient, PollOrchestrator]:
    """Wire every component from settings. Performs no I/O."""
    ledger = LedgerClient(
        settings.rpc_url,
        settings.gateway_url,
        gateway_api_key=settings.gateway_api_key,
        timeout=settings.request_timeout_seconds,
    )
    address = wallet.address
    membership = MembershipCache(ledger, address, settings.package_id)
    credentials = CredentialManager(
        ledger,
        wallet,
        settings.package_id,
        ttl_minutes=settings.session_ttl_minutes,
        renew_margin_seconds=settings.renew_margin_seconds,
    )
    tracker = EventCursorTracker(
        ledger, membership, address, settings.package_id, page_size=settings.event_page_size
    )
    decoder = MessageDecoder(ledger, address)
    dispatcher = ReplyDispatcher(
        ledger, wallet, membership, finality_timeout=settings.finality_timeout_seconds
    )
    oracle = OpenAIReplyOracle(settings.openai_api_key, model=settings.openai_model)
    orchestrator = PollOrchestrator(
        credentials,
        membership,
        tracker,
        decoder,
        dispatcher,
        ConversationContextStore(settings.history_limit),
        generate_reply=oracle.generate,
        poll_interval=settings.poll_interval_seconds,
        max_reply_chars=settings.max_reply_chars,
        delivery_mode=settings.delivery_mode,
    )
    return ledger, orchestrator


def _load(env_file: str | None) -> tuple[AgentSettings, AgentWallet]:
    try:
        settings = load_settings(env_file)
        wallet = AgentWallet.from_private_key(settings.private_key)
    except ConfigError as exc:
        click.echo(f"Fatal: {exc}", err=True)
        sys.exit(1)
    return settings, wallet


async def _serve(settings: AgentSettings, wallet: AgentWallet, with_http: bool) -> None:
    ledger, orchestrator = build_agent(settings, wallet)
    token = CancellationToken()

    def _request_stop(*_: object) -> None:
        logger.info("Shutting down gracefully (finishing current cycle)...")
        token.cancel()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            signal.signal(sig, _request_stop)

    server: AgentHttpServer | None = None
    if with_http:
        server = AgentHttpServer(
            settings.enoki_api_key,
            settings.enoki_api_base,
            last_report=lambda: orchestrator.last_report,
        )
        await server.start(settings.http_host, settings.http_port)

    logger.info("Agent address: %s", wallet.address)
    try:
        await orchestrator.run(token)
    finally:
        if server is not None:
            await server.stop()
        await ledger.aclose()


@click.group()
def cli() -> None:
    """Encrypted-channel reply agent."""


@cli.command()
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Path to a .env file.")
@click.option("--log-level", default=None, help="Override AGENT_LOG_LEVEL.")
@click.option("--no-http", is_flag=True, help="Do not start the health/sponsorship server.")
def run(env_file: str | None, log_level: str | None, no_http: bool) -> None:
    """Poll channels and reply until interrupted."""
    settings, wallet = _load(env_file)
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    )
    asyncio.run(_serve(settings, wallet, with_http=not no_http))


@cli.command()
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Path to a .env file.")
def address(env_file: str | None) -> None:
    """Print the agent's ledger address."""
    _, wallet = _load(env_file)
    click.echo(wallet.address)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
