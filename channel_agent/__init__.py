"""
Channel agent runtime.

An async agent that watches the ledger's message event stream for new
encrypted messages in channels it belongs to, decrypts them, asks a reply
oracle for an answer and publishes the answer back onto the same channel as
a signed transaction.

Example::

    from channel_agent import (
        AgentWallet, LedgerClient, MembershipCache, CredentialManager,
        EventCursorTracker, MessageDecoder, ReplyDispatcher,
        ConversationContextStore, OpenAIReplyOracle, PollOrchestrator,
        CancellationToken,
    )

    wallet = AgentWallet.from_private_key("0x...")
    ledger = LedgerClient("https://fullnode.testnet.sui.io:443", "http://localhost:4100")
    membership = MembershipCache(ledger, wallet.address, PACKAGE_ID)
    orchestrator = PollOrchestrator(
        CredentialManager(ledger, wallet, PACKAGE_ID),
        membership,
        EventCursorTracker(ledger, membership, wallet.address, PACKAGE_ID),
        MessageDecoder(ledger, wallet.address),
        ReplyDispatcher(ledger, wallet, membership),
        ConversationContextStore(),
        generate_reply=OpenAIReplyOracle(api_key).generate,
    )
    await orchestrator.run(CancellationToken())
"""

from channel_agent.client import LedgerClient
from channel_agent.config import AgentSettings, load_settings
from channel_agent.context import ConversationContextStore
from channel_agent.credentials import CredentialManager
from channel_agent.decoder import MessageDecoder
from channel_agent.dispatcher import ReplyDispatcher
from channel_agent.events import EventCursorTracker
from channel_agent.exceptions import (
    AgentError,
    ConfigError,
    CredentialError,
    DispatchError,
    EventDecodeError,
    MembershipError,
    NoEncryptionKeyError,
    NotAMemberError,
    ReplyGenerationError,
    RpcError,
    SendFailedError,
)
from channel_agent.membership import MembershipCache
from channel_agent.oracle import GenerateReplyFn, OpenAIReplyOracle, truncate_reply
from channel_agent.orchestrator import CancellationToken, CycleState, PollOrchestrator
from channel_agent.server import AgentHttpServer
from channel_agent.types import (
    ChannelEvent,
    ConversationRecord,
    Credential,
    CycleReport,
    DecryptedMessage,
    DeliveryMode,
    EncryptionKeyRef,
    EventBatch,
    EventCursor,
    SendConfirmation,
)
from channel_agent.wallet import AgentWallet

__all__ = [
    "AgentWallet",
    "LedgerClient",
    "AgentSettings",
    "load_settings",
    "MembershipCache",
    "CredentialManager",
    "EventCursorTracker",
    "MessageDecoder",
    "ReplyDispatcher",
    "ConversationContextStore",
    "OpenAIReplyOracle",
    "GenerateReplyFn",
    "truncate_reply",
    "PollOrchestrator",
    "CancellationToken",
    "CycleState",
    "AgentHttpServer",
    "ChannelEvent",
    "ConversationRecord",
    "Credential",
    "CycleReport",
    "DecryptedMessage",
    "DeliveryMode",
    "EncryptionKeyRef",
    "EventBatch",
    "EventCursor",
    "SendConfirmation",
    "AgentError",
    "ConfigError",
    "CredentialError",
    "DispatchError",
    "EventDecodeError",
    "MembershipError",
    "NoEncryptionKeyError",
    "NotAMemberError",
    "ReplyGenerationError",
    "RpcError",
    "SendFailedError",
]

__version__ = "0.1.0"
