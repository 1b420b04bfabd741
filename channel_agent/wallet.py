"""
Agent wallet: a secp256k1 key that owns the agent's ledger address.

Signatures follow the ledger's intent-message scheme::

    digest    = blake2b-256(intent || payload)
    signature = secp256k1(sha256(digest))          # 64-byte r || s, low-s
    wire      = base64(0x01 || signature || compressed_pubkey)

``eth-account`` does the ECDSA part; everything around it is framing.
"""

from __future__ import annotations

import base64
import hashlib

from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import decode_hex

from channel_agent.exceptions import ConfigError

SECP256K1_FLAG = 0x01
BECH32_KEY_PREFIX = "suiprivkey"

# Intent prefixes: (scope, version, app_id)
TRANSACTION_INTENT = bytes([0, 0, 0])
PERSONAL_MESSAGE_INTENT = bytes([3, 0, 0])


def _uleb128(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class AgentWallet:
    """Holds the agent's private key and produces ledger signatures."""

    def __init__(self, private_key: bytes) -> None:
        if len(private_key) != 32:
            raise ConfigError("Agent private key must be 32 bytes")
        try:
            self._public_key = keys.PrivateKey(private_key).public_key.to_compressed_bytes()
        except (KeyValidationError, ValueError) as exc:
            raise ConfigError(f"Invalid agent private key: {exc}") from exc
        self._private_key = private_key
        self._address = "0x" + _blake2b256(bytes([SECP256K1_FLAG]) + self._public_key).hex()

    @classmethod
    def from_private_key(cls, private_key: str | None) -> AgentWallet:
        """Parse a hex-encoded (optionally ``0x``-prefixed) secp256k1 key.

        Raises:
            ConfigError: If the key is missing or cannot be parsed.
        """
        if not private_key or not private_key.strip():
            raise ConfigError("Agent private key is not set")
        if private_key.strip().lower().startswith(BECH32_KEY_PREFIX):
            raise ConfigError(
                "Bech32 suiprivkey keys (Ed25519 wallet exports) are not supported; "
                "set a hex secp256k1 key"
            )
        try:
            raw = decode_hex(private_key.strip())
        except ValueError as exc:
            raise ConfigError("Agent private key is not valid hex") from exc
        return cls(raw)

    @property
    def address(self) -> str:
        """Ledger address derived from the compressed public key."""
        return self._address

    @property
    def public_key(self) -> bytes:
        return self._public_key

    def sign_personal_message(self, message: bytes) -> str:
        """Sign an arbitrary message (e.g. a session challenge)."""
        payload = _uleb128(len(message)) + message
        return self._sign(PERSONAL_MESSAGE_INTENT + payload)

    def sign_transaction(self, tx_bytes: bytes) -> str:
        """Sign serialized transaction bytes for submission."""
        return self._sign(TRANSACTION_INTENT + tx_bytes)

    def _sign(self, intent_message: bytes) -> str:
        digest = _blake2b256(intent_message)
        signed = Account.unsafe_sign_hash(hashlib.sha256(digest).digest(), self._private_key)
        compact = signed.r.to_bytes(32, "big") + signed.s.to_bytes(32, "big")
        serialized = bytes([SECP256K1_FLAG]) + compact + self._public_key
        return base64.b64encode(serialized).decode("ascii")

    def __repr__(self) -> str:
        return f"AgentWallet(address={self._address!r})"
