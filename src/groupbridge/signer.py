"""Wallet signing for the server-held registration path."""

from __future__ import annotations

import binascii
import logging
from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .errors import InvalidSignature

logger = logging.getLogger(__name__)


class Signer(Protocol):
    address: str

    async def sign(self, text: str) -> bytes: ...


class WalletSigner:
    """Signs challenge text as an EIP-191 personal message."""

    def __init__(self, account: LocalAccount) -> None:
        self._account = account
        self.address = account.address.lower()

    async def sign(self, text: str) -> bytes:
        signed = self._account.sign_message(encode_defunct(text=text))
        return bytes(signed.signature)


def load_signer(private_key: str | None) -> WalletSigner:
    if private_key:
        account = Account.from_key(private_key)
    else:
        account = Account.create()
        logger.warning("KEY not set. Using a random, ephemeral private key.")
        logger.warning("Random private key: 0x%s", bytes(account.key).hex())
    logger.info("Initialized wallet %s", account.address)
    return WalletSigner(account)


def decode_signature(value: object) -> bytes:
    """Decode a caller supplied ``0x`` prefixed hex signature."""

    if not isinstance(value, str) or not value.strip():
        raise InvalidSignature("signature required")
    text = value.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    try:
        signature = binascii.unhexlify(text)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSignature("signature must be hex encoded") from exc
    if not signature:
        raise InvalidSignature("signature required")
    return signature
