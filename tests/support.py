import asyncio
from typing import Callable

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from groupbridge.sessions import IdentitySession, SessionStore


def new_wallet() -> LocalAccount:
    return Account.create()


def address_of(account: LocalAccount) -> str:
    return account.address.lower()


def sign_hex(account: LocalAccount, text: str) -> str:
    signed = account.sign_message(encode_defunct(text=text))
    return "0x" + bytes(signed.signature).hex()


async def register(store: SessionStore, account: LocalAccount) -> IdentitySession:
    session, challenge = await store.open_session(account.address)
    await store.complete_registration(account.address, sign_hex(account, challenge))
    return session


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
