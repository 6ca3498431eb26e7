"""Narrow interface over the external group messaging engine.

The bridge only ever talks to the engine through these protocols so the core
can run against :mod:`groupbridge.memory` in tests and against a production
adapter when deployed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Iterable, Protocol, TypeVar

from .errors import BridgeError, UpstreamError
from .models import MemberRecord, MessageRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IdentityClientError(Exception):
    """Raised by engine implementations for protocol or network failures."""


class SignatureVerificationError(IdentityClientError):
    """The attached signature does not prove ownership of the address."""


class IdentityStorageError(IdentityClientError):
    """The engine could not create or open its local store."""


class GroupHandle(Protocol):
    id: str
    name: str
    description: str
    image_url: str
    pinned_frame_url: str
    is_active: bool
    added_by_inbox_id: str
    created_at_ns: int
    members: list[MemberRecord]
    admins: list[str]
    super_admins: list[str]

    async def sync(self) -> None: ...

    async def update_name(self, name: str) -> None: ...

    async def update_description(self, description: str) -> None: ...

    async def update_image_url(self, image_url: str) -> None: ...

    async def add_members(self, addresses: list[str]) -> None: ...

    async def remove_members(self, addresses: list[str]) -> None: ...

    async def add_admin(self, inbox_id: str) -> None: ...

    async def remove_admin(self, inbox_id: str) -> None: ...

    async def send(self, content: Any) -> str: ...

    async def messages(self) -> list[MessageRecord]: ...


class ConversationsClient(Protocol):
    async def sync(self) -> None: ...

    async def list(self) -> list[GroupHandle]: ...

    async def new_conversation(self, addresses: list[str], options: dict[str, str]) -> GroupHandle: ...

    async def get_conversation_by_id(self, group_id: str) -> GroupHandle | None: ...


class IdentityClient(Protocol):
    address: str
    inbox_id: str
    installation_id: str
    conversations: ConversationsClient

    @property
    def is_registered(self) -> bool: ...

    @property
    def signature_text(self) -> str: ...

    def add_ecdsa_signature(self, signature: bytes) -> None: ...

    async def register_identity(self) -> None: ...

    async def can_message(self, addresses: Iterable[str]) -> dict[str, bool]: ...

    def stream_all_messages(self) -> AsyncIterator[MessageRecord]: ...

    async def close(self) -> None: ...


class ClientFactory(Protocol):
    async def __call__(self, address: str, db_path: str, env: str) -> IdentityClient: ...


async def guarded(
    awaitable: Awaitable[T],
    *,
    timeout: float | None,
    action: str,
    passthrough: tuple[type[Exception], ...] = (),
) -> T:
    """Await an engine call, mapping stalls and engine failures to ``UpstreamError``.

    Exceptions listed in ``passthrough`` propagate untouched so callers can map
    them to a more specific error kind.
    """

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except BridgeError:
        raise
    except asyncio.TimeoutError as exc:
        # Checked before passthrough: TimeoutError is an OSError subclass on 3.11+.
        logger.warning("%s timed out after %ss", action, timeout)
        raise UpstreamError(f"{action} timed out") from exc
    except passthrough:
        raise
    except Exception as exc:
        logger.warning("%s failed: %s", action, exc)
        raise UpstreamError(f"{action} failed: {exc}") from exc
