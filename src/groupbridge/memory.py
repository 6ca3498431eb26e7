"""In-process group messaging engine.

Implements the :mod:`groupbridge.identity` protocols against a shared
``InMemoryNetwork``. The network is the source of truth; every client keeps a
local cache that only catches up on ``sync()``, so the bridge's sync discipline
is exercised the same way it is against a real network. Identities are kept in
a SQLite file per storage location so reopening a location yields the same
inbox and installation ids.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Set

from eth_account import Account
from eth_account.messages import encode_defunct

from .identity import ClientFactory, IdentityClientError, IdentityStorageError, SignatureVerificationError
from .models import MemberRecord, MessageRecord
from .sqlite_backend import IdentityRow, SQLiteBackend


def _now_ns() -> int:
    return time.time_ns()


def derive_inbox_id(address: str) -> str:
    return hashlib.sha256(f"inbox:{address.lower()}".encode("utf-8")).hexdigest()


def challenge_text(env: str, address: str, inbox_id: str, installation_id: str) -> str:
    return (
        f"groupbridge ({env}) : Create Identity\n"
        f"Address: {address}\n"
        f"Inbox ID: {inbox_id}\n"
        f"Installation ID: {installation_id}"
    )


@dataclass
class NetworkIdentity:
    address: str
    inbox_id: str
    installation_ids: Set[str] = field(default_factory=set)


@dataclass
class GroupState:
    id: str
    name: str
    description: str
    image_url: str
    pinned_frame_url: str
    created_at_ns: int
    added_by_inbox_id: str
    members: List[str]
    admins: Set[str]
    super_admins: Set[str]
    messages: List[MessageRecord] = field(default_factory=list)


class InMemoryNetwork:
    """Shared state standing in for the remote messaging network."""

    def __init__(self) -> None:
        self._identities: Dict[str, NetworkIdentity] = {}
        self._inbox_by_address: Dict[str, str] = {}
        self._groups: Dict[str, GroupState] = {}
        self._streams: Dict[str, List[asyncio.Queue[MessageRecord]]] = {}
        self._open_paths: Set[str] = set()
        self.register_calls = 0

    def factory(self) -> ClientFactory:
        async def create_client(address: str, db_path: str, env: str) -> "InMemoryIdentityClient":
            return await self.open_client(address, db_path, env)

        return create_client

    async def open_client(self, address: str, db_path: str, env: str) -> "InMemoryIdentityClient":
        address = address.lower()
        if db_path in self._open_paths:
            raise IdentityClientError(f"storage already in use: {db_path}")
        self._open_paths.add(db_path)
        backend: SQLiteBackend | None = None
        try:
            # Opening the local database yields to other tasks like real disk access.
            await asyncio.sleep(0)
            backend = SQLiteBackend(db_path)
            identity = backend.load_identity(address)
            if identity is None:
                identity = IdentityRow(
                    address=address,
                    inbox_id=derive_inbox_id(address),
                    installation_id=secrets.token_hex(32),
                    registered=False,
                )
                backend.save_identity(identity)
        except BaseException as exc:
            self._open_paths.discard(db_path)
            if backend is not None:
                backend.close()
            if isinstance(exc, sqlite3.Error):
                raise IdentityStorageError(f"cannot open {db_path}: {exc}") from exc
            raise
        if identity.registered:
            self._bind(identity.address, identity.inbox_id, identity.installation_id)
        return InMemoryIdentityClient(self, backend, identity, env, db_path)

    def enroll(self, address: str) -> str:
        """Register an identity for ``address`` without a client (external participants)."""

        address = address.lower()
        inbox_id = derive_inbox_id(address)
        self._bind(address, inbox_id, secrets.token_hex(32))
        return inbox_id

    def is_registered(self, address: str) -> bool:
        return address.lower() in self._inbox_by_address

    def inbox_for(self, address: str) -> str:
        inbox_id = self._inbox_by_address.get(address.lower())
        if inbox_id is None:
            raise IdentityClientError(f"address has no identity: {address}")
        return inbox_id

    def register(self, identity: IdentityRow, text: str, signature: bytes) -> None:
        self.register_calls += 1
        try:
            recovered = Account.recover_message(encode_defunct(text=text), signature=signature)
        except Exception as exc:
            raise SignatureVerificationError(f"malformed signature: {exc}") from exc
        if recovered.lower() != identity.address:
            raise SignatureVerificationError("signature does not match address")
        self._bind(identity.address, identity.inbox_id, identity.installation_id)

    def _bind(self, address: str, inbox_id: str, installation_id: str) -> None:
        record = self._identities.setdefault(inbox_id, NetworkIdentity(address=address, inbox_id=inbox_id))
        record.installation_ids.add(installation_id)
        self._inbox_by_address[address] = inbox_id

    def release(self, db_path: str) -> None:
        self._open_paths.discard(db_path)

    def member_record(self, state: GroupState, inbox_id: str) -> MemberRecord:
        identity = self._identities[inbox_id]
        if inbox_id in state.super_admins:
            level = "super_admin"
        elif inbox_id in state.admins:
            level = "admin"
        else:
            level = "member"
        return MemberRecord(
            inbox_id=inbox_id,
            account_addresses=[identity.address],
            installation_ids=sorted(identity.installation_ids),
            permission_level=level,
        )

    def group(self, group_id: str) -> GroupState:
        state = self._groups.get(group_id)
        if state is None:
            raise IdentityClientError(f"unknown group: {group_id}")
        return state

    def groups_for(self, inbox_id: str) -> List[GroupState]:
        return [state for state in self._groups.values() if inbox_id in state.members]

    def create_group(self, creator_inbox_id: str, addresses: Iterable[str], options: Dict[str, str]) -> GroupState:
        member_inboxes = [creator_inbox_id]
        for address in addresses:
            inbox_id = self.inbox_for(address)
            if inbox_id not in member_inboxes:
                member_inboxes.append(inbox_id)
        state = GroupState(
            id=secrets.token_hex(16),
            name=options.get("name", ""),
            description=options.get("description", ""),
            image_url=options.get("image_url", ""),
            pinned_frame_url=options.get("pinned_frame_url", ""),
            created_at_ns=_now_ns(),
            added_by_inbox_id=creator_inbox_id,
            members=member_inboxes,
            admins=set(),
            super_admins={creator_inbox_id},
        )
        self._groups[state.id] = state
        return state

    def open_stream(self, inbox_id: str) -> asyncio.Queue[MessageRecord]:
        queue: asyncio.Queue[MessageRecord] = asyncio.Queue()
        self._streams.setdefault(inbox_id, []).append(queue)
        return queue

    def close_stream(self, inbox_id: str, queue: asyncio.Queue[MessageRecord]) -> None:
        queues = self._streams.get(inbox_id)
        if not queues:
            return
        try:
            queues.remove(queue)
        except ValueError:
            return
        if not queues:
            self._streams.pop(inbox_id, None)

    def deliver(self, state: GroupState, message: MessageRecord) -> None:
        state.messages.append(message)
        for inbox_id in state.members:
            for queue in list(self._streams.get(inbox_id, [])):
                queue.put_nowait(message)


class InMemoryGroup:
    """A client's local view of a group; refreshed from the network on ``sync()``."""

    def __init__(self, client: "InMemoryIdentityClient", group_id: str) -> None:
        self._client = client
        self._network = client.network
        self.id = group_id
        self.name = ""
        self.description = ""
        self.image_url = ""
        self.pinned_frame_url = ""
        self.is_active = False
        self.added_by_inbox_id = ""
        self.created_at_ns = 0
        self.members: List[MemberRecord] = []
        self.admins: List[str] = []
        self.super_admins: List[str] = []
        self._messages: List[MessageRecord] = []
        self._refresh()

    def _refresh(self) -> None:
        state = self._network.group(self.id)
        self.name = state.name
        self.description = state.description
        self.image_url = state.image_url
        self.pinned_frame_url = state.pinned_frame_url
        self.added_by_inbox_id = state.added_by_inbox_id
        self.created_at_ns = state.created_at_ns
        self.is_active = self._client.inbox_id in state.members
        self.members = [self._network.member_record(state, inbox_id) for inbox_id in state.members]
        self.admins = sorted(state.admins)
        self.super_admins = sorted(state.super_admins)
        self._messages = list(state.messages)

    def _writable_state(self) -> GroupState:
        self._client.require_registered()
        state = self._network.group(self.id)
        if self._client.inbox_id not in state.members:
            raise IdentityClientError("not a member of this group")
        return state

    def _require_super_admin(self, state: GroupState) -> None:
        if self._client.inbox_id not in state.super_admins:
            raise IdentityClientError("only super admins can change admins")

    async def sync(self) -> None:
        await asyncio.sleep(0)
        self._refresh()

    async def update_name(self, name: str) -> None:
        self._writable_state().name = name
        self._refresh()

    async def update_description(self, description: str) -> None:
        self._writable_state().description = description
        self._refresh()

    async def update_image_url(self, image_url: str) -> None:
        self._writable_state().image_url = image_url
        self._refresh()

    async def add_members(self, addresses: List[str]) -> None:
        state = self._writable_state()
        inbox_ids = [self._network.inbox_for(address) for address in addresses]
        for inbox_id in inbox_ids:
            if inbox_id not in state.members:
                state.members.append(inbox_id)
        self._refresh()

    async def remove_members(self, addresses: List[str]) -> None:
        state = self._writable_state()
        inbox_ids = [self._network.inbox_for(address) for address in addresses]
        if any(inbox_id in state.super_admins for inbox_id in inbox_ids):
            raise IdentityClientError("cannot remove a super admin")
        for inbox_id in inbox_ids:
            if inbox_id in state.members:
                state.members.remove(inbox_id)
            state.admins.discard(inbox_id)
        self._refresh()

    async def add_admin(self, inbox_id: str) -> None:
        state = self._writable_state()
        self._require_super_admin(state)
        if inbox_id not in state.members:
            raise IdentityClientError("admin must be a member")
        state.admins.add(inbox_id)
        self._refresh()

    async def remove_admin(self, inbox_id: str) -> None:
        state = self._writable_state()
        self._require_super_admin(state)
        state.admins.discard(inbox_id)
        self._refresh()

    async def send(self, content: Any) -> str:
        state = self._writable_state()
        message = MessageRecord(
            id=secrets.token_hex(16),
            conversation_id=self.id,
            sender_inbox_id=self._client.inbox_id,
            sender_address=self._client.address,
            content=content,
            sent_at_ns=_now_ns(),
        )
        self._network.deliver(state, message)
        self._messages.append(message)
        return message.id

    async def messages(self) -> List[MessageRecord]:
        return list(self._messages)


class InMemoryConversations:
    def __init__(self, client: "InMemoryIdentityClient") -> None:
        self._client = client
        self._groups: Dict[str, InMemoryGroup] = {}

    async def sync(self) -> None:
        await asyncio.sleep(0)
        for state in self._client.network.groups_for(self._client.inbox_id):
            if state.id not in self._groups:
                self._groups[state.id] = InMemoryGroup(self._client, state.id)

    async def list(self) -> List[InMemoryGroup]:
        return sorted(self._groups.values(), key=lambda group: group.created_at_ns)

    async def new_conversation(self, addresses: List[str], options: Dict[str, str]) -> InMemoryGroup:
        self._client.require_registered()
        state = self._client.network.create_group(self._client.inbox_id, addresses, options)
        group = InMemoryGroup(self._client, state.id)
        self._groups[state.id] = group
        return group

    async def get_conversation_by_id(self, group_id: str) -> InMemoryGroup | None:
        return self._groups.get(group_id)


class InMemoryIdentityClient:
    def __init__(
        self,
        network: InMemoryNetwork,
        backend: SQLiteBackend,
        identity: IdentityRow,
        env: str,
        db_path: str,
    ) -> None:
        self.network = network
        self._backend = backend
        self._identity = identity
        self._env = env
        self._db_path = db_path
        self._signature: bytes | None = None
        self.address = identity.address
        self.inbox_id = identity.inbox_id
        self.installation_id = identity.installation_id
        self.conversations = InMemoryConversations(self)

    @property
    def is_registered(self) -> bool:
        return self._identity.registered

    @property
    def signature_text(self) -> str:
        return challenge_text(self._env, self.address, self.inbox_id, self.installation_id)

    def require_registered(self) -> None:
        if not self._identity.registered:
            raise IdentityClientError("identity is not registered")

    def add_ecdsa_signature(self, signature: bytes) -> None:
        self._signature = signature

    async def register_identity(self) -> None:
        if self._identity.registered:
            return
        if self._signature is None:
            raise IdentityClientError("no signature attached")
        await asyncio.sleep(0)
        self.network.register(self._identity, self.signature_text, self._signature)
        self._identity.registered = True
        self._backend.save_identity(self._identity)

    async def can_message(self, addresses: Iterable[str]) -> Dict[str, bool]:
        return {address: self.network.is_registered(address) for address in addresses}

    def stream_all_messages(self) -> AsyncIterator[MessageRecord]:
        # Subscribe immediately so messages sent before the first iteration are kept.
        return self._drain(self.network.open_stream(self.inbox_id))

    async def _drain(self, queue: asyncio.Queue[MessageRecord]) -> AsyncIterator[MessageRecord]:
        try:
            while True:
                yield await queue.get()
        finally:
            self.network.close_stream(self.inbox_id, queue)

    async def close(self) -> None:
        self._backend.close()
        self.network.release(self._db_path)


def memory_factory(network: InMemoryNetwork | None = None) -> ClientFactory:
    return (network or InMemoryNetwork()).factory()
