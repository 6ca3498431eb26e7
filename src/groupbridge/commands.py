"""Group conversation commands executed on behalf of a registered address.

Every command checks registration before touching the network, runs under the
address lock, and publishes a broadcast event only after the remote calls it
mirrors have succeeded.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, List, Tuple, TypeVar

from .errors import (
    ConversationNotFound,
    InvalidRequest,
    NotAMember,
    NotRegistered,
    PartialUpdateError,
    UnreachableMembers,
    UpstreamError,
)
from .events import GroupUpdated, NewGroup, NewMessage
from .hub import SubscriptionHub
from .identity import GroupHandle, guarded
from .models import (
    ConversationView,
    GroupPatch,
    MembershipChange,
    MessageRecord,
    normalize_address,
    split_identifiers,
)
from .sessions import IdentitySession, SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

Step = Tuple[str, Callable[[], Awaitable[Any]]]

_PATCH_LABELS = {"name": "name", "description": "description", "image_url": "imageUrl"}


class GroupCommandService:
    def __init__(self, sessions: SessionStore, hub: SubscriptionHub, *, call_timeout: float | None = 30.0) -> None:
        self._sessions = sessions
        self._hub = hub
        self._call_timeout = call_timeout

    async def create_group(
        self,
        address: str,
        members: Any,
        name: str | None = None,
        description: str | None = None,
        image_url: str | None = None,
    ) -> ConversationView:
        session = await self._registered_session(address)
        member_addresses = [normalize_address(member) for member in split_identifiers(members)]
        if not member_addresses:
            raise InvalidRequest("members required")

        client = session.client
        async with self._sessions.lock(session.address):
            reachable = await self._call(client.can_message(member_addresses), "check members")
            unreachable = [member for member in member_addresses if not reachable.get(member)]
            if unreachable:
                raise UnreachableMembers(unreachable)

            options = {
                key: value
                for key, value in (("name", name), ("description", description), ("image_url", image_url))
                if value
            }
            group = await self._call(
                client.conversations.new_conversation(member_addresses, options), "create conversation"
            )
            view = ConversationView.from_group(group)

        logger.info("Group %s created by %s", view.id, session.address)
        self._hub.publish(NewGroup(conversation_id=view.id, conversation=view.to_api_dict()))
        return view

    async def update_group_metadata(self, address: str, group_id: str, patch: GroupPatch) -> List[str]:
        """Apply the present fields of ``patch``; returns the labels of applied fields.

        Fields are updated one remote call at a time. A failure after the first
        applied field raises ``PartialUpdateError`` and leaves earlier fields
        applied.
        """

        session = await self._registered_session(address)
        async with self._sessions.lock(session.address):
            group = await self._conversation(session, group_id)
            steps: List[Step] = []
            for field_name, value in patch.changes():
                updater = getattr(group, f"update_{field_name}")
                steps.append((_PATCH_LABELS[field_name], lambda updater=updater, value=value: updater(value)))
            applied = await self._apply(steps)

        if applied:
            changes = {_PATCH_LABELS[key]: value for key, value in patch.changes()}
            self._hub.publish(GroupUpdated(group_id=group.id, changes=changes))
        return applied

    async def update_group_members(self, address: str, group_id: str, change: MembershipChange) -> List[str]:
        """Add then remove members as two independent remote calls."""

        session = await self._registered_session(address)
        add = [normalize_address(member) for member in change.add]
        remove = [normalize_address(member) for member in change.remove]
        async with self._sessions.lock(session.address):
            group = await self._conversation(session, group_id)
            steps: List[Step] = []
            if add:
                steps.append(("addMembers", lambda: group.add_members(add)))
            if remove:
                steps.append(("removeMembers", lambda: group.remove_members(remove)))
            applied = await self._apply(steps)

        if applied:
            self._hub.publish(GroupUpdated(group_id=group.id, changes={"addMembers": add, "removeMembers": remove}))
        return applied

    async def update_group_admins(self, address: str, group_id: str, change: MembershipChange) -> List[str]:
        """Promote then demote admins; identifiers are inbox ids or member addresses."""

        session = await self._registered_session(address)
        async with self._sessions.lock(session.address):
            group = await self._conversation(session, group_id)
            await self._call(group.sync(), "sync conversation")
            promote, missing_promote = _resolve_members(group, change.add)
            demote, missing_demote = _resolve_members(group, change.remove)
            missing = missing_promote + missing_demote
            if missing:
                raise NotAMember(missing)

            steps: List[Step] = []
            for inbox_id in promote:
                steps.append((f"addAdmin:{inbox_id}", lambda inbox_id=inbox_id: group.add_admin(inbox_id)))
            for inbox_id in demote:
                steps.append((f"removeAdmin:{inbox_id}", lambda inbox_id=inbox_id: group.remove_admin(inbox_id)))
            applied = await self._apply(steps)

        if applied:
            self._hub.publish(GroupUpdated(group_id=group.id, changes={"addAdmins": promote, "removeAdmins": demote}))
        return applied

    async def send_message(self, address: str, group_id: str, content: Any) -> str:
        if content is None:
            raise InvalidRequest("messageContent required")
        session = await self._registered_session(address)
        async with self._sessions.lock(session.address):
            group = await self._conversation(session, group_id)
            message_id = await self._call(group.send(content), "send message")
            group_name = group.name

        self._hub.publish(NewMessage(group_id=group.id, group_name=group_name, sender=session.address, content=content))
        return message_id

    async def list_conversations(self, address: str) -> List[ConversationView]:
        session = await self._registered_session(address)
        conversations = session.client.conversations
        async with self._sessions.lock(session.address):
            await self._call(conversations.sync(), "sync conversations")
            groups = await self._call(conversations.list(), "list conversations")
            views: List[ConversationView] = []
            for group in groups:
                await self._call(group.sync(), "sync conversation")
                messages = await self._call(group.messages(), "read messages")
                views.append(ConversationView.from_group(group, messages))
        return views

    async def list_messages(self, address: str, group_id: str) -> List[MessageRecord]:
        session = await self._registered_session(address)
        async with self._sessions.lock(session.address):
            group = await self._conversation(session, group_id)
            await self._call(group.sync(), "sync conversation")
            return await self._call(group.messages(), "read messages")

    async def _registered_session(self, address: str) -> IdentitySession:
        address = normalize_address(address)
        session = await self._sessions.resume(address)
        if session is None or not session.is_registered:
            raise NotRegistered("Client isn't registered.")
        return session

    async def _conversation(self, session: IdentitySession, group_id: Any) -> GroupHandle:
        if not isinstance(group_id, str) or not group_id.strip():
            raise InvalidRequest("groupId required")
        group = await self._call(
            session.client.conversations.get_conversation_by_id(group_id.strip()), "look up conversation"
        )
        if group is None:
            raise ConversationNotFound(group_id)
        return group

    async def _call(self, awaitable: Awaitable[T], action: str) -> T:
        return await guarded(awaitable, timeout=self._call_timeout, action=action)

    async def _apply(self, steps: Iterable[Step]) -> List[str]:
        applied: List[str] = []
        for label, step in steps:
            try:
                await self._call(step(), f"update {label}")
            except UpstreamError as exc:
                if not applied:
                    raise
                raise PartialUpdateError(
                    f"update {label} failed after applying {', '.join(applied)}: {exc.message}", applied
                ) from exc
            applied.append(label)
        return applied


def _resolve_members(group: GroupHandle, identifiers: Iterable[str]) -> Tuple[List[str], List[str]]:
    by_identifier = {}
    for member in group.members:
        by_identifier[member.inbox_id.lower()] = member.inbox_id
        for account in member.account_addresses:
            by_identifier[account.lower()] = member.inbox_id

    resolved: List[str] = []
    missing: List[str] = []
    for identifier in identifiers:
        inbox_id = by_identifier.get(identifier.lower())
        if inbox_id is None:
            missing.append(identifier)
        elif inbox_id not in resolved:
            resolved.append(inbox_id)
    return resolved, missing
