from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from .errors import InvalidRequest

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")

CONVERSATION_TYPE_DEFAULT = "default"


def normalize_address(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest("address required")
    address = value.strip().lower()
    if not _ADDRESS_RE.match(address):
        raise InvalidRequest(f"invalid address: {value}")
    return address


def split_identifiers(value: Any) -> list[str]:
    """Split a comma separated string (or list) into an ordered, de-duplicated list."""

    if value is None:
        return []
    if isinstance(value, str):
        parts: Iterable[Any] = value.split(",")
    elif isinstance(value, list):
        parts = value
    else:
        raise InvalidRequest("identifier lists must be a comma separated string or an array")

    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if not isinstance(part, str):
            raise InvalidRequest("identifiers must be strings")
        item = part.strip()
        if item.startswith("0x") or item.startswith("0X"):
            item = item.lower()
        if not item or item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def iso_from_ns(created_at_ns: int) -> str:
    """Render a nanosecond epoch as an ISO-8601 UTC timestamp with millisecond precision."""

    created_at_ms = created_at_ns // 1_000_000
    moment = datetime.fromtimestamp(created_at_ms // 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{created_at_ms % 1000:03d}Z"


@dataclass(frozen=True)
class GroupPatch:
    """Metadata update where every field is optional and applied independently."""

    name: str | None = None
    description: str | None = None
    image_url: str | None = None

    def changes(self) -> Iterator[tuple[str, str]]:
        for field_name in ("name", "description", "image_url"):
            value = getattr(self, field_name)
            if value:
                yield field_name, value

    def is_empty(self) -> bool:
        return next(self.changes(), None) is None


@dataclass(frozen=True)
class MembershipChange:
    add: list[str] = field(default_factory=list)
    remove: list[str] = field(default_factory=list)

    @classmethod
    def from_csv(cls, add: Any = None, remove: Any = None) -> "MembershipChange":
        return cls(add=split_identifiers(add), remove=split_identifiers(remove))

    def is_empty(self) -> bool:
        return not self.add and not self.remove


@dataclass(frozen=True)
class MemberRecord:
    inbox_id: str
    account_addresses: list[str]
    installation_ids: list[str]
    permission_level: str = "member"

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "inboxId": self.inbox_id,
            "accountAddresses": list(self.account_addresses),
            "installationIds": list(self.installation_ids),
            "permissionLevel": self.permission_level,
        }


@dataclass(frozen=True)
class MessageRecord:
    id: str
    conversation_id: str
    sender_inbox_id: str
    sender_address: str
    content: Any
    sent_at_ns: int

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderInboxId": self.sender_inbox_id,
            "senderAddress": self.sender_address,
            "content": self.content,
            "sentAtNs": self.sent_at_ns,
            "sentAt": iso_from_ns(self.sent_at_ns),
        }


@dataclass
class ConversationView:
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
    latest_messages: list[MessageRecord] = field(default_factory=list)
    conversation_type: str = CONVERSATION_TYPE_DEFAULT

    @classmethod
    def from_group(cls, group: Any, messages: Iterable[MessageRecord] = ()) -> "ConversationView":
        return cls(
            id=group.id,
            name=group.name,
            description=group.description,
            image_url=group.image_url,
            pinned_frame_url=group.pinned_frame_url,
            is_active=group.is_active,
            added_by_inbox_id=group.added_by_inbox_id,
            created_at_ns=group.created_at_ns,
            members=list(group.members),
            admins=list(group.admins),
            super_admins=list(group.super_admins),
            latest_messages=list(messages),
        )

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "imageUrl": self.image_url,
            "description": self.description,
            "pinnedFrameUrl": self.pinned_frame_url,
            "isActive": self.is_active,
            "addedByInboxId": self.added_by_inbox_id,
            "createdAtNs": self.created_at_ns,
            "createdAt": iso_from_ns(self.created_at_ns),
            "metadata": {
                "creatorInboxId": self.added_by_inbox_id,
                "conversationType": self.conversation_type,
            },
            "members": [member.to_api_dict() for member in self.members],
            "admins": list(self.admins),
            "superAdmins": list(self.super_admins),
            "permissions": {
                "policyType": "group-permissions-policyType",
                "policySet": "group-permissions-policySet",
            },
            "latestMessages": [message.to_api_dict() for message in self.latest_messages],
        }
