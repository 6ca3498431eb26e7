from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Union

from .models import MessageRecord


@dataclass(frozen=True)
class NewGroup:
    """A group was created through the bridge."""

    name: ClassVar[str] = "newGroup"

    conversation_id: str
    conversation: Dict[str, Any]

    def payload(self) -> Dict[str, Any]:
        return {"groupId": self.conversation_id, "conversation": self.conversation}


@dataclass(frozen=True)
class NewMessage:
    """A message was sent through the bridge; ``group_name`` is captured at send time."""

    name: ClassVar[str] = "newMessage"

    group_id: str
    group_name: str
    sender: str
    content: Any

    def payload(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "groupName": self.group_name,
            "sender": self.sender,
            "messageContent": self.content,
        }


@dataclass(frozen=True)
class MessageStream:
    """A message observed on the network stream of the registered identity ``observer``."""

    name: ClassVar[str] = "newMessageStream"

    message: MessageRecord
    observer: str

    def payload(self) -> Dict[str, Any]:
        body = self.message.to_api_dict()
        body["observedBy"] = self.observer
        return body


@dataclass(frozen=True)
class GroupUpdated:
    name: ClassVar[str] = "groupUpdated"

    group_id: str
    changes: Dict[str, Any] = field(default_factory=dict)

    def payload(self) -> Dict[str, Any]:
        return {"groupId": self.group_id, "changes": self.changes}


BroadcastEvent = Union[NewGroup, NewMessage, MessageStream, GroupUpdated]


def event_frame(event: BroadcastEvent) -> Dict[str, Any]:
    return {"v": 1, "t": event.name, "body": event.payload()}
