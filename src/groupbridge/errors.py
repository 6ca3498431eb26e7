"""Error taxonomy shared by the session store, group commands and transport."""

from __future__ import annotations

from typing import Any, Iterable, Optional


class BridgeError(Exception):
    code = "bridge_error"
    status = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_api_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        body.update(self.details)
        return body


class InvalidRequest(BridgeError):
    code = "invalid_request"
    status = 400


class StorageError(BridgeError):
    code = "storage_error"
    status = 500


class UpstreamError(BridgeError):
    code = "upstream_error"
    status = 502


class PartialUpdateError(UpstreamError):
    """A multi-call update failed after some of its calls were applied."""

    code = "partial_update"

    def __init__(self, message: str, applied: Iterable[str]) -> None:
        self.applied = list(applied)
        super().__init__(message, {"applied": self.applied})


class SessionNotFound(BridgeError):
    code = "session_not_found"
    status = 404


class NotRegistered(BridgeError):
    code = "not_registered"
    status = 412


class AlreadyRegistered(BridgeError):
    code = "already_registered"
    status = 409


class InvalidSignature(BridgeError):
    code = "invalid_signature"
    status = 401


class ConversationNotFound(BridgeError):
    code = "conversation_not_found"
    status = 404

    def __init__(self, group_id: str) -> None:
        super().__init__(f"No conversation found with ID: {group_id}", {"groupId": group_id})


class UnreachableMembers(BridgeError):
    code = "unreachable_members"
    status = 400

    def __init__(self, members: Iterable[str]) -> None:
        self.members = list(members)
        super().__init__(
            "One or more members do not have a compatible identity",
            {"members": self.members},
        )


class NotAMember(BridgeError):
    code = "not_a_member"
    status = 400

    def __init__(self, identifiers: Iterable[str]) -> None:
        self.identifiers = list(identifiers)
        super().__init__("Admin changes are limited to current members", {"members": self.identifiers})
