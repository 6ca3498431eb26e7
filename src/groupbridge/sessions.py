"""Per-address identity sessions and the registration state machine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List

from .errors import AlreadyRegistered, InvalidSignature, SessionNotFound, StorageError
from .identity import ClientFactory, IdentityClient, IdentityStorageError, SignatureVerificationError, guarded
from .models import normalize_address
from .signer import Signer, decode_signature

logger = logging.getLogger(__name__)

VIA_SIGNATURE = "signature"
VIA_DEFAULT = "default"


class RegistrationState(str, Enum):
    UNREGISTERED = "unregistered"
    AWAITING_SIGNATURE = "awaiting_signature"
    REGISTERED = "registered"


@dataclass
class IdentitySession:
    address: str
    client: IdentityClient
    storage_path: str
    state: RegistrationState = RegistrationState.UNREGISTERED
    registered_via: str | None = None

    @property
    def inbox_id(self) -> str:
        return self.client.inbox_id

    @property
    def installation_id(self) -> str:
        return self.client.installation_id

    @property
    def is_registered(self) -> bool:
        return self.state is RegistrationState.REGISTERED


@dataclass(frozen=True)
class RegistrationResult:
    address: str
    inbox_id: str
    already_registered: bool


RegistrationListener = Callable[[IdentitySession], None]


class SessionStore:
    """Process-wide map of address to identity session.

    Session creation and registration are serialized per address so a single
    storage location never backs more than one identity handle.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        cache_root: str | Path,
        env: str = "dev",
        signer: Signer | None = None,
        call_timeout: float | None = 30.0,
    ) -> None:
        self._factory = client_factory
        self._cache_root = Path(cache_root)
        self._env = env
        self._signer = signer
        self._call_timeout = call_timeout
        self._sessions: Dict[str, IdentitySession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[RegistrationListener] = []

    @property
    def env(self) -> str:
        return self._env

    def storage_path(self, address: str) -> Path:
        return self._cache_root / f"{address}-{self._env}.db3"

    def lock(self, address: str) -> asyncio.Lock:
        return self._locks.setdefault(address, asyncio.Lock())

    def add_registration_listener(self, listener: RegistrationListener) -> None:
        self._listeners.append(listener)

    def get(self, address: str) -> IdentitySession | None:
        return self._sessions.get(address)

    def require(self, address: str) -> IdentitySession:
        session = self._sessions.get(address)
        if session is None:
            raise SessionNotFound(f"No session for {address}; call setupClient first")
        return session

    async def open_session(self, address: str) -> tuple[IdentitySession, str]:
        """Return the session for ``address`` and its current challenge text.

        Opening an address twice returns the same handle; the challenge is
        returned even when the identity is already registered.
        """

        address = normalize_address(address)
        async with self.lock(address):
            session = self._sessions.get(address)
            if session is None:
                session = await self._open(address)
            return session, session.client.signature_text

    async def resume(self, address: str) -> IdentitySession | None:
        """Return the live session, reopening it from durable storage if one exists."""

        session = self._sessions.get(address)
        if session is not None:
            return session
        if not self.storage_path(address).exists():
            return None
        async with self.lock(address):
            session = self._sessions.get(address)
            if session is None:
                session = await self._open(address)
            return session

    async def complete_registration(self, address: str, signature: object) -> RegistrationResult:
        address = normalize_address(address)
        session = self.require(address)
        signature_bytes = decode_signature(signature)
        async with self.lock(address):
            existing = self._check_registered(session, VIA_SIGNATURE)
            if existing is not None:
                return existing
            return await self._register(session, VIA_SIGNATURE, signature_bytes)

    async def default_registration(self, address: str) -> RegistrationResult:
        """Register ``address`` by signing its challenge with the server-held key."""

        address = normalize_address(address)
        session = self.require(address)
        if self._signer is None:
            raise InvalidSignature("no server signer configured")
        async with self.lock(address):
            existing = self._check_registered(session, VIA_DEFAULT)
            if existing is not None:
                return existing
            signature = await guarded(
                self._signer.sign(session.client.signature_text),
                timeout=self._call_timeout,
                action="sign challenge",
            )
            return await self._register(session, VIA_DEFAULT, signature)

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            try:
                await session.client.close()
            except Exception:
                logger.exception("Failed to close identity handle for %s", session.address)

    async def _open(self, address: str) -> IdentitySession:
        path = self.storage_path(address)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create cache directory {path.parent}: {exc}") from exc

        try:
            client = await guarded(
                self._factory(address, str(path), self._env),
                timeout=self._call_timeout,
                action="open identity",
                passthrough=(OSError, IdentityStorageError),
            )
        except (OSError, IdentityStorageError) as exc:
            raise StorageError(f"cannot open storage {path}: {exc}") from exc

        session = IdentitySession(address=address, client=client, storage_path=str(path))
        self._sessions[address] = session
        logger.info("Inbox id: %s", client.inbox_id)
        logger.info("Installation id: %s", client.installation_id)
        if client.is_registered:
            self._mark_registered(session, None)
        else:
            session.state = RegistrationState.AWAITING_SIGNATURE
        return session

    def _check_registered(self, session: IdentitySession, via: str) -> RegistrationResult | None:
        """Repeats on the path that registered the session are no-ops; the other path is rejected."""

        if not session.is_registered:
            return None
        if session.registered_via is None or session.registered_via == via:
            logger.info("Client already registered: %s", session.address)
            return RegistrationResult(address=session.address, inbox_id=session.inbox_id, already_registered=True)
        raise AlreadyRegistered(f"{session.address} is already registered")

    async def _register(self, session: IdentitySession, via: str, signature: bytes) -> RegistrationResult:
        session.client.add_ecdsa_signature(signature)
        try:
            await guarded(
                session.client.register_identity(),
                timeout=self._call_timeout,
                action="register identity",
                passthrough=(SignatureVerificationError,),
            )
        except SignatureVerificationError as exc:
            raise InvalidSignature(str(exc)) from exc
        self._mark_registered(session, via)
        logger.info("Client registered: %s", session.address)
        return RegistrationResult(address=session.address, inbox_id=session.inbox_id, already_registered=False)

    def _mark_registered(self, session: IdentitySession, via: str | None) -> None:
        session.state = RegistrationState.REGISTERED
        session.registered_via = via
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Registration listener failed for %s", session.address)
