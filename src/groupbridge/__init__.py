"""HTTP and WebSocket bridge for end-to-end encrypted group conversations."""

from .commands import GroupCommandService
from .config import BridgeConfig, load_config
from .hub import GLOBAL_TOPIC, Subscription, SubscriptionHub
from .sessions import IdentitySession, RegistrationResult, RegistrationState, SessionStore
from .ws_transport import create_app

__all__ = [
    "BridgeConfig",
    "GLOBAL_TOPIC",
    "GroupCommandService",
    "IdentitySession",
    "RegistrationResult",
    "RegistrationState",
    "SessionStore",
    "Subscription",
    "SubscriptionHub",
    "create_app",
    "load_config",
]
