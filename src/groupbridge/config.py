from __future__ import annotations

import importlib
import os
from dataclasses import dataclass
from typing import Mapping

from dotenv import load_dotenv

from .identity import ClientFactory

DEFAULT_PORT = 3000
DEFAULT_ENV = "dev"
DEFAULT_CACHE_DIR = ".cache"


@dataclass
class BridgeConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    env: str = DEFAULT_ENV
    cache_dir: str = DEFAULT_CACHE_DIR
    private_key: str | None = None
    engine: str = "memory"
    call_timeout_s: float = 30.0
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576


def _int_setting(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float_setting(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def load_config(environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """Build the configuration from the environment, reading ``.env`` first."""

    if environ is None:
        load_dotenv()
        environ = os.environ
    return BridgeConfig(
        host=environ.get("HOST") or "127.0.0.1",
        port=_int_setting(environ, "PORT", DEFAULT_PORT),
        env=environ.get("XMTP_ENV") or DEFAULT_ENV,
        cache_dir=environ.get("CACHE_DIR") or DEFAULT_CACHE_DIR,
        private_key=environ.get("KEY") or None,
        engine=environ.get("ENGINE") or "memory",
        call_timeout_s=_float_setting(environ, "CALL_TIMEOUT", 30.0),
        ping_interval_s=_int_setting(environ, "WS_PING_INTERVAL", 30),
    )


def load_client_factory(engine: str) -> ClientFactory:
    """Resolve ``memory`` or a ``module:attribute`` path to an identity client factory."""

    if engine == "memory":
        from .memory import memory_factory

        return memory_factory()
    module_name, sep, attribute = engine.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"engine must be 'memory' or 'module:attribute', got {engine!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)
