"""
nearledger configuration

Every knob can be set through the environment. Module-level constants hold the
values read at import time; ``LedgerSettings.from_env()`` re-reads them so a
host (or a test) can build settings after changing the environment.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from nearledger.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class NetworkType(Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


class TransportKind(Enum):
    AUTO = "auto"
    HID = "hid"
    TCP = "tcp"


DEFAULT_RPC_URLS = {
    NetworkType.MAINNET: "https://rpc.mainnet.fastnear.com",
    NetworkType.TESTNET: "https://rpc.testnet.fastnear.com",
}

NEAR_APP_NAME = "NEAR"
DASHBOARD_APP_NAME = "BOLOS"
DEFAULT_DERIVATION_PATH = "44'/397'/0'/0'/1'"
DEFAULT_FUNCTION_CALL_GAS = 30_000_000_000_000

STORAGE_KEY_ACCOUNTS = "ledger:accounts"
STORAGE_KEY_DERIVATION_PATH = "ledger:derivationPath"


def _env_float(env_var: str, default: str) -> float:
    raw = os.getenv(env_var, default).strip()
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationError(f"{env_var} must be positive, got {raw!r}")
    return value


def _env_enum(env_var: str, enum_cls: type[Enum], default: str) -> Enum:
    raw = os.getenv(env_var, default).strip().lower()
    try:
        return enum_cls(raw)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"{env_var} must be one of {allowed}, got {raw!r}") from exc


STORAGE_PATH = os.getenv(
    "NEARLEDGER_STORAGE_PATH",
    os.path.join(os.path.expanduser("~"), ".nearledger", "storage.json"),
)
LOG_LEVEL = os.getenv("NEARLEDGER_LOG_LEVEL", "INFO")


@dataclass
class LedgerSettings:
    """Resolved runtime settings for one wallet instance."""

    network: NetworkType = NetworkType.MAINNET
    rpc_urls: dict[NetworkType, str] = field(default_factory=lambda: dict(DEFAULT_RPC_URLS))
    derivation_path: str = DEFAULT_DERIVATION_PATH
    transport: TransportKind = TransportKind.AUTO
    speculos_host: str = "127.0.0.1"
    speculos_port: int = 9999
    app_settle_timeout: float = 10.0
    app_poll_interval: float = 0.25
    rpc_timeout: float = 30.0
    storage_path: str = STORAGE_PATH

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        network = _env_enum("NEARLEDGER_NETWORK", NetworkType, NetworkType.MAINNET.value)
        rpc_urls = {
            NetworkType.MAINNET: os.getenv(
                "NEARLEDGER_RPC_URL_MAINNET", DEFAULT_RPC_URLS[NetworkType.MAINNET]
            ).strip(),
            NetworkType.TESTNET: os.getenv(
                "NEARLEDGER_RPC_URL_TESTNET", DEFAULT_RPC_URLS[NetworkType.TESTNET]
            ).strip(),
        }
        port_raw = os.getenv("NEARLEDGER_SPECULOS_PORT", "9999").strip()
        if not port_raw.isdigit():
            raise ConfigurationError(f"NEARLEDGER_SPECULOS_PORT must be an integer, got {port_raw!r}")

        settings = cls(
            network=network,
            rpc_urls=rpc_urls,
            derivation_path=os.getenv("NEARLEDGER_DERIVATION_PATH", DEFAULT_DERIVATION_PATH).strip(),
            transport=_env_enum("NEARLEDGER_TRANSPORT", TransportKind, TransportKind.AUTO.value),
            speculos_host=os.getenv("NEARLEDGER_SPECULOS_HOST", "127.0.0.1").strip(),
            speculos_port=int(port_raw),
            app_settle_timeout=_env_float("NEARLEDGER_APP_SETTLE_TIMEOUT", "10"),
            app_poll_interval=_env_float("NEARLEDGER_APP_POLL_INTERVAL", "0.25"),
            rpc_timeout=_env_float("NEARLEDGER_RPC_TIMEOUT", "30"),
            storage_path=os.getenv("NEARLEDGER_STORAGE_PATH", STORAGE_PATH),
        )
        logger.debug(
            "Loaded Ledger settings",
            extra={
                "event": "config.loaded",
                "network": settings.network.value,
                "transport": settings.transport.value,
            },
        )
        return settings

    def rpc_url(self, network: NetworkType | str | None = None) -> str:
        """Return the RPC endpoint for ``network`` (defaults to the configured one)."""
        resolved = resolve_network(network) if network is not None else self.network
        url = self.rpc_urls.get(resolved)
        if not url:
            raise ConfigurationError(f"No RPC endpoint configured for {resolved.value}")
        return url


def resolve_network(network: NetworkType | str) -> NetworkType:
    if isinstance(network, NetworkType):
        return network
    try:
        return NetworkType(str(network).strip().lower())
    except ValueError as exc:
        raise ConfigurationError(f"Unknown NEAR network: {network!r}") from exc
