"""
Keeper configuration: a TOML file overlaid by KEEPER_* environment variables.

Lookup order for a dotted key such as "tx.gas_ratio":
1. Environment variable KEEPER_TX_GAS_RATIO
2. [tx] gas_ratio in the TOML file
3. The caller's default

Secrets (the actor key) are normally supplied through the environment only.
"""
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from keeper.core.retry import ConfigurationError

T = TypeVar("T")

DEFAULT_GAS_RATIO = 20
DEFAULT_CONFIRMATIONS = 1
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120.0
DEFAULT_FAILURE_PAUSE_SECONDS = 1.0
DEFAULT_RETRY_INTERVAL_SECONDS = 1.0
DEFAULT_TIMER_MARGIN_SECONDS = 5
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 60.0
DEFAULT_RECONNECT_DELAY_SECONDS = 5.0

REQUIRED_KEYS = (
    "chain.rpc_url",
    "chain.wss_url",
    "contracts.infra_market",
    "contracts.batch_sweeper",
    "actor.private_key",
)

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})
_MISSING = object()


def _coerce_env(raw: str) -> Any:
    """Best-effort typing of an environment string. Hex stays a string."""
    lowered = raw.strip().lower()
    if lowered.startswith("0x"):
        return raw
    if lowered in _TRUE - {"1"}:
        return True
    if lowered in _FALSE - {"0"}:
        return False
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


class ConfigManager:
    """Read-only view over the TOML file plus environment overrides.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        ratio = config.get_int("tx.gas_ratio", 20)
    """

    def __init__(self, config_path: Optional[Path] = None, env_prefix: str = "KEEPER_") -> None:
        self._path = config_path
        self._env_prefix = env_prefix
        self._data: dict[str, Any] = {}
        self.reload()

    @property
    def raw_data(self) -> dict[str, Any]:
        return dict(self._data)

    def reload(self) -> None:
        """Re-read the TOML file. A missing file yields an empty config."""
        if self._path is not None and self._path.exists():
            with open(self._path, "rb") as f:
                self._data = tomllib.load(f)
        else:
            self._data = {}

    def env_name(self, key: str) -> str:
        return self._env_prefix + key.upper().replace(".", "_")

    def _from_file(self, key: str) -> Any:
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def get(self, key: str, default: Any = None) -> Any:
        raw = os.environ.get(self.env_name(key))
        if raw is not None:
            return _coerce_env(raw)
        value = self._from_file(key)
        return default if value is _MISSING else value

    def get_section(self, section: str) -> dict[str, Any]:
        value = self._from_file(section)
        return value if isinstance(value, dict) else {}

    def _typed(self, key: str, default: T, cast: Callable[[Any], T]) -> T:
        value = self.get(key)
        return default if value is None else cast(value)

    def get_int(self, key: str, default: int = 0) -> int:
        return self._typed(key, default, int)

    def get_float(self, key: str, default: float = 0.0) -> float:
        return self._typed(key, default, float)

    def get_bool(self, key: str, default: bool = False) -> bool:
        def cast(value: Any) -> bool:
            if isinstance(value, str):
                return value.strip().lower() in _TRUE
            return bool(value)

        return self._typed(key, default, cast)

    def get_list(self, key: str, default: Optional[list[Any]] = None) -> list[Any]:
        """List value; a comma-separated string is split."""
        def cast(value: Any) -> list[Any]:
            if isinstance(value, list):
                return value
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            return [value]

        return self._typed(key, [] if default is None else default, cast)


@dataclass(frozen=True)
class KeeperSettings:
    """Typed view of the settings the keeper needs to run.

    Attributes:
        rpc_url: HTTP JSON-RPC endpoint used for reads and submissions.
        wss_url: Websocket endpoint used for the live log subscription.
        infra_market_address: Address of the infra-market contract.
        batch_sweeper_address: Address of the batch sweeper contract.
        private_key: Key material of the signing actor.
        gas_ratio: Percentage of the priority fee (or gas price) added as tip.
        confirmations: Blocks to wait for after a submission.
        receipt_timeout_seconds: Upper bound for a confirmation wait.
        failure_pause_seconds: Pause after a dropped intent.
        retry_interval_seconds: Fixed delay between read retries.
        timer_margin_seconds: Buffer added to every deadline.
        heartbeat_url: Optional liveness URL.
        heartbeat_interval_seconds: Delay between heartbeat pings.
        reconnect_delay_seconds: Delay before re-opening a dropped subscription.
        metrics_port: Optional port for the prometheus HTTP endpoint.
        start_block: First block scanned during bootstrap.
    """

    rpc_url: str
    wss_url: str
    infra_market_address: str
    batch_sweeper_address: str
    private_key: str = field(repr=False)
    gas_ratio: int = DEFAULT_GAS_RATIO
    confirmations: int = DEFAULT_CONFIRMATIONS
    receipt_timeout_seconds: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS
    failure_pause_seconds: float = DEFAULT_FAILURE_PAUSE_SECONDS
    retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS
    timer_margin_seconds: int = DEFAULT_TIMER_MARGIN_SECONDS
    heartbeat_url: Optional[str] = None
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS
    reconnect_delay_seconds: float = DEFAULT_RECONNECT_DELAY_SECONDS
    metrics_port: Optional[int] = None
    start_block: int = 0

    @classmethod
    def from_config(cls, config: ConfigManager) -> "KeeperSettings":
        """Build settings from a ConfigManager.

        Raises:
            ConfigurationError: If any required key is missing or a value is invalid.
        """
        missing = [key for key in REQUIRED_KEYS if not config.get(key)]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}",
                missing_keys=missing,
            )

        try:
            settings = cls(
                rpc_url=str(config.get("chain.rpc_url")),
                wss_url=str(config.get("chain.wss_url")),
                infra_market_address=str(config.get("contracts.infra_market")),
                batch_sweeper_address=str(config.get("contracts.batch_sweeper")),
                private_key=str(config.get("actor.private_key")),
                gas_ratio=config.get_int("tx.gas_ratio", DEFAULT_GAS_RATIO),
                confirmations=config.get_int("tx.confirmations", DEFAULT_CONFIRMATIONS),
                receipt_timeout_seconds=config.get_float(
                    "tx.receipt_timeout_seconds", DEFAULT_RECEIPT_TIMEOUT_SECONDS
                ),
                failure_pause_seconds=config.get_float(
                    "tx.failure_pause_seconds", DEFAULT_FAILURE_PAUSE_SECONDS
                ),
                retry_interval_seconds=config.get_float(
                    "keeper.retry_interval_seconds", DEFAULT_RETRY_INTERVAL_SECONDS
                ),
                timer_margin_seconds=config.get_int(
                    "keeper.timer_margin_seconds", DEFAULT_TIMER_MARGIN_SECONDS
                ),
                heartbeat_url=config.get("heartbeat.url") or None,
                heartbeat_interval_seconds=config.get_float(
                    "heartbeat.interval_seconds", DEFAULT_HEARTBEAT_INTERVAL_SECONDS
                ),
                reconnect_delay_seconds=config.get_float(
                    "subscription.reconnect_delay_seconds",
                    DEFAULT_RECONNECT_DELAY_SECONDS,
                ),
                metrics_port=config.get_int("metrics.port", 0) or None,
                start_block=config.get_int("chain.start_block", 0),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}", cause=e)

        if settings.gas_ratio < 0:
            raise ConfigurationError("tx.gas_ratio must be non-negative")
        if settings.confirmations < 1:
            raise ConfigurationError("tx.confirmations must be at least 1")
        if settings.timer_margin_seconds < 0:
            raise ConfigurationError("keeper.timer_margin_seconds must be non-negative")

        return settings
