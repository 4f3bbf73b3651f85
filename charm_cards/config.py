"""Shared configuration loader for the charm card engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping
from urllib.parse import urlparse

import yaml

from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path.home() / ".charm-cards.yaml"
_CONFIG_PATH_OVERRIDE: Path | None = None

DEFAULT_PROVER_URL = "https://v8.charms.dev/spells/prove"
DEFAULT_PROVIDERS = ("cryptoapis", "esplora", "bitcoin-core")
KNOWN_PROVIDERS = frozenset(DEFAULT_PROVIDERS)

# Per-network defaults. sats_per_cent is a policy value, not a protocol one.
NETWORK_DEFAULTS: dict[str, dict[str, Any]] = {
    "mainnet": {
        "lookup_base_url": "https://mempool.space/api",
        "esplora_broadcast_url": "https://blockstream.info/api",
        "rpc_port": 8332,
        "sats_per_cent": 1000,
        "fee_buffer_sats": 5000,
    },
    "testnet": {
        "lookup_base_url": "https://mempool.space/testnet/api",
        "esplora_broadcast_url": "https://blockstream.info/testnet/api",
        "rpc_port": 18332,
        "sats_per_cent": 1,
        "fee_buffer_sats": 500,
    },
    "testnet4": {
        "lookup_base_url": "https://mempool.space/testnet4/api",
        "esplora_broadcast_url": "https://mempool.space/testnet4/api",
        "rpc_port": 48332,
        "sats_per_cent": 1,
        "fee_buffer_sats": 500,
    },
    "signet": {
        "lookup_base_url": "https://mempool.space/signet/api",
        "esplora_broadcast_url": "https://mempool.space/signet/api",
        "rpc_port": 38332,
        "sats_per_cent": 1,
        "fee_buffer_sats": 500,
    },
    "regtest": {
        "lookup_base_url": "http://127.0.0.1:3002",
        "esplora_broadcast_url": "http://127.0.0.1:3002",
        "rpc_port": 18443,
        "sats_per_cent": 1,
        "fee_buffer_sats": 500,
    },
}


@dataclass
class RPCConfig:
    """Configuration container for Bitcoin Core RPC connection details."""

    user: str
    password: str
    host: str = "127.0.0.1"
    port: int = 8332
    use_https: bool = False
    wallet: str | None = None

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass
class ServiceConfig:
    """Everything an operation needs to know about its environment."""

    network: str = "testnet4"
    lookup_base_url: str = NETWORK_DEFAULTS["testnet4"]["lookup_base_url"]
    esplora_broadcast_url: str = NETWORK_DEFAULTS["testnet4"]["esplora_broadcast_url"]
    prover_url: str = DEFAULT_PROVER_URL
    cryptoapis_api_key: str | None = None
    broadcast_providers: list[str] = field(default_factory=lambda: list(DEFAULT_PROVIDERS))
    rpc: RPCConfig | None = None
    prune_height: int | None = None
    ancestor_depth: int = 1
    fee_rate: float = 2.0
    mock_mode: bool = False
    app_vk: str | None = None
    app_binary_path: Path | None = None
    sats_per_cent: int = 1
    fee_buffer_sats: int = 500
    output_sats: int = 1000
    prover_timeout: float = 180.0
    lookup_timeout: float = 10.0
    broadcast_timeout: float = 60.0
    prover_max_attempts: int = 3
    prover_backoff_initial: float = 1.0
    prover_backoff_max: float = 10.0
    prover_broadcasts: bool = False
    mempool_timeout: float = 30.0
    mempool_poll_interval: float = 1.0
    operation_deadline: float = 600.0
    debug_errors: bool = False

    @classmethod
    def for_network(cls, network: str, **kwargs: Any) -> "ServiceConfig":
        """Build a config using the defaults of ``network``."""

        network = _coerce_network(network, source="arguments")
        defaults = NETWORK_DEFAULTS[network]
        values = {
            "network": network,
            "lookup_base_url": defaults["lookup_base_url"],
            "esplora_broadcast_url": defaults["esplora_broadcast_url"],
            "sats_per_cent": defaults["sats_per_cent"],
            "fee_buffer_sats": defaults["fee_buffer_sats"],
        }
        values.update(kwargs)
        return cls(**values)

    def required_funding_sats(self, amount_cents: int) -> int:
        """Satoshis a minting UTXO must hold for ``amount_cents``."""

        return amount_cents * self.sats_per_cent + self.fee_buffer_sats


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _coerce_bool(value: Any, *, source: str = "config") -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    raise ConfigurationError(f"Invalid boolean in {source}: {value}")


def _coerce_int(value: Any, *, source: str = "config") -> int | None:
    if value is None or value == "":
        return None
    try:
        coerced = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid integer in {source}: {value}") from exc
    if coerced < 0:
        raise ConfigurationError(f"Negative integer in {source}: {value}")
    return coerced


def _coerce_float(value: Any, *, source: str = "config") -> float | None:
    if value is None or value == "":
        return None
    try:
        coerced = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid number in {source}: {value}") from exc
    if coerced < 0:
        raise ConfigurationError(f"Negative number in {source}: {value}")
    return coerced


def _coerce_str(value: Any, *, source: str = "config") -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_network(value: Any, *, source: str = "config") -> str | None:
    if value is None:
        return None
    network = str(value).strip().lower()
    if network == "bitcoin":
        network = "mainnet"
    if network not in NETWORK_DEFAULTS:
        raise ConfigurationError(
            f"Unknown network in {source}: {value} "
            f"(expected one of {', '.join(sorted(NETWORK_DEFAULTS))})"
        )
    return network


def _coerce_providers(value: Any, *, source: str = "config") -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",") if item.strip()]
    elif isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    else:
        raise ConfigurationError(f"Invalid provider list in {source}: {value}")
    unknown = [item for item in items if item not in KNOWN_PROVIDERS]
    if unknown:
        raise ConfigurationError(f"Unknown broadcast providers in {source}: {', '.join(unknown)}")
    if not items:
        raise ConfigurationError(f"Empty provider list in {source}")
    return items


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _parse_endpoint(raw: str | None) -> tuple[str | None, int | None, bool | None]:
    if not raw:
        return None, None, None
    parsed = urlparse(raw)
    if not parsed.scheme and not parsed.hostname:
        raise ConfigurationError(f"Invalid RPC endpoint URL: {raw}")
    host = parsed.hostname or None
    port = parsed.port
    use_https = parsed.scheme.lower() == "https" if parsed.scheme else None
    return host, port, use_https


# (field, yaml section, yaml key, environment variables, coercer)
_SETTINGS: list[tuple[str, str | None, str, tuple[str, ...], Callable[..., Any]]] = [
    ("lookup_base_url", "lookup", "base_url", ("CHARM_CARDS_LOOKUP_URL",), _coerce_str),
    ("lookup_timeout", "lookup", "timeout", ("CHARM_CARDS_LOOKUP_TIMEOUT",), _coerce_float),
    ("prune_height", "lookup", "prune_height", ("CHARM_CARDS_PRUNE_HEIGHT",), _coerce_int),
    ("ancestor_depth", "lookup", "ancestor_depth", ("CHARM_CARDS_ANCESTOR_DEPTH",), _coerce_int),
    ("prover_url", "prover", "url", ("CHARM_CARDS_PROVER_URL", "PROVER_API_URL"), _coerce_str),
    ("prover_timeout", "prover", "timeout", ("CHARM_CARDS_PROVER_TIMEOUT",), _coerce_float),
    ("prover_max_attempts", "prover", "max_attempts", ("CHARM_CARDS_PROVER_ATTEMPTS",), _coerce_int),
    ("prover_backoff_initial", "prover", "backoff_initial", (), _coerce_float),
    ("prover_backoff_max", "prover", "backoff_max", (), _coerce_float),
    ("prover_broadcasts", "prover", "broadcasts", ("CHARM_CARDS_PROVER_BROADCASTS",), _coerce_bool),
    ("mock_mode", "prover", "mock", ("CHARM_CARDS_MOCK_MODE", "MOCK_MODE"), _coerce_bool),
    ("app_vk", "app", "vk", ("CHARM_CARDS_APP_VK", "CHARMS_APP_VK"), _coerce_str),
    ("app_binary_path", "app", "binary", ("CHARM_CARDS_APP_BINARY", "CHARMS_APP_BINARY"), _coerce_str),
    ("broadcast_providers", "broadcast", "providers", ("CHARM_CARDS_BROADCAST_PROVIDERS",), _coerce_providers),
    ("esplora_broadcast_url", "broadcast", "esplora_url", ("CHARM_CARDS_ESPLORA_URL",), _coerce_str),
    ("cryptoapis_api_key", "broadcast", "cryptoapis_api_key", ("CHARM_CARDS_CRYPTOAPIS_API_KEY", "CRYPTOAPIS_API_KEY"), _coerce_str),
    ("broadcast_timeout", "broadcast", "timeout", ("CHARM_CARDS_BROADCAST_TIMEOUT",), _coerce_float),
    ("mempool_timeout", "mempool", "timeout", ("CHARM_CARDS_MEMPOOL_TIMEOUT",), _coerce_float),
    ("mempool_poll_interval", "mempool", "poll_interval", ("CHARM_CARDS_MEMPOOL_POLL_INTERVAL",), _coerce_float),
    ("fee_rate", "policy", "fee_rate", ("CHARM_CARDS_FEE_RATE",), _coerce_float),
    ("sats_per_cent", "policy", "sats_per_cent", ("CHARM_CARDS_SATS_PER_CENT",), _coerce_int),
    ("fee_buffer_sats", "policy", "fee_buffer_sats", ("CHARM_CARDS_FEE_BUFFER_SATS",), _coerce_int),
    ("output_sats", "policy", "output_sats", ("CHARM_CARDS_OUTPUT_SATS",), _coerce_int),
    ("operation_deadline", "policy", "operation_deadline", ("CHARM_CARDS_OPERATION_DEADLINE",), _coerce_float),
    ("debug_errors", None, "debug_errors", ("CHARM_CARDS_DEBUG_ERRORS",), _coerce_bool),
]


def _section(file_config: dict[str, Any], name: str | None, path: Path) -> dict[str, Any]:
    if name is None:
        return file_config
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected '{name}' to be a mapping in {path}")
    return section


def _env_value(env_map: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = env_map.get(name)
        if value:
            return value
    return None


def _load_rpc_section(
    file_config: dict[str, Any],
    env_map: Mapping[str, str],
    override_map: Mapping[str, Any],
    path: Path,
    default_port: int,
) -> RPCConfig | None:
    rpc_section = _section(file_config, "rpc", path)
    rpc_overrides = override_map.get("rpc") or {}

    endpoint_host, endpoint_port, endpoint_use_https = _parse_endpoint(
        _first_value(
            rpc_overrides.get("endpoint"),
            _env_value(env_map, ("CHARM_CARDS_RPC_URL", "BITCOIN_RPC_URL")),
            rpc_section.get("endpoint"),
        )
    )
    user = _first_value(
        rpc_overrides.get("user"),
        _env_value(env_map, ("CHARM_CARDS_RPC_USER", "BITCOIN_RPC_USER")),
        rpc_section.get("user"),
    )
    password = _first_value(
        rpc_overrides.get("password"),
        _env_value(env_map, ("CHARM_CARDS_RPC_PASSWORD", "BITCOIN_RPC_PASSWORD")),
        rpc_section.get("password"),
    )
    if endpoint_host is None and user is None and not rpc_section.get("host"):
        return None
    if not user or not password:
        raise ConfigurationError(
            "RPC credentials must be provided via CHARM_CARDS_RPC_* environment variables "
            "or the 'rpc' section of the config file"
        )

    return RPCConfig(
        user=str(user),
        password=str(password),
        host=_first_value(rpc_overrides.get("host"), endpoint_host, rpc_section.get("host"), "127.0.0.1"),
        port=_first_value(
            _coerce_int(rpc_overrides.get("port"), source="overrides"),
            endpoint_port,
            _coerce_int(rpc_section.get("port"), source=f"{path} rpc.port"),
            default_port,
        ),
        use_https=bool(
            _first_value(
                _coerce_bool(rpc_overrides.get("use_https"), source="overrides"),
                endpoint_use_https,
                _coerce_bool(rpc_section.get("use_https"), source=f"{path} rpc.use_https"),
                False,
            )
        ),
        wallet=_first_value(rpc_overrides.get("wallet"), rpc_section.get("wallet")),
    )


def load_service_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ServiceConfig:
    """Load service configuration from overrides, environment and optional YAML.

    Precedence is overrides, then environment variables, then the YAML file,
    then per-network defaults.
    """

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )
    file_config = _load_config_file(path, required=explicit_path)
    override_map = dict(overrides or {})

    network = _first_value(
        _coerce_network(override_map.get("network"), source="overrides"),
        _coerce_network(
            _env_value(env_map, ("CHARM_CARDS_NETWORK", "BITCOIN_NETWORK")),
            source="environment",
        ),
        _coerce_network(file_config.get("network"), source=str(path)),
        "testnet4",
    )
    network_defaults = NETWORK_DEFAULTS[network]

    values: dict[str, Any] = {"network": network}
    for name, section_name, key, env_names, coerce in _SETTINGS:
        section = _section(file_config, section_name, path)
        label = f"{path} {section_name}.{key}" if section_name else f"{path} {key}"
        resolved = _first_value(
            coerce(override_map.get(name), source="overrides"),
            coerce(_env_value(env_map, env_names), source="environment"),
            coerce(section.get(key), source=label),
            network_defaults.get(name),
        )
        if resolved is not None:
            values[name] = resolved

    if values.get("app_binary_path") is not None:
        values["app_binary_path"] = Path(values["app_binary_path"]).expanduser()
    if values.get("prover_max_attempts") == 0:
        raise ConfigurationError("prover.max_attempts must be at least 1")
    if values.get("mempool_poll_interval") == 0:
        raise ConfigurationError("mempool.poll_interval must be greater than zero")

    values["rpc"] = _load_rpc_section(
        file_config, env_map, override_map, path, network_defaults["rpc_port"]
    )
    return ServiceConfig(**values)
