"""Client configuration from environment variables and config.yaml."""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from core.errors.exceptions import ConfigurationError
from core.resilience.retry import RetryConfig

# Default config path: config.yaml in the working directory
DEFAULT_CONFIG_PATH = Path("config.yaml")

ENV_PREFIX = "KAFKA_"

ACKS_LEVELS = {"all": -1, "leader": 1}
OFFSET_RESET_POLICIES = ("earliest", "latest")
ASSIGNMENT_STRATEGIES = ("range", "roundrobin")


@dataclass
class ClientConfig:
    """Connection, producer and consumer configuration.

    Load from environment using ClientConfig.from_env(), or from a YAML file
    plus environment overrides using ClientConfig.load_config().
    All timing values in milliseconds unless otherwise noted.
    """

    # Connection
    bootstrap_servers: str = "localhost:9092"
    client_id: str = "kafka-client"
    request_timeout_ms: int = 30000
    connections_max_idle_ms: int = 540000  # 9 minutes
    reconnect_attempts: int = 5
    metadata_max_age_ms: int = 300000  # 5 minutes

    # Shared backoff policy
    retry_backoff_ms: int = 100
    retry_backoff_max_ms: int = 1000
    retry_backoff_multiplier: float = 2.0

    # Producer
    acks: str = "all"
    retries: int = 3
    batch_max_bytes: int = 16384
    batch_max_count: int = 500
    linger_ms: int = 20
    max_in_flight_per_partition: int = 1
    max_block_ms: int = 60000  # default send() backpressure timeout

    # Consumer group
    session_timeout_ms: int = 10000
    heartbeat_interval_ms: int = 3000
    rebalance_timeout_ms: int = 30000
    partition_assignment_strategy: str = "range"

    # Consumer
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = True
    auto_commit_interval_ms: int = 5000
    fetch_min_bytes: int = 1
    fetch_max_bytes: int = 52428800  # 50MB
    max_partition_fetch_bytes: int = 1048576  # 1MB
    fetch_max_wait_ms: int = 500
    max_poll_records: int = 500

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Load configuration from environment variables.

        Every field can be set with a KAFKA_-prefixed variable named after it,
        for example:
            KAFKA_BOOTSTRAP_SERVERS: broker addresses (default: localhost:9092)
            KAFKA_CLIENT_ID: client id (default: kafka-client)
            KAFKA_ACKS: all (default) or leader
            KAFKA_LINGER_MS: 20 (default)
            KAFKA_AUTO_OFFSET_RESET: earliest (default) or latest
            KAFKA_ENABLE_AUTO_COMMIT: true (default)

        Raises:
            ConfigurationError: If a value cannot be parsed or is invalid
        """
        config = cls(**_read_overrides({}))
        config.validate()
        return config

    @classmethod
    def load_config(cls, config_path: Optional[Path] = None) -> "ClientConfig":
        """Load configuration from config.yaml and environment variables.

        Configuration priority (highest to lowest):
        1. Environment variables
        2. config.yaml file (under 'kafka:' key)
        3. Dataclass defaults

        Raises:
            ConfigurationError: If the file or a value is invalid
        """
        config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

        kafka_data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                try:
                    yaml_data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(
                        f"Invalid YAML in {config_path}", cause=e
                    ) from e
            if not isinstance(yaml_data, dict):
                raise ConfigurationError(f"{config_path} must contain a mapping")
            kafka_data = yaml_data.get("kafka", {}) or {}

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(kafka_data) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown options in {config_path}: {', '.join(unknown)}"
            )

        config = cls(**_read_overrides(kafka_data))
        config.validate()
        return config

    # Alias kept for symmetry with from_env()
    from_yaml = load_config

    def validate(self) -> None:
        """Check value ranges and cross-field constraints.

        Raises:
            ConfigurationError: On the first invalid value
        """
        if not self.bootstrap_addresses():
            raise ConfigurationError("bootstrap_servers must list at least one host:port")
        if self.acks not in ACKS_LEVELS:
            raise ConfigurationError(
                f"acks must be one of {sorted(ACKS_LEVELS)}, got '{self.acks}'"
            )
        if self.auto_offset_reset not in OFFSET_RESET_POLICIES:
            raise ConfigurationError(
                f"auto_offset_reset must be 'earliest' or 'latest', got '{self.auto_offset_reset}'"
            )
        if self.partition_assignment_strategy not in ASSIGNMENT_STRATEGIES:
            raise ConfigurationError(
                f"partition_assignment_strategy must be one of {list(ASSIGNMENT_STRATEGIES)}"
            )

        for name in (
            "request_timeout_ms",
            "reconnect_attempts",
            "batch_max_bytes",
            "batch_max_count",
            "max_in_flight_per_partition",
            "max_block_ms",
            "session_timeout_ms",
            "heartbeat_interval_ms",
            "rebalance_timeout_ms",
            "auto_commit_interval_ms",
            "max_partition_fetch_bytes",
            "max_poll_records",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        for name in ("linger_ms", "retries", "retry_backoff_ms", "fetch_max_wait_ms"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")

        if self.retry_backoff_max_ms < self.retry_backoff_ms:
            raise ConfigurationError("retry_backoff_max_ms must be >= retry_backoff_ms")
        if self.heartbeat_interval_ms >= self.session_timeout_ms:
            raise ConfigurationError(
                "heartbeat_interval_ms must be lower than session_timeout_ms"
            )

    def bootstrap_addresses(self) -> List[Tuple[str, int]]:
        """Parse bootstrap_servers into (host, port) pairs.

        Raises:
            ConfigurationError: If an entry has no valid port
        """
        addresses = []
        for entry in self.bootstrap_servers.split(","):
            entry = entry.strip()
            if not entry:
                continue
            host, sep, port = entry.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ConfigurationError(f"Invalid bootstrap address '{entry}'")
            addresses.append((host.strip("[]"), int(port)))
        return addresses

    @property
    def acks_value(self) -> int:
        """Wire value of the acknowledgement level."""
        return ACKS_LEVELS[self.acks]

    def retry_policy(self, max_attempts: Optional[int] = None) -> RetryConfig:
        """Shared backoff policy; max_attempts defaults to reconnect_attempts."""
        return RetryConfig.from_ms(
            max_attempts=max_attempts if max_attempts is not None else self.reconnect_attempts,
            base_delay_ms=self.retry_backoff_ms,
            max_delay_ms=self.retry_backoff_max_ms,
            multiplier=self.retry_backoff_multiplier,
        )


def _read_overrides(file_data: Dict[str, Any]) -> Dict[str, Any]:
    """Merge file values with KAFKA_* environment variables, env winning."""
    values: Dict[str, Any] = {}
    for f in fields(ClientConfig):
        env_value = os.getenv(ENV_PREFIX + f.name.upper())
        if env_value is not None:
            raw: Any = env_value
        elif f.name in file_data:
            raw = file_data[f.name]
        else:
            continue
        values[f.name] = _coerce(f.name, f.type, raw)
    return values


def _coerce(name: str, type_name: Any, raw: Any) -> Any:
    # Field types are strings under postponed evaluation on some interpreters
    type_name = getattr(type_name, "__name__", type_name)
    try:
        if type_name == "bool":
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
        if name == "bootstrap_servers" and isinstance(raw, (list, tuple)):
            return ",".join(str(item) for item in raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}", cause=e) from e
