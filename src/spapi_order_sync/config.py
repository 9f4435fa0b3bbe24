"""
Sync configuration.

Built once at process start and passed into each component. Values come
from a JSON config file, a .env file and the environment, with the
environment taking precedence.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from dotenv import find_dotenv, load_dotenv

from spapi_order_sync.client import REGIONS
from spapi_order_sync.exceptions import ConfigError

DEFAULT_REPORT_TYPE = "GET_FLAT_FILE_ALL_ORDERS_DATA_BY_LAST_UPDATE_GENERAL"
DEFAULT_ORDER_STATUSES = ("Shipped", "Unshipped", "PartiallyShipped")

ENV_MAPPINGS = {
    "client_id": "SPAPI_CLIENT_ID",
    "client_secret": "SPAPI_CLIENT_SECRET",
    "refresh_token": "SPAPI_REFRESH_TOKEN",
    "region": "SPAPI_REGION",
    "date_start_time": "SPAPI_DATE_START_TIME",
    "date_end_time": "SPAPI_DATE_END_TIME",
    "report_type": "SPAPI_REPORT_TYPE",
    "order_statuses": "SPAPI_ORDER_STATUSES",
    "output_dir": "SPAPI_OUTPUT_DIR",
    "state_file": "SPAPI_STATE_FILE",
    "deadline_seconds": "SPAPI_DEADLINE_SECONDS",
}

REQUIRED = ("client_id", "client_secret", "refresh_token")


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".spapi-order-sync" / "config.json"


def _parse_iso8601(name: str, value: str | None) -> str | None:
    if not value:
        return None
    try:
        # fromisoformat only accepts a trailing Z from Python 3.11 on
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ConfigError(f"{name} must be an ISO 8601 timestamp, got '{value}'")
    return value


@dataclass
class SyncConfig:
    """Everything a sync run needs, validated up front."""
    client_id: str
    client_secret: str
    refresh_token: str
    region: str = "na"
    date_start_time: str | None = None
    date_end_time: str | None = None
    report_type: str | None = DEFAULT_REPORT_TYPE
    order_statuses: list[str] = field(default_factory=lambda: list(DEFAULT_ORDER_STATUSES))
    output_dir: Path = Path("spapi-output")
    state_file: Path | None = None
    deadline_seconds: float | None = None

    # Resilience settings (code-level defaults, not read from config files)
    max_retries: int = 5
    max_wait_time: float = 32.0
    report_max_attempts: int = 12
    report_poll_interval: float = 5.0
    partition_delay: float = 1.0
    batch_size: int = 50

    def __post_init__(self) -> None:
        missing = [name for name in REQUIRED if not getattr(self, name)]
        if missing:
            env_vars = ", ".join(ENV_MAPPINGS[name] for name in missing)
            raise ConfigError(f"Missing required configuration: {env_vars}")

        if self.region not in REGIONS:
            raise ConfigError(
                f"Invalid region '{self.region}'. Must be one of: {', '.join(REGIONS)}"
            )

        self.date_start_time = _parse_iso8601("date_start_time", self.date_start_time)
        self.date_end_time = _parse_iso8601("date_end_time", self.date_end_time)

        if isinstance(self.order_statuses, str):
            self.order_statuses = [s.strip() for s in self.order_statuses.split(",") if s.strip()]

        self.output_dir = Path(self.output_dir)
        if self.state_file is not None:
            self.state_file = Path(self.state_file)

        if self.deadline_seconds is not None:
            try:
                self.deadline_seconds = float(self.deadline_seconds)
            except (TypeError, ValueError):
                raise ConfigError(f"deadline_seconds must be a number, got '{self.deadline_seconds}'")
            if self.deadline_seconds <= 0:
                raise ConfigError("deadline_seconds must be positive")

        try:
            self.batch_size = int(self.batch_size)
        except (TypeError, ValueError):
            raise ConfigError(f"batch_size must be an integer, got '{self.batch_size}'")
        if self.batch_size < 1:
            raise ConfigError("batch_size must be positive")

        try:
            self.partition_delay = float(self.partition_delay)
        except (TypeError, ValueError):
            raise ConfigError(f"partition_delay must be a number, got '{self.partition_delay}'")
        if self.partition_delay < 0:
            raise ConfigError("partition_delay must not be negative")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "SyncConfig":
        """Build from a mapping, ignoring unknown keys and empty values."""
        known = set(ENV_MAPPINGS) | {"batch_size", "partition_delay"}
        kwargs = {k: v for k, v in values.items() if k in known and v not in (None, "")}
        for name in REQUIRED:
            kwargs.setdefault(name, "")
        return cls(**kwargs)

    @classmethod
    def load(
        cls,
        config_file: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
        dotenv: bool = True,
    ) -> "SyncConfig":
        """
        Load configuration.

        Priority (highest first):
        1. Environment variables
        2. .env file (loaded into the environment, never overriding it)
        3. JSON config file
        """
        if dotenv and environ is None:
            # Search from the working directory, not from this file
            load_dotenv(find_dotenv(usecwd=True), override=False)
        env = os.environ if environ is None else environ

        values: dict[str, Any] = {}

        path = Path(config_file) if config_file else get_config_path()
        if path.exists():
            try:
                with open(path) as f:
                    file_values = json.load(f)
            except (OSError, ValueError) as e:
                raise ConfigError(f"Cannot read config file {path}: {e}")
            if not isinstance(file_values, dict):
                raise ConfigError(f"Config file {path} must contain a JSON object")
            values.update(file_values)
        elif config_file:
            raise ConfigError(f"Config file not found: {path}")

        for config_key, env_var in ENV_MAPPINGS.items():
            env_value = env.get(env_var)
            if env_value is not None:
                values[config_key] = env_value

        return cls.from_mapping(values)

    def masked(self) -> dict[str, Any]:
        """Config summary safe to print or log."""
        def mask(secret: str) -> str:
            return f"{secret[:4]}...{secret[-4:]}" if len(secret) > 12 else "****"

        return {
            "client_id": mask(self.client_id),
            "client_secret": "****",
            "refresh_token": mask(self.refresh_token),
            "region": self.region,
            "date_start_time": self.date_start_time,
            "date_end_time": self.date_end_time,
            "report_type": self.report_type,
            "order_statuses": self.order_statuses,
            "output_dir": str(self.output_dir),
            "state_file": str(self.state_file) if self.state_file else None,
            "deadline_seconds": self.deadline_seconds,
        }
