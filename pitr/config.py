"""
Configuration management for pitr.

Loads and validates config.yaml. Every key maps to a PitrConfig field;
CLI options override values from the file.

Example config.yaml:

    data_dir: /data/binlog
    dest_dir: /data/pitr-out
    start_datetime: "2024-05-01 00:00:00"
    stop_tso: 0
    store_endpoints: "tidb-0:10080,tidb-1:10080"
    ignore_dbs: [test]
    ignore_tables:
      - {db_name: shop, tbl_name: "~^tmp_"}
    reserve_temp_dir: false
    log_level: INFO
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from pitr.errors import ConfigError
from pitr.filter import TableName
from pitr.snapshot import parse_endpoints
from pitr.tso import datetime_to_tso, parse_datetime
from pitr.window import Window

LOG_FORMATS = ("plain", "structured", "pretty")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_pitr_home() -> Path:
    """Directory holding config.yaml: $PITR_HOME or ~/.config/pitr."""
    env_home = os.environ.get("PITR_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/pitr").expanduser()


def _as_path(value: Any) -> Optional[Path]:
    if value is None or value == "":
        return None
    return Path(str(value)).expanduser()


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return list(value)


@dataclass
class PitrConfig:
    """Complete run configuration."""

    data_dir: Optional[Path] = None
    dest_dir: Path = Path("pitr-output")
    start_tso: int = 0
    stop_tso: int = 0
    start_datetime: str = ""
    stop_datetime: str = ""
    schema_file: Optional[Path] = None
    store_endpoints: list[str] = field(default_factory=list)
    store_timeout: int = 30
    ignore_dbs: list[str] = field(default_factory=list)
    ignore_tables: list[Any] = field(default_factory=list)
    do_dbs: list[str] = field(default_factory=list)
    do_tables: list[Any] = field(default_factory=list)
    reserve_temp_dir: bool = False
    temp_dir: Optional[Path] = None
    map_workers: int = 4
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_format: str = "plain"

    def __post_init__(self):
        self.data_dir = _as_path(self.data_dir)
        self.dest_dir = _as_path(self.dest_dir) or Path("pitr-output")
        self.schema_file = _as_path(self.schema_file)
        self.temp_dir = _as_path(self.temp_dir)
        self.log_file = _as_path(self.log_file)
        self.store_endpoints = _as_list(self.store_endpoints)
        self.ignore_dbs = _as_list(self.ignore_dbs)
        self.do_dbs = _as_list(self.do_dbs)
        self.ignore_tables = list(self.ignore_tables or [])
        self.do_tables = list(self.do_tables or [])
        self.start_datetime = self.start_datetime or ""
        self.stop_datetime = self.stop_datetime or ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PitrConfig":
        """
        Build a config from a mapping, e.g. parsed YAML.

        Raises:
            ConfigError: On unknown keys or values of the wrong type
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")
        try:
            return cls(**data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid configuration: {e}") from e

    def with_overrides(self, **overrides: Any) -> "PitrConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)

    def validate(self) -> None:
        """
        Validate the configuration and resolve datetime bounds to TSOs.

        Raises:
            ConfigError: If any value is missing, malformed or conflicting
        """
        if self.data_dir is None:
            raise ConfigError("data_dir is required")

        for name in ("start_tso", "stop_tso", "store_timeout", "map_workers"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigError(f"{name} must be an integer, got {value!r}")

        self.start_tso = self._resolve_bound("start", self.start_tso, self.start_datetime)
        self.stop_tso = self._resolve_bound("stop", self.stop_tso, self.stop_datetime)
        Window(self.start_tso, self.stop_tso)

        if self.map_workers < 1:
            raise ConfigError(f"map_workers must be at least 1, got {self.map_workers}")
        if self.store_timeout < 1:
            raise ConfigError(f"store_timeout must be at least 1, got {self.store_timeout}")

        self.log_level = str(self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {', '.join(LOG_FORMATS)}")

        if self.store_endpoints:
            self.store_endpoints = parse_endpoints(self.store_endpoints)

        for name in ("ignore_tables", "do_tables"):
            try:
                setattr(self, name, [TableName.parse(rule) for rule in getattr(self, name)])
            except ValueError as e:
                raise ConfigError(f"{name}: {e}") from e

    @staticmethod
    def _resolve_bound(name: str, tso: int, text: str) -> int:
        if not text:
            return tso
        if tso:
            raise ConfigError(f"{name}_tso and {name}_datetime are mutually exclusive")
        try:
            return datetime_to_tso(parse_datetime(text))
        except ValueError as e:
            raise ConfigError(f"{name}_datetime {text!r} is not \"YYYY-MM-DD HH:MM:SS\": {e}") from e

    def __str__(self) -> str:
        fields = ", ".join(
            f"{f.name}={getattr(self, f.name)}" for f in dataclasses.fields(self)
        )
        return f"PitrConfig({fields})"


def load_config(config_path: Optional[Path] = None) -> PitrConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to config file. Defaults to $PITR_HOME/config.yaml

    Returns:
        PitrConfig instance (not yet validated)

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    if config_path is None:
        config_path = get_pitr_home() / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError(f"pitr config not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"cannot read {config_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return PitrConfig.from_dict(data)
