"""Engine configuration management.

Configuration is loaded from:
1. /etc/k3sfw/config.yaml (main config)
2. Environment variables prefixed with K3SFW_ (override file values)

The network policy itself is NOT part of this file; it is passed to each
command as a separate YAML document.
"""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from k3sfw.core.exceptions import ConfigurationError


# Default paths
DEFAULT_CONFIG_PATH = Path("/etc/k3sfw/config.yaml")
DEFAULT_SNAPSHOT_DIR = Path("/var/lib/k3sfw/snapshots")
DEFAULT_LOCK_FILE = Path("/run/k3sfw.lock")
DEFAULT_AUDIT_LOG = Path("/var/log/k3sfw/audit.log")


class NftablesConfig(BaseModel):
    """Packet-filter subsystem settings."""

    binary: str = "nft"
    table: str = "k3s"
    family: str = "inet"

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: str) -> str:
        if not v or not all(c.isalnum() or c in "_-" for c in v):
            raise ValueError("Table name may only contain letters, digits, '_' and '-'")
        return v

    @field_validator("family")
    @classmethod
    def validate_family(cls, v: str) -> str:
        if v != "inet":
            raise ValueError("Only the 'inet' family is supported")
        return v


class SnapshotConfig(BaseModel):
    """Snapshot log settings."""

    directory: Path = DEFAULT_SNAPSHOT_DIR
    retention: int = Field(default=5, ge=1, le=100)


class EngineConfig(BaseModel):
    """Root configuration model for the firewall engine.

    This is the main configuration loaded from /etc/k3sfw/config.yaml.
    """

    nftables: NftablesConfig = Field(default_factory=NftablesConfig)
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    lock_file: Path = DEFAULT_LOCK_FILE
    audit_log: Path = DEFAULT_AUDIT_LOG
    audit_enabled: bool = True
    probe_timeout: float = Field(default=3.0, gt=0, le=60)
    host_root: Path = Path("/")

    @classmethod
    def load(cls, path: Path) -> "EngineConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Print a template with: k3sfw config example",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "EngineConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EngineSettings(BaseSettings):
    """Overrides loaded from K3SFW_* environment variables.

    Unset variables leave the file value untouched.
    """

    table: Optional[str] = None
    nft_binary: Optional[str] = None
    snapshot_dir: Optional[Path] = None
    snapshot_retention: Optional[int] = None
    lock_file: Optional[Path] = None
    audit_log: Optional[Path] = None
    probe_timeout: Optional[float] = None
    host_root: Optional[Path] = None

    class Config:
        env_prefix = "K3SFW_"
        extra = "ignore"

    def apply_to(self, config: EngineConfig) -> EngineConfig:
        """Return a copy of config with every set override applied."""
        data = config.model_dump()
        if self.table is not None:
            data["nftables"]["table"] = self.table
        if self.nft_binary is not None:
            data["nftables"]["binary"] = self.nft_binary
        if self.snapshot_dir is not None:
            data["snapshots"]["directory"] = self.snapshot_dir
        if self.snapshot_retention is not None:
            data["snapshots"]["retention"] = self.snapshot_retention
        for name in ("lock_file", "audit_log", "probe_timeout", "host_root"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value

        try:
            return EngineConfig(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid K3SFW_* environment override: {e}",
                details=[str(e)],
            ) from e


class AppConfig:
    """Application configuration combining config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        """Initialize application configuration.

        Args:
            config_path: Path to config file (uses default if None)
            config: Pre-loaded config (skips file loading and env overrides)
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        if config is None:
            config = EngineSettings().apply_to(EngineConfig.load_or_default(self.config_path))
        self._config = config

    @property
    def config(self) -> EngineConfig:
        """Get the engine configuration."""
        return self._config

    @property
    def nftables(self) -> NftablesConfig:
        """Shortcut to nftables config."""
        return self._config.nftables

    @property
    def snapshots(self) -> SnapshotConfig:
        """Shortcut to snapshot config."""
        return self._config.snapshots

    @property
    def table(self) -> str:
        """Name of the managed table."""
        return self._config.nftables.table


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# k3sfw engine configuration
# Environment variables override these values:
#   K3SFW_TABLE, K3SFW_NFT_BINARY, K3SFW_SNAPSHOT_DIR, K3SFW_SNAPSHOT_RETENTION,
#   K3SFW_LOCK_FILE, K3SFW_AUDIT_LOG, K3SFW_PROBE_TIMEOUT, K3SFW_HOST_ROOT

nftables:
  binary: nft
  table: k3s        # the only table this engine ever touches
  family: inet

snapshots:
  directory: /var/lib/k3sfw/snapshots
  retention: 5      # newest N snapshots are kept

lock_file: /run/k3sfw.lock
audit_log: /var/log/k3sfw/audit.log
audit_enabled: true

# Per-probe timeout in seconds for socket probes
probe_timeout: 3.0

# Root of the host filesystem for diagnostics (/proc, /sys)
host_root: /
"""
