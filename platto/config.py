# Board configuration
# Override via config.yaml, environment variables or CLI args.

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .remote import DataService, RestDataService, SqliteDataService

CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


@dataclass
class Config:
    """Runtime configuration for the board server."""

    # Data service: "sqlite" (local file) or "rest" (hosted table API)
    backend: str = "sqlite"
    db_path: str = "~/.local/share/platto/board.db"
    supabase_url: str = ""
    supabase_key_env: str = "SUPABASE_ANON_KEY"  # Name of the env var holding the key
    table: str = "programs"
    request_timeout: float = 10.0

    # Reconciliation
    confirm_timeout: Optional[float] = 10.0   # None = wait for the change feed forever

    # Board
    timezone: str = "Asia/Tokyo"

    # Server
    host: str = "127.0.0.1"
    port: int = 3000

    def resolve(self) -> "Config":
        """Apply environment overrides, expand paths and validate."""
        self.db_path = os.environ.get("PLATTO_DB", self.db_path)
        self.supabase_url = os.environ.get("SUPABASE_URL", self.supabase_url)
        self.db_path = str(Path(self.db_path).expanduser())
        self.validate()
        return self

    def validate(self) -> None:
        if self.backend not in ("sqlite", "rest"):
            raise ConfigError(f"Unknown backend: {self.backend!r} (expected 'sqlite' or 'rest')")
        if self.backend == "rest":
            if not self.supabase_url:
                raise ConfigError("backend 'rest' requires supabase_url (or SUPABASE_URL)")
            if not os.environ.get(self.supabase_key_env):
                raise ConfigError(
                    f"Environment variable {self.supabase_key_env} is not set.\n"
                    f"Set it:  export {self.supabase_key_env}=your_anon_key"
                )
        if self.confirm_timeout is not None and self.confirm_timeout <= 0:
            raise ConfigError("confirm_timeout must be positive (or null to disable)")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"Unknown timezone: {self.timezone!r}")

    def build_service(self) -> DataService:
        """Instantiate the configured data service."""
        if self.backend == "rest":
            return RestDataService(
                self.supabase_url,
                os.environ[self.supabase_key_env],
                timeout=self.request_timeout,
            )
        return SqliteDataService(self.db_path)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            with open(cfg_path, "r") as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigError(f"Invalid YAML in {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
            cfg = cls(**{k: v for k, v in data.items() if hasattr(cls, k)})
        elif path:
            raise ConfigError(f"Config file not found: {path}")
        else:
            cfg = cls()
        return cfg.resolve()
