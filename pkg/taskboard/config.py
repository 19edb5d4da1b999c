# Taskboard configuration
# Override paths and endpoints via taskboard.yaml or TASKBOARD_* environment variables.

import logging
import os
import yaml
from pathlib import Path
from dataclasses import dataclass, fields
from typing import Optional

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "taskboard.yaml"


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


@dataclass
class Config:
    """Runtime configuration for the taskboard service."""

    # Storage
    db_path: str = "~/.local/share/taskboard/taskboard.db"
    storage_dir: str = "~/.local/share/taskboard/storage"

    # Public URLs (OAuth redirects, avatar links)
    public_base_url: str = "http://localhost:3000"

    # Auth
    session_ttl_hours: int = 24 * 7
    avatar_size_limit: int = 2 * 1024 * 1024

    # Telegram forwarding (optional)
    telegram_token_env: str = "TASKBOARD_TELEGRAM_TOKEN"
    telegram_chat_id: Optional[str] = None

    # HTTP
    host: str = "127.0.0.1"
    port: int = 3000

    ENV_PREFIX = "TASKBOARD_"

    def apply_env(self, environ=None):
        """Override fields from TASKBOARD_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ
        for f in fields(self):
            raw = environ.get(self.ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            if f.type in (int, "int"):
                try:
                    raw = int(raw)
                except ValueError:
                    raise ConfigError(f"{self.ENV_PREFIX}{f.name.upper()} must be an integer, got: '{raw}'")
            setattr(self, f.name, raw)

    def resolve_paths(self):
        """Expand ~ in file locations."""
        self.db_path = str(Path(self.db_path).expanduser())
        self.storage_dir = str(Path(self.storage_dir).expanduser())
        self.public_base_url = self.public_base_url.rstrip("/")

    @property
    def telegram_token(self) -> Optional[str]:
        return os.environ.get(self.telegram_token_env) if self.telegram_token_env else None

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {cfg_path}: {e}")
            known = {f.name for f in fields(cls)}
            ignored = sorted(set(data) - known)
            if ignored:
                logger.warning(f"Ignoring unknown config keys in {cfg_path}: {ignored}")
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        else:
            cfg = cls()
        cfg.apply_env(environ)
        cfg.resolve_paths()
        return cfg
