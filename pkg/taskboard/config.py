# Task board: configuration
# Override via taskboard.yaml, TASKBOARD_* environment variables or CLI args.

import logging
import os
import yaml
from pathlib import Path
from dataclasses import dataclass, fields
from typing import Optional

from .gamification import XP_AWARD, XP_PER_LEVEL
from .positions import PositionMode

logger = logging.getLogger(__name__)

CONFIG_PATH = Path("taskboard.yaml")
DEFAULT_DB = Path.home() / ".local" / "share" / "taskboard" / "taskboard.db"


@dataclass
class Config:
    """Runtime configuration for the task board server and client."""

    db_path: str = str(DEFAULT_DB)
    host: str = "127.0.0.1"
    port: int = 3000

    # Optional shared secret checked against X-API-Key ("" = disabled)
    api_secret: str = ""

    # Gamification
    xp_award: int = XP_AWARD
    xp_per_level: int = XP_PER_LEVEL

    # Move semantics: "overwrite" keeps siblings untouched, "insert" shifts them
    position_mode: str = PositionMode.OVERWRITE.value

    # Client reconnect delay after the broadcast channel drops
    reconnect_backoff: float = 3.0

    log_level: str = "INFO"

    @property
    def move_mode(self) -> PositionMode:
        return PositionMode.from_str(self.position_mode)

    def apply_env(self) -> "Config":
        """Environment variables win over the file."""
        if os.environ.get("TASKBOARD_DB"):
            self.db_path = os.environ["TASKBOARD_DB"]
        if os.environ.get("TASKBOARD_API_SECRET"):
            self.api_secret = os.environ["TASKBOARD_API_SECRET"]
        return self

    def validate(self) -> "Config":
        PositionMode.from_str(self.position_mode)
        if self.xp_award < 0:
            raise ValueError(f"xp_award must be >= 0, got {self.xp_award}")
        if self.xp_per_level < 1:
            raise ValueError(f"xp_per_level must be >= 1, got {self.xp_per_level}")
        self.db_path = str(Path(self.db_path).expanduser())
        return self

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        path = path or os.environ.get("TASKBOARD_CONFIG")
        cfg_path = Path(path) if path else CONFIG_PATH
        known = {f.name for f in fields(cls)}
        if cfg_path.exists():
            with open(cfg_path, "r") as f:
                data = yaml.safe_load(f) or {}
            ignored = sorted(set(data) - known)
            if ignored:
                logger.warning(f"Ignoring unknown config keys in {cfg_path}: {ignored}")
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        else:
            cfg = cls()
        return cfg.apply_env().validate()
