"""Runtime settings read from FLOWL_* environment variables."""
from __future__ import annotations
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_HOME = "~/.flowl"


class Settings(BaseModel):
    home: Path = Field(default_factory=lambda: Path(DEFAULT_HOME).expanduser())
    shell_dir: Optional[Path] = None
    log_dir: Optional[Path] = None
    log_level: str = "INFO"
    trigger_backoff: float = Field(default=1.0, ge=0.0)

    @field_validator("log_level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        return v.upper()

    def model_post_init(self, __context) -> None:
        if self.shell_dir is None:
            self.shell_dir = self.home / "shell"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        values = {}
        if env.get("FLOWL_HOME"):
            values["home"] = Path(env["FLOWL_HOME"]).expanduser()
        if env.get("FLOWL_SHELL_DIR"):
            values["shell_dir"] = Path(env["FLOWL_SHELL_DIR"]).expanduser()
        if env.get("FLOWL_LOG_DIR"):
            values["log_dir"] = Path(env["FLOWL_LOG_DIR"]).expanduser()
        if env.get("FLOWL_LOG_LEVEL"):
            values["log_level"] = env["FLOWL_LOG_LEVEL"]
        if env.get("FLOWL_TRIGGER_BACKOFF"):
            values["trigger_backoff"] = env["FLOWL_TRIGGER_BACKOFF"]
        return cls(**values)
