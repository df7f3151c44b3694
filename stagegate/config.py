from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_project_root() -> Path:
    override = os.getenv("STAGEGATE_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")

    database_path: Path = Field(default_factory=lambda: _resolve_project_root() / "data" / "stagegate.db")
    database_url_override: str = Field(default_factory=lambda: os.getenv("STAGEGATE_DATABASE_URL", "").strip())
    workstreams_file: Path = Field(
        default_factory=lambda: _resolve_project_root() / "config" / "workstreams.yaml"
    )

    require_gate_approval: bool = True
    statement_timeout_seconds: float = 15.0
    log_level: str = Field(default_factory=lambda: os.getenv("STAGEGATE_LOG_LEVEL", "INFO").upper())

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return f"sqlite:///{self.database_path}"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_workstreams(self) -> dict[str, Any]:
        return self.load_yaml(self.workstreams_file)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
