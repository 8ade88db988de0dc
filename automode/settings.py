"""
Settings Store
==============

Read-only access to project and global settings.

- Project settings: ``<project>/.automaker/settings.json``
- Global settings: a JSON file given by configuration (optional)

Both are validated with pydantic. A missing file yields defaults; a
malformed one logs a warning and yields defaults.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from automode.feature_store import automaker_dir

_logger = logging.getLogger(__name__)

DEFAULT_ARTIFACTS_DIR = ".automaker/bmad-output"


# =============================================================================
# Models
# =============================================================================

class AIProfile(BaseModel):
    """A saved model/persona preset features can reference by id."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str = ""
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")
    agent_ids: list[str] = Field(default_factory=list, alias="agentIds")
    persona_id: Optional[str] = Field(None, alias="personaId")
    model: Optional[str] = None
    thinking_level: Optional[str] = Field(None, alias="thinkingLevel")


class ProjectSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    artifacts_dir: Optional[str] = Field(None, alias="artifactsDir")
    auto_load_claude_md: Optional[bool] = Field(None, alias="autoLoadClaudeMd")

    @model_validator(mode="before")
    @classmethod
    def lift_nested_artifacts_dir(cls, data: Any) -> Any:
        """Accept ``{"bmad": {"artifactsDir": ...}}`` as well as the flat key."""
        if isinstance(data, dict) and "artifactsDir" not in data:
            nested = data.get("bmad")
            if isinstance(nested, dict) and nested.get("artifactsDir"):
                data = {**data, "artifactsDir": nested["artifactsDir"]}
        return data


class GlobalSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ai_profiles: list[AIProfile] = Field(default_factory=list, alias="aiProfiles")
    auto_load_claude_md: bool = Field(False, alias="autoLoadClaudeMd")

    def find_profile(self, profile_id: str | None) -> AIProfile | None:
        if not profile_id:
            return None
        for profile in self.ai_profiles:
            if profile.id == profile_id:
                return profile
        return None


# =============================================================================
# Helpers
# =============================================================================

def normalize_artifacts_dir(value: str | None) -> str:
    """
    Project-relative artifacts directory with forward slashes.

    Absolute paths and anything containing ``..`` fall back to the default.
    """
    trimmed = (value or "").strip()
    if not trimmed:
        return DEFAULT_ARTIFACTS_DIR
    if (
        PurePosixPath(trimmed).is_absolute()
        or PureWindowsPath(trimmed).is_absolute()
        or ".." in trimmed
    ):
        return DEFAULT_ARTIFACTS_DIR
    return trimmed.replace("\\", "/").lstrip("/")


def _read_model(path: Path, model_cls: type[BaseModel]) -> BaseModel:
    if not path.exists():
        return model_cls()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return model_cls.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        _logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return model_cls()


class SettingsStore:
    """Loads settings on demand; nothing is cached between runs."""

    def __init__(self, global_settings_path: str | Path | None = None):
        self.global_settings_path = Path(global_settings_path) if global_settings_path else None

    @staticmethod
    def project_settings_path(project_path: str | Path) -> Path:
        return automaker_dir(project_path) / "settings.json"

    async def get_project_settings(self, project_path: str | Path) -> ProjectSettings:
        return await asyncio.to_thread(
            _read_model, self.project_settings_path(project_path), ProjectSettings
        )

    async def get_global_settings(self) -> GlobalSettings:
        if self.global_settings_path is None:
            return GlobalSettings()
        return await asyncio.to_thread(_read_model, self.global_settings_path, GlobalSettings)

    async def get_auto_load_claude_md(self, project_path: str | Path) -> bool:
        """Project setting wins over the global one."""
        project = await self.get_project_settings(project_path)
        if project.auto_load_claude_md is not None:
            return project.auto_load_claude_md
        return (await self.get_global_settings()).auto_load_claude_md

    async def get_artifacts_dir(self, project_path: str | Path) -> str:
        project = await self.get_project_settings(project_path)
        return normalize_artifacts_dir(project.artifacts_dir)
