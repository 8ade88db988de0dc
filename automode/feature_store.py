"""
Feature Store
=============

File-backed feature metadata under ``<project>/.automaker/features/<id>/``:

- ``feature.json``     full Feature document, read-modify-atomic-write
- ``agent-output.md``  narrative log of agent output, replaced on each write

Writes go through a temp file in the same directory followed by
``os.replace`` so readers never see a half-written document. Updates to one
feature are serialized with a per-feature asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Callable

from automode.models import (
    Feature,
    FeatureStatus,
    PlanSpec,
    WizardState,
    utc_now_iso,
)

_logger = logging.getLogger(__name__)

FEATURE_FILE = "feature.json"
AGENT_OUTPUT_FILE = "agent-output.md"
IMAGES_DIR = "images"


def automaker_dir(project_path: str | Path) -> Path:
    return Path(project_path) / ".automaker"


def features_dir(project_path: str | Path) -> Path:
    return automaker_dir(project_path) / "features"


def feature_dir(project_path: str | Path, feature_id: str) -> Path:
    return features_dir(project_path) / feature_id


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class FeatureStore:
    """Async facade over the feature files of any number of projects."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock_for(self, project_path: str | Path, feature_id: str) -> asyncio.Lock:
        return self._locks[str(feature_dir(project_path, feature_id))]

    # -------------------------------------------------------------------------
    # feature.json
    # -------------------------------------------------------------------------

    @staticmethod
    def _read_feature(path: Path) -> Feature | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            _logger.warning("Could not read %s: %s", path, e)
            return None
        if not isinstance(data, dict) or "id" not in data:
            _logger.warning("Ignoring malformed feature document %s", path)
            return None
        return Feature.from_dict(data)

    @staticmethod
    def _write_feature(path: Path, feature: Feature) -> None:
        atomic_write_text(path, json.dumps(feature.to_dict(), indent=2))

    async def load_feature(self, project_path: str | Path, feature_id: str) -> Feature | None:
        path = feature_dir(project_path, feature_id) / FEATURE_FILE
        return await asyncio.to_thread(self._read_feature, path)

    async def save_feature(self, project_path: str | Path, feature: Feature) -> None:
        path = feature_dir(project_path, feature.id) / FEATURE_FILE
        async with self._lock_for(project_path, feature.id):
            await asyncio.to_thread(self._write_feature, path, feature)

    async def update(
        self,
        project_path: str | Path,
        feature_id: str,
        mutator: Callable[[Feature], None],
    ) -> Feature | None:
        """
        Read, mutate and atomically rewrite one feature.

        Returns the updated feature, or None when the document is missing.
        """
        path = feature_dir(project_path, feature_id) / FEATURE_FILE
        async with self._lock_for(project_path, feature_id):
            feature = await asyncio.to_thread(self._read_feature, path)
            if feature is None:
                _logger.warning("Cannot update missing feature %s", feature_id)
                return None
            mutator(feature)
            feature.updated_at = utc_now_iso()
            await asyncio.to_thread(self._write_feature, path, feature)
            return feature

    async def update_status(
        self, project_path: str | Path, feature_id: str, status: str
    ) -> Feature | None:
        status = status.value if isinstance(status, FeatureStatus) else status

        def apply(feature: Feature) -> None:
            feature.status = status
            if status == FeatureStatus.WAITING_APPROVAL.value:
                feature.just_finished_at = utc_now_iso()
            else:
                feature.just_finished_at = None

        _logger.info("Feature %s status -> %s", feature_id, status)
        return await self.update(project_path, feature_id, apply)

    async def update_plan_spec(
        self, project_path: str | Path, feature_id: str, plan: PlanSpec
    ) -> Feature | None:
        snapshot = PlanSpec.from_dict(plan.to_dict())

        def apply(feature: Feature) -> None:
            feature.plan_spec = snapshot

        return await self.update(project_path, feature_id, apply)

    async def update_wizard_state(
        self, project_path: str | Path, feature_id: str, wizard: WizardState
    ) -> Feature | None:
        snapshot = WizardState.from_dict(wizard.to_dict())

        def apply(feature: Feature) -> None:
            feature.wizard = snapshot

        return await self.update(project_path, feature_id, apply)

    async def load_all_features(self, project_path: str | Path) -> list[Feature]:
        """Every readable feature of a project, sorted by directory name."""

        def read_all() -> list[Feature]:
            root = features_dir(project_path)
            if not root.is_dir():
                return []
            loaded = []
            for entry in sorted(root.iterdir()):
                if not entry.is_dir():
                    continue
                feature = self._read_feature(entry / FEATURE_FILE)
                if feature is not None:
                    loaded.append(feature)
            return loaded

        return await asyncio.to_thread(read_all)

    # -------------------------------------------------------------------------
    # agent-output.md
    # -------------------------------------------------------------------------

    def agent_output_path(self, project_path: str | Path, feature_id: str) -> Path:
        return feature_dir(project_path, feature_id) / AGENT_OUTPUT_FILE

    async def context_exists(self, project_path: str | Path, feature_id: str) -> bool:
        path = self.agent_output_path(project_path, feature_id)
        return await asyncio.to_thread(path.is_file)

    async def read_agent_output(self, project_path: str | Path, feature_id: str) -> str:
        """Narrative log contents, or an empty string when there is none."""
        path = self.agent_output_path(project_path, feature_id)

        def read() -> str:
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return ""

        return await asyncio.to_thread(read)

    async def write_agent_output(
        self, project_path: str | Path, feature_id: str, content: str
    ) -> None:
        path = self.agent_output_path(project_path, feature_id)
        await asyncio.to_thread(atomic_write_text, path, content)

    async def append_agent_output(
        self, project_path: str | Path, feature_id: str, content: str, separator: str = "\n\n"
    ) -> None:
        existing = await self.read_agent_output(project_path, feature_id)
        if existing.strip():
            content = f"{existing.rstrip()}{separator}{content}"
        await self.write_agent_output(project_path, feature_id, content)

    # -------------------------------------------------------------------------
    # images
    # -------------------------------------------------------------------------

    async def copy_images(
        self, project_path: str | Path, feature_id: str, image_paths: list[str]
    ) -> list[str]:
        """Copy images into the feature's images dir. Failed copies are skipped."""
        target_dir = feature_dir(project_path, feature_id) / IMAGES_DIR

        def copy_all() -> list[str]:
            target_dir.mkdir(parents=True, exist_ok=True)
            copied = []
            for source in image_paths:
                dest = target_dir / Path(source).name
                try:
                    shutil.copyfile(source, dest)
                except OSError as e:
                    _logger.error("Failed to copy follow-up image %s: %s", source, e)
                    continue
                copied.append(str(dest))
            return copied

        return await asyncio.to_thread(copy_all)
