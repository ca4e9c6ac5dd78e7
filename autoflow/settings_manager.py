"""Persistence of engine settings."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from .models import EngineSettings

logger = logging.getLogger(__name__)


class SettingsManager:
    """Loads and saves EngineSettings as JSON."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = Path(storage_path) if storage_path else Path.home() / ".autoflow" / "settings.json"

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    def load(self) -> EngineSettings:
        """Load settings, returning defaults if the file is missing or corrupt."""
        path = self.storage_path
        if not path.exists():
            return EngineSettings()

        try:
            raw_data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw_data, dict):
                raise ValueError("settings file has invalid structure")
            return EngineSettings.from_dict(raw_data)
        except (OSError, ValueError, TypeError) as exc:
            # Keep the broken file next to the original for inspection.
            backup_path = path.with_suffix(".bak")
            logger.warning("settings file %s unreadable (%s); moved to %s", path, exc, backup_path)
            try:
                path.replace(backup_path)
            except OSError:
                logger.warning("could not back up settings file %s", path)
            return EngineSettings()

    def save(self, settings: EngineSettings) -> None:
        """Persist settings atomically."""
        path = self.storage_path
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_path = path.with_suffix(".tmp")
        payload = json.dumps(settings.to_dict(), indent=2, ensure_ascii=False)
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)
