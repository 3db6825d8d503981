from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from marksync.client.models import SyncMode

logger = logging.getLogger(__name__)

SYNC_MODE_KEY = "bookmark_sync_mode"
THEME_KEY = "theme"
THEMES = ("light", "dark")
DEFAULT_THEME = "light"


class ClientPreferences:
    """Small per-origin key/value file that survives restarts.

    The file holds one JSON object per server origin so the same storage path
    can be shared by clients pointed at different servers.
    """

    def __init__(self, path: str | Path, origin: str):
        self.path = Path(path)
        self.origin = origin.rstrip("/")

    def _load_all(self) -> dict:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable preferences file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _load(self) -> dict:
        section = self._load_all().get(self.origin)
        return section if isinstance(section, dict) else {}

    def _save(self, values: dict) -> None:
        data = self._load_all()
        data[self.origin] = values
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get_item(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        values = self._load()
        values[key] = value
        self._save(values)

    def remove_item(self, key: str) -> None:
        values = self._load()
        if values.pop(key, None) is not None:
            self._save(values)

    @property
    def sync_mode(self) -> SyncMode:
        return SyncMode.parse(self.get_item(SYNC_MODE_KEY), SyncMode.NORMAL)

    @sync_mode.setter
    def sync_mode(self, mode) -> None:
        self.set_item(SYNC_MODE_KEY, SyncMode(mode).value)

    @property
    def theme(self) -> str:
        theme = self.get_item(THEME_KEY)
        return theme if theme in THEMES else DEFAULT_THEME

    @theme.setter
    def theme(self, theme: str) -> None:
        if theme not in THEMES:
            raise ValueError(f"unknown theme: {theme}")
        self.set_item(THEME_KEY, theme)

    def toggle_theme(self) -> str:
        self.theme = "dark" if self.theme == "light" else "light"
        return self.theme
