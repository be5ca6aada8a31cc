"""Simple JSON-based config store."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from models import RefinementLevel

logger = logging.getLogger(__name__)

DEFAULTS = {
    "hotkey_toggle": "<alt>+<space>",
    "hotkey_pause": "<alt>+p",
    "hotkey_cancel": "<esc>",
    "refinement_level": RefinementLevel.REFINE.value,
    "language": "pt",
    "auto_paste": True,
    "live_transcription": True,
}


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "stream_dictate" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get_api_key(self, provider: str) -> str:
        data = self._read_all()
        return str(data.get(f"{provider}_api_key", ""))

    def set_api_key(self, provider: str, key: str) -> None:
        self.set(f"{provider}_api_key", key)

    def get_hotkey(self, action: str) -> str:
        return str(self.get(f"hotkey_{action}"))

    def get_refinement_level(self) -> RefinementLevel:
        return RefinementLevel.from_stored_value(str(self.get("refinement_level")))

    def set_refinement_level(self, level: RefinementLevel) -> None:
        self.set("refinement_level", level.value)

    def get_language(self) -> str:
        return str(self.get("language"))

    def get_auto_paste(self) -> bool:
        return bool(self.get("auto_paste"))

    def get_live_transcription(self) -> bool:
        return bool(self.get("live_transcription"))

    def get(self, key: str) -> object:
        data = self._read_all()
        return data.get(key, DEFAULTS.get(key))

    def set(self, key: str, value: object) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", self._path, exc)
            return {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


class ConfigCredentialProvider:
    """Resolve API keys from the config store, then from the environment."""

    def __init__(self, store: JsonConfigStore) -> None:
        self._store = store

    def openai_api_key(self) -> str:
        return self._store.get_api_key("openai") or os.getenv("OPENAI_API_KEY", "")

    def dashscope_api_key(self) -> str:
        return self._store.get_api_key("dashscope") or os.getenv("DASHSCOPE_API_KEY", "")
