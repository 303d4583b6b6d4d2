"""Per-cabal settings persistence (joined private-message channels)."""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Protocol

DEFAULT_SETTINGS_PATH = Path.home() / ".cabal" / "settings.json"


def default_cabal_settings() -> Dict[str, Any]:
    return {"joined_private_messages": []}


def _normalize(settings: Any) -> Dict[str, Any]:
    normalized = default_cabal_settings()
    if not isinstance(settings, dict):
        return normalized
    normalized.update(settings)
    joined = normalized.get("joined_private_messages")
    if not isinstance(joined, list):
        joined = []
    normalized["joined_private_messages"] = [str(key) for key in joined]
    return normalized


class SettingsStore(Protocol):
    def get(self, cabal_key: str) -> Dict[str, Any]: ...

    def write(self, cabal_key: str, settings: Dict[str, Any]) -> None: ...


class InMemorySettingsStore:
    def __init__(self) -> None:
        self._settings: Dict[str, Dict[str, Any]] = {}

    def get(self, cabal_key: str) -> Dict[str, Any]:
        return _normalize(copy.deepcopy(self._settings.get(cabal_key)))

    def write(self, cabal_key: str, settings: Dict[str, Any]) -> None:
        self._settings[cabal_key] = _normalize(copy.deepcopy(settings))


def _atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class JsonSettingsStore:
    """Stores every cabal's settings in one JSON document keyed by cabal key."""

    def __init__(self, path: Path | str = DEFAULT_SETTINGS_PATH) -> None:
        self.path = Path(path).expanduser()

    def _load_all(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, ValueError):
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def get(self, cabal_key: str) -> Dict[str, Any]:
        return _normalize(self._load_all().get(cabal_key))

    def write(self, cabal_key: str, settings: Dict[str, Any]) -> None:
        data = self._load_all()
        data[cabal_key] = _normalize(settings)
        _atomic_write_json(self.path, data)
