"""Persisted local state - device identity, last host, last joined match.

Simple string key/values saved as JSON in the user's home directory. A missing
file or key is a normal first-run state.
"""
import json
import logging
import uuid
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)

# Settings file location (in user's home directory)
SETTINGS_DIR = Path.home() / ".ttt_client"
PREFS_FILE = SETTINGS_DIR / "prefs.json"

DEVICE_ID_KEY = "device_id"
LAST_HOST_KEY = "last_host"
LAST_MATCH_ID_KEY = "last_match_id"


class Preferences:
    """String key/value store backed by a JSON file. Every write is saved."""

    def __init__(self, path: Union[str, Path] = PREFS_FILE):
        self.path = Path(path)
        self._values: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        try:
            if self.path.exists():
                with open(self.path, 'r', encoding='utf-8') as f:
                    saved = json.load(f)
                if isinstance(saved, dict):
                    return {str(k): str(v) for k, v in saved.items()}
                logger.warning(f"Preferences file {self.path} is not an object, ignoring it")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load preferences: {e}")
        return {}

    def save(self):
        """Save preferences to file."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(self._values, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to save preferences to {self.path}: {e}")

    def has(self, key: str) -> bool:
        return key in self._values

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def set(self, key: str, value: str):
        self._values[key] = value
        self.save()

    def delete(self, key: str):
        if self._values.pop(key, None) is not None:
            self.save()


def get_or_create_device_id(prefs: Preferences) -> str:
    """Stable per-device identity, generated on first use."""
    device_id = prefs.get(DEVICE_ID_KEY)
    if device_id:
        return device_id

    device_id = uuid.uuid4().hex
    prefs.set(DEVICE_ID_KEY, device_id)
    logger.info(f"Generated new device id {device_id}")
    return device_id
