"""
Session state kept between runs: the last opened files and whether each one
was protected with a passphrase. The passphrase itself is never stored.
"""

import os
import json
import logging
from typing import Any, Dict, List, Optional

from . import config
from .errors import StorageError

logger = logging.getLogger(__name__)

RECENT_FILES_KEY = "recent_files"
PASSPHRASE_FLAGS_KEY = "passphrase_flags"


def default_session_dir() -> str:
    """~/.hashed-potato"""
    return os.path.join(os.path.expanduser("~"), config.CONFIG_DIR_NAME)


class SessionStore:
    """Small JSON key-value store in the user's config directory."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or default_session_dir()
        self.state_file = os.path.join(self.directory, config.SESSION_STATE_FILE)

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.state_file):
            return {}
        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read session state {self.state_file}: {e}", stage="session") from e
        return state if isinstance(state, dict) else {}

    def _save(self, state: Dict[str, Any]) -> None:
        os.makedirs(self.directory, exist_ok=True)
        tmp_path = self.state_file + '.tmp'
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=2)
            os.replace(tmp_path, self.state_file)
        except OSError as e:
            raise StorageError(f"Cannot write session state {self.state_file}: {e}", stage="session") from e

    def get_state(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set_state(self, key: str, value: Any) -> None:
        state = self._load()
        state[key] = value
        self._save(state)

    def keys(self) -> List[str]:
        return list(self._load().keys())

    def clear_states(self) -> None:
        self._save({})

    def recent_files(self) -> List[str]:
        """
        Recently opened document paths, most recent first.
        Paths that no longer exist are left out.
        """
        return [p for p in self.get_state(RECENT_FILES_KEY, []) if os.path.exists(p)]

    def remember_file(self, path: str) -> None:
        """
        Put a path at the front of the recent files list.
        Ensures uniqueness and keeps the list limited to MAX_RECENT_FILES.
        """
        path = os.path.abspath(path)
        recent = self.recent_files()
        if path in recent:
            recent.remove(path)
        recent.insert(0, path)
        self.set_state(RECENT_FILES_KEY, recent[:config.MAX_RECENT_FILES])

    def last_file(self) -> Optional[str]:
        recent = self.recent_files()
        return recent[0] if recent else None

    def set_passphrase_flag(self, file_id: str, has_passphrase: bool) -> None:
        flags = self.get_state(PASSPHRASE_FLAGS_KEY, {})
        flags[file_id] = bool(has_passphrase)
        self.set_state(PASSPHRASE_FLAGS_KEY, flags)

    def has_passphrase_flag(self, file_id: str) -> bool:
        return bool(self.get_state(PASSPHRASE_FLAGS_KEY, {}).get(file_id, False))
