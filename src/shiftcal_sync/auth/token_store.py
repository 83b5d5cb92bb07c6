"""Refresh token persistence."""

import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class FileTokenStore:
    """Keeps the Google refresh token in an owner-only JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[str]:
        """Return the stored refresh token, or None if absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable token store {self.path}: {e}")
            return None
        token = data.get('refresh_token') if isinstance(data, dict) else None
        return token or None

    def save(self, refresh_token: str) -> None:
        self._write({'refresh_token': refresh_token})

    def clear(self) -> None:
        if self.path.exists():
            self._write({})

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        with open(self.path, 'w') as f:
            json.dump(data, f)
        # Owner read/write only
        self.path.chmod(0o600)
