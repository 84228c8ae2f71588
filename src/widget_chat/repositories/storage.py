"""Session store implementations."""

import json
from pathlib import Path
from typing import Optional, Union

import structlog

from ..config import get_settings
from .base import SessionStore

logger = structlog.get_logger()


class InMemorySessionStore(SessionStore):
    """Process-local slot, lost on restart."""

    def __init__(self, visitor_uuid: Optional[str] = None) -> None:
        self._visitor_uuid = visitor_uuid

    def get(self) -> Optional[str]:
        return self._visitor_uuid

    def set(self, visitor_uuid: str) -> None:
        self._visitor_uuid = visitor_uuid

    def clear(self) -> None:
        self._visitor_uuid = None


class FileSessionStore(SessionStore):
    """Slot persisted under a key of a small JSON file.

    Other keys in the file are left untouched, so several widgets can share
    one file with different keys.
    """

    def __init__(self, path: Union[str, Path], key: Optional[str] = None) -> None:
        self.path = Path(path)
        self.key = key or get_settings().visitor_storage_key

    def _read(self) -> dict:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("session_store_unreadable", path=str(self.path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    def get(self) -> Optional[str]:
        value = self._read().get(self.key)
        return value if isinstance(value, str) and value else None

    def set(self, visitor_uuid: str) -> None:
        data = self._read()
        data[self.key] = visitor_uuid
        self._write(data)

    def clear(self) -> None:
        data = self._read()
        if data.pop(self.key, None) is not None:
            self._write(data)
