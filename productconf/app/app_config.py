"""Application configuration store used for fallbacks and key material."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterator, Mapping

from .config import get_settings

logger = logging.getLogger(__name__)


class AppConfigError(RuntimeError):
    """Raised when the application configuration cannot be read or written."""


class AppConfigStore(ABC):
    """Named string values shared by every component in the process."""

    @abstractmethod
    def get(self, name: str) -> str | None:
        """Return the stored value or ``None``."""
        ...

    @abstractmethod
    def set(self, name: str, value: str) -> None:
        ...

    @abstractmethod
    def remove(self, name: str) -> None:
        ...

    @abstractmethod
    def names(self) -> Iterator[str]:
        ...

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None


class MemoryAppConfig(AppConfigStore):
    """Dictionary backed store; nothing survives the process."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._values.get(name)

    def set(self, name: str, value: str) -> None:
        with self._lock:
            self._values[name] = value

    def remove(self, name: str) -> None:
        with self._lock:
            self._values.pop(name, None)

    def names(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._values))


class JsonFileAppConfig(AppConfigStore):
    """Store backed by a JSON object of string values on disk.

    The file is read on first access and rewritten atomically on every
    mutation. A file that is not a JSON object of strings raises
    :class:`AppConfigError` instead of being silently replaced.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._values: Dict[str, str] | None = None
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, str]:
        if self._values is not None:
            return self._values
        if not self.path.exists():
            self._values = {}
            return self._values
        try:
            document = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise AppConfigError(f"Failed reading app config {self.path}: {exc}") from exc
        if not isinstance(document, dict):
            raise AppConfigError(f"App config {self.path} must contain a JSON object")
        self._values = {str(key): str(value) for key, value in document.items()}
        return self._values

    def _flush(self, values: Dict[str, str]) -> None:
        payload = json.dumps(values, indent=2, sort_keys=True) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            try:
                os.chmod(tmp_name, 0o600)
            except OSError:
                pass
            os.replace(tmp_name, self.path)
        except OSError as exc:
            raise AppConfigError(f"Failed writing app config {self.path}: {exc}") from exc
        logger.debug("Wrote %d app config values to %s", len(values), self.path)

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._load().get(name)

    def set(self, name: str, value: str) -> None:
        with self._lock:
            values = dict(self._load())
            values[name] = value
            self._flush(values)
            self._values = values

    def remove(self, name: str) -> None:
        with self._lock:
            values = dict(self._load())
            if values.pop(name, None) is None:
                return
            self._flush(values)
            self._values = values

    def names(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._load()))

    def reload(self) -> None:
        """Drop the cached document so the next access rereads the file."""

        with self._lock:
            self._values = None


@lru_cache
def get_app_config() -> AppConfigStore:
    """Return the process-wide application configuration store."""

    return JsonFileAppConfig(get_settings().app_config_file)


def reset_app_config_cache() -> None:
    """Clear the cached store, primarily for testing purposes."""

    get_app_config.cache_clear()


__all__ = [
    "AppConfigError",
    "AppConfigStore",
    "JsonFileAppConfig",
    "MemoryAppConfig",
    "get_app_config",
    "reset_app_config_cache",
]
