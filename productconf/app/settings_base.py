"""Layered settings resolution with per-value encryption.

A setting is resolved from three tiers in strict order:

1. the JSON settings file in the user's profile directory, whose entries
   carry an ``Encryption`` tag and are decrypted transparently;
2. an environment variable with exactly the same name;
3. the application configuration store.

The first non-empty value wins and is converted to the requested type.
When every tier misses, :class:`NullSettingValueError` is raised unless the
caller supplied a default.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, MutableMapping

from .app_config import AppConfigStore, get_app_config
from .config import get_settings
from .logging_utils import setting_context
from .security import SecureCipher

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


class EncryptionKind(str, enum.Enum):
    """How the stored value of a setting must be interpreted."""

    NONE = "None"
    AES = "Aes"

    @classmethod
    def parse(cls, value: Any) -> "EncryptionKind":
        """Accept a member, its name or value (any case), its ordinal or ``None``."""

        if isinstance(value, cls):
            return value
        if value is None:
            return cls.NONE
        if isinstance(value, int) and not isinstance(value, bool):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
        elif isinstance(value, str):
            candidate = value.strip().lower()
            for member in cls:
                if candidate in (member.value.lower(), member.name.lower()):
                    return member
        raise ValueError(f"Unknown encryption kind {value!r}")


class SettingsError(RuntimeError):
    """Base class for settings resolution failures."""


class NullSettingValueError(SettingsError, LookupError):
    """Raised when no tier defines a setting and no default was given."""

    def __init__(self, name: str, application_name: str = "the application") -> None:
        self.name = name
        super().__init__(
            f"There is currently no definition that {application_name} can use for: {name}."
        )


class SettingConversionError(SettingsError, ValueError):
    """Raised when a resolved value cannot be converted to the requested type."""

    def __init__(self, name: str, target: Any) -> None:
        self.name = name
        self.target = target
        target_name = getattr(target, "__name__", repr(target))
        super().__init__(f"Setting {name} cannot be converted to {target_name}.")


class SettingsPersistenceError(SettingsError):
    """Raised by :meth:`PersistenceResult.raise_for_error`."""


@dataclass(frozen=True)
class PersistenceResult:
    """Outcome of reading or writing the settings file."""

    operation: str
    path: Path
    ok: bool = True
    error: str | None = None

    def raise_for_error(self) -> "PersistenceResult":
        if not self.ok:
            raise SettingsPersistenceError(
                f"Failed to {self.operation} settings file {self.path}: {self.error}"
            )
        return self


@dataclass(frozen=True)
class SettingEntry:
    """One stored setting; ``value`` is base64 ciphertext unless unencrypted."""

    key: str
    value: str
    encryption: EncryptionKind = EncryptionKind.NONE

    def to_document(self) -> Dict[str, str]:
        return {"Encryption": self.encryption.value, "Value": self.value}

    @classmethod
    def from_document(cls, key: str, document: Any) -> "SettingEntry":
        if not isinstance(document, Mapping):
            raise ValueError(f"Setting {key} must be a JSON object")
        # Property names are matched without regard to case; unknown ones are ignored.
        fields = {str(name).lower(): value for name, value in document.items()}
        value = fields.get("value")
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise ValueError(f"Setting {key} has a non-string value")
        encryption = EncryptionKind.parse(fields.get("encryption", EncryptionKind.NONE))
        return cls(key=key, value=value, encryption=encryption)


def parse_settings_document(text: str) -> Dict[str, SettingEntry]:
    """Parse the settings file contents into entries keyed by name."""

    if not text.strip():
        return {}
    document = json.loads(text)
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ValueError("Settings file must contain a JSON object")
    return {
        key: SettingEntry.from_document(key, value) for key, value in document.items()
    }


def render_settings_document(entries: Mapping[str, SettingEntry]) -> str:
    """Serialise entries deterministically: same entries, same bytes."""

    document = {key: entries[key].to_document() for key in sorted(entries)}
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


def _parse_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    raise ValueError(f"{raw!r} is not a boolean")


def _parse_enum(enum_type: type[enum.Enum], raw: str) -> enum.Enum:
    candidate = raw.strip()
    for member in enum_type:
        if member.name.lower() == candidate.lower():
            return member
    try:
        return enum_type(candidate)
    except ValueError:
        if candidate.lstrip("-").isdigit():
            return enum_type(int(candidate))
        raise


def convert_setting(name: str, raw: str, as_type: Any = str) -> Any:
    """Convert the plaintext of a setting to ``as_type``.

    Enumerations are matched by member name without regard to case, then by
    value. Booleans accept ``1/0``, ``true/false``, ``yes/no`` and ``on/off``.
    Any other type is called with the string.
    """

    if as_type is str:
        return raw
    try:
        if as_type is bool:
            return _parse_bool(raw)
        if isinstance(as_type, type) and issubclass(as_type, enum.Enum):
            return _parse_enum(as_type, raw)
        if as_type in (int, float):
            return as_type(raw.strip())
        return as_type(raw)
    except (ValueError, TypeError, ArithmeticError) as exc:
        raise SettingConversionError(name, as_type) from exc


def _atomic_write(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        try:
            os.chmod(tmp_name, 0o600)
        except OSError:
            pass
        os.replace(tmp_name, path)
    except OSError:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class SettingsResolver:
    """Resolve named settings through the file, environment and app config.

    Lookups read an immutable snapshot of the stored entries and never
    block. Mutations take a lock, build a new snapshot and rewrite the whole
    file, so concurrent writers cannot interleave partial files.
    """

    def __init__(
        self,
        settings_file: Path | str | None = None,
        *,
        app_config: AppConfigStore | None = None,
        environ: Mapping[str, str] | None = None,
        application_name: str | None = None,
        cipher_factory: Callable[[AppConfigStore], SecureCipher] | None = None,
    ) -> None:
        runtime = get_settings()
        self.settings_file = (
            Path(settings_file) if settings_file is not None else runtime.settings_file
        )
        self.application_name = application_name or runtime.application_name
        self._app_config = app_config
        self._environ = environ
        self._cipher_factory = cipher_factory or SecureCipher
        self._cipher: SecureCipher | None = None
        self._cipher_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._entries: Mapping[str, SettingEntry] = MappingProxyType({})

    @property
    def app_config(self) -> AppConfigStore:
        if self._app_config is None:
            self._app_config = get_app_config()
        return self._app_config

    @property
    def cipher(self) -> SecureCipher:
        """Cipher built on first use; key material is loaded at that point."""

        if self._cipher is None:
            with self._cipher_lock:
                if self._cipher is None:
                    self._cipher = self._cipher_factory(self.app_config)
        return self._cipher

    @property
    def entries(self) -> Mapping[str, SettingEntry]:
        return self._entries

    def initialize(self) -> PersistenceResult:
        """Load the settings file; call once after construction."""

        return self.read_settings()

    # Persistence -------------------------------------------------------
    def read_settings(self) -> PersistenceResult:
        """Replace the in-memory entries with the settings file contents.

        A missing file leaves the entries untouched. An unreadable or
        unparsable file is logged and also leaves them untouched; the
        failure is reported through the returned result.
        """

        with self._write_lock:
            try:
                if not self.settings_file.exists():
                    logger.debug("Settings file %s does not exist", self.settings_file)
                    return PersistenceResult("read", self.settings_file)
                text = self.settings_file.read_text(encoding="utf-8")
                entries = parse_settings_document(text)
            except (OSError, ValueError, RecursionError) as exc:
                # RecursionError: pathologically nested JSON.
                logger.warning(
                    "Unable to read settings file %s: %s", self.settings_file, exc
                )
                return PersistenceResult(
                    "read", self.settings_file, ok=False, error=str(exc)
                )
            self._entries = MappingProxyType(entries)
            logger.debug("Loaded %d settings from %s", len(entries), self.settings_file)
            return PersistenceResult("read", self.settings_file)

    def write_settings(self) -> PersistenceResult:
        """Overwrite the settings file with every in-memory entry."""

        with self._write_lock:
            return self._write(self._entries)

    def _write(self, entries: Mapping[str, SettingEntry]) -> PersistenceResult:
        try:
            _atomic_write(self.settings_file, render_settings_document(entries))
        except OSError as exc:
            logger.warning("Unable to write settings file %s: %s", self.settings_file, exc)
            return PersistenceResult("write", self.settings_file, ok=False, error=str(exc))
        logger.debug("Wrote %d settings to %s", len(entries), self.settings_file)
        return PersistenceResult("write", self.settings_file)

    def _mutate(self, apply: Callable[[MutableMapping[str, SettingEntry]], bool]) -> PersistenceResult:
        with self._write_lock:
            if not self._entries:
                self.read_settings()
            entries = dict(self._entries)
            if not apply(entries):
                return PersistenceResult("write", self.settings_file)
            self._entries = MappingProxyType(entries)
            return self._write(entries)

    def add_setting(
        self,
        key: str,
        value: Any,
        encryption: EncryptionKind | str = EncryptionKind.NONE,
        *,
        preencrypted: bool = False,
    ) -> PersistenceResult:
        """Insert or overwrite a setting and rewrite the settings file.

        Plaintext is encrypted according to ``encryption`` unless
        ``preencrypted`` says ``value`` already holds the stored form.
        """

        if not key:
            raise ValueError("Setting key must not be empty")
        kind = EncryptionKind.parse(encryption)
        text = value if isinstance(value, str) else str(value)
        stored = text if preencrypted else _ENCODERS[kind](self, text)
        if not stored:
            # Empty values are never tagged as encrypted.
            kind = EncryptionKind.NONE
        entry = SettingEntry(key=key, value=stored, encryption=kind)

        def apply(entries: MutableMapping[str, SettingEntry]) -> bool:
            entries[key] = entry
            return True

        with setting_context(key):
            result = self._mutate(apply)
            if result.ok:
                logger.info("Stored setting (encryption=%s)", kind.value)
        return result

    def remove_setting(self, key: str) -> PersistenceResult:
        """Delete a stored setting so lookups fall through to lower tiers."""

        def apply(entries: MutableMapping[str, SettingEntry]) -> bool:
            return entries.pop(key, None) is not None

        with setting_context(key):
            return self._mutate(apply)

    # Resolution --------------------------------------------------------
    def _lookup(self, name: str, encryption: EncryptionKind) -> tuple[str, EncryptionKind]:
        entry = self._entries.get(name)
        if entry is not None and entry.value:
            logger.debug("Resolved from settings file")
            return entry.value, entry.encryption

        environ = self._environ if self._environ is not None else os.environ
        value = environ.get(name)
        if value:
            logger.debug("Resolved from environment")
            return value, encryption

        value = self.app_config.get(name)
        if value:
            logger.debug("Resolved from application configuration")
            return value, encryption

        raise NullSettingValueError(name, self.application_name) from KeyError(name)

    def get_setting(
        self,
        name: str,
        as_type: Any = str,
        default: Any = MISSING,
        encryption: EncryptionKind | str = EncryptionKind.NONE,
    ) -> Any:
        """Resolve ``name`` and convert it to ``as_type``.

        ``encryption`` describes values found in the environment or the app
        config; entries from the settings file carry their own tag. The
        default only replaces a missing setting: conversion and decryption
        failures always propagate.
        """

        kind = EncryptionKind.parse(encryption)
        with setting_context(name):
            try:
                raw, kind = self._lookup(name, kind)
            except NullSettingValueError:
                if default is MISSING:
                    raise
                logger.debug("Setting undefined; using caller default")
                return default
            plaintext = _DECODERS[kind](self, raw)
            return convert_setting(name, plaintext, as_type)

    def has_setting(self, name: str) -> bool:
        """Return ``True`` when any tier defines a non-empty value."""

        try:
            self._lookup(name, EncryptionKind.NONE)
        except NullSettingValueError:
            return False
        return True


_Codec = Callable[[SettingsResolver, str], str]

_DECODERS: Mapping[EncryptionKind, _Codec] = MappingProxyType(
    {
        EncryptionKind.NONE: lambda resolver, value: value,
        EncryptionKind.AES: lambda resolver, value: resolver.cipher.decrypt_string(value),
    }
)

_ENCODERS: Mapping[EncryptionKind, _Codec] = MappingProxyType(
    {
        EncryptionKind.NONE: lambda resolver, value: value,
        EncryptionKind.AES: lambda resolver, value: resolver.cipher.encrypt_string(value),
    }
)


def is_elevated() -> bool:
    """Return ``True`` when the process runs with administrative rights."""

    if os.name == "nt":
        try:
            import ctypes

            return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
        except (AttributeError, OSError):
            return False
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0


@lru_cache
def get_settings_resolver() -> SettingsResolver:
    """Return the process-wide resolver, loading the settings file once."""

    resolver = SettingsResolver()
    resolver.initialize()
    return resolver


def reset_settings_resolver() -> None:
    """Forget the process-wide resolver, primarily for testing purposes."""

    get_settings_resolver.cache_clear()


__all__ = [
    "EncryptionKind",
    "MISSING",
    "NullSettingValueError",
    "PersistenceResult",
    "SettingConversionError",
    "SettingEntry",
    "SettingsError",
    "SettingsPersistenceError",
    "SettingsResolver",
    "convert_setting",
    "get_settings_resolver",
    "is_elevated",
    "parse_settings_document",
    "render_settings_document",
    "reset_settings_resolver",
]
