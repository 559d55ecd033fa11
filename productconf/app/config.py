"""Runtime configuration for the settings resolver and cipher provider."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType


class SettingsValidationError(RuntimeError):
    """Raised when the runtime configuration is invalid."""


@dataclass(frozen=True)
class SettingsValidationResult:
    """Represents the outcome of validating the runtime settings."""

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def is_clean(self) -> bool:
        """Return ``True`` when no warnings or errors were produced."""

        return not self.errors and not self.warnings


DEFAULT_SETTINGS_FILENAME = "product_settings.json"
DEFAULT_APP_CONFIG_PATH = Path(".productconf") / "appsettings.json"

VALID_KEY_SIZES = MappingProxyType({16: "AES-128", 24: "AES-192", 32: "AES-256"})
MAX_SALT_LENGTH = 1 << 20


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on blank values."""

    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise SettingsValidationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw and raw.strip():
        return Path(raw.strip()).expanduser()
    return default


def _user_profile_dir() -> Path:
    return Path.home()


@dataclass(frozen=True)
class Settings:
    """Container for the library's runtime configuration."""

    application_name: str = field(
        default_factory=lambda: os.getenv(
            "PRODUCTCONF_APPLICATION_NAME", "Product Settings"
        ).strip()
    )
    settings_file: Path = field(
        default_factory=lambda: _env_path(
            "PRODUCTCONF_SETTINGS_FILE",
            _user_profile_dir() / DEFAULT_SETTINGS_FILENAME,
        )
    )
    app_config_file: Path = field(
        default_factory=lambda: _env_path(
            "PRODUCTCONF_APP_CONFIG_FILE",
            _user_profile_dir() / DEFAULT_APP_CONFIG_PATH,
        )
    )
    key_size: int = field(
        default_factory=lambda: _env_int("PRODUCTCONF_KEY_SIZE", 32)
    )
    salt_length_min: int = field(
        default_factory=lambda: _env_int("PRODUCTCONF_SALT_LENGTH_MIN", 2048)
    )
    salt_length_max: int = field(
        default_factory=lambda: _env_int("PRODUCTCONF_SALT_LENGTH_MAX", 4096)
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    def validate(self) -> SettingsValidationResult:
        """Validate configuration values and return collected issues."""

        errors: list[str] = []
        warnings: list[str] = []

        if not self.application_name:
            errors.append("Application name must not be empty.")

        if self.key_size not in VALID_KEY_SIZES:
            errors.append("Key size must be 16, 24 or 32 bytes.")

        if self.salt_length_min <= 0:
            errors.append("Minimum salt length must be positive.")
        if self.salt_length_max > MAX_SALT_LENGTH:
            errors.append(f"Maximum salt length must not exceed {MAX_SALT_LENGTH} bytes.")
        if self.salt_length_max <= self.salt_length_min:
            errors.append("Maximum salt length must exceed the minimum salt length.")

        if (
            self.log_level.upper() not in logging._nameToLevel
        ):  # noqa: SLF001 - accessing internals
            errors.append("Log level must be a valid logging level name.")

        if self.settings_file.is_dir():
            errors.append(f"Settings file {self.settings_file} is a directory.")
        if self.app_config_file.is_dir():
            errors.append(f"App config file {self.app_config_file} is a directory.")

        try:
            self.settings_file.expanduser().resolve().relative_to(
                _user_profile_dir().resolve()
            )
        except ValueError:
            warnings.append(
                "Settings file lives outside the user profile directory; "
                "other accounts may be able to read it."
            )

        return SettingsValidationResult(tuple(errors), tuple(warnings))

    def ensure_valid(self, *, strict: bool = False) -> SettingsValidationResult:
        """Validate settings and optionally treat warnings as errors."""

        result = self.validate()
        if result.errors or (strict and result.warnings):
            raise SettingsValidationError("; ".join(result.errors + result.warnings))
        return result


@lru_cache
def get_settings() -> Settings:
    """Return cached runtime settings."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached settings, primarily for testing purposes."""

    get_settings.cache_clear()


__all__ = [
    "DEFAULT_SETTINGS_FILENAME",
    "MAX_SALT_LENGTH",
    "Settings",
    "SettingsValidationError",
    "SettingsValidationResult",
    "VALID_KEY_SIZES",
    "get_settings",
    "reset_settings_cache",
]
