"""Settings the hosted API client needs to authenticate a product."""

from __future__ import annotations

import hmac
import logging

from .settings_base import EncryptionKind, SettingsResolver, get_settings_resolver

logger = logging.getLogger(__name__)

EXTERNAL_KEY_SETTING = "ExternalKey"
PRODUCT_ID_SETTING = "ProductId"

_MISSING_KEY_MESSAGE = (
    "Your product's external key was not found or is not accessible. Set "
    f"{EXTERNAL_KEY_SETTING} in the settings file, the environment or the "
    "application configuration. The key is listed under the external attributes "
    "of the product in the marketplace panel."
)


class ProductConfigurationError(RuntimeError):
    """Raised when the product is not configured to call the hosted API."""


class ProductSettings:
    """Typed accessors over a :class:`SettingsResolver`."""

    def __init__(self, resolver: SettingsResolver | None = None) -> None:
        self._resolver = resolver

    @property
    def resolver(self) -> SettingsResolver:
        if self._resolver is None:
            self._resolver = get_settings_resolver()
        return self._resolver

    def external_key(self, encryption: EncryptionKind = EncryptionKind.NONE) -> str:
        """Return the external API key, or ``""`` when none is configured."""

        return self.resolver.get_setting(
            EXTERNAL_KEY_SETTING, str, default="", encryption=encryption
        )

    def external_key_exists(self) -> bool:
        return bool(self.external_key())

    def verify_external_key(self) -> str:
        """Return the external key or raise :class:`ProductConfigurationError`."""

        key = self.external_key()
        if not key:
            raise ProductConfigurationError(_MISSING_KEY_MESSAGE)
        return key

    def is_valid_backend_request(self, candidate: str | None) -> bool:
        """Check the key sent by the backend against the configured one."""

        key = self.external_key()
        if not key or not candidate:
            if not key:
                logger.warning("Rejected backend request: no external key configured")
            return False
        return hmac.compare_digest(key.encode("utf-8"), candidate.encode("utf-8"))

    def product_id(self) -> int:
        return self.resolver.get_setting(PRODUCT_ID_SETTING, int)


__all__ = [
    "EXTERNAL_KEY_SETTING",
    "PRODUCT_ID_SETTING",
    "ProductConfigurationError",
    "ProductSettings",
]
