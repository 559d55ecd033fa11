"""Salted AES-CBC encryption of individual setting values.

Every plaintext is wrapped as ``salt || payload || salt2`` before a single
CBC pass with PKCS7 padding, where both salts are random non-zero byte
strings of ``salt_length`` bytes. Decryption discards the salts by position
only: they are not verified, so the scheme detects no tampering. The layout
is kept byte-compatible with settings files written by earlier releases.

Key material (key, vector and salt length) lives in the application
configuration store under ``ConfigKey``, ``ConfigVector`` and ``ConfigSalt``.
Missing or inconsistent material is regenerated once, under a process-wide
lock, before the first cipher is built.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
import struct
import threading
from dataclasses import dataclass
from typing import Dict

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .app_config import AppConfigStore, get_app_config
from .config import MAX_SALT_LENGTH, VALID_KEY_SIZES, Settings, get_settings

logger = logging.getLogger(__name__)

CONFIG_KEY = "ConfigKey"
CONFIG_VECTOR = "ConfigVector"
CONFIG_SALT = "ConfigSalt"
KEY_MATERIAL_NAMES = (CONFIG_KEY, CONFIG_VECTOR, CONFIG_SALT)

BLOCK_SIZE_BITS = algorithms.AES.block_size
BLOCK_SIZE = BLOCK_SIZE_BITS // 8

_KEY_MATERIAL_LOCK = threading.Lock()


class CipherError(RuntimeError):
    """Raised when a value cannot be encrypted or decrypted."""


class DecryptLengthError(CipherError):
    """Raised when a decrypted payload is shorter than its two salts."""

    def __init__(self, length: int, salt_length: int) -> None:
        self.length = length
        self.salt_length = salt_length
        super().__init__(
            f"Decrypted payload of {length} bytes is shorter than the "
            f"{2 * salt_length} bytes of salt it must contain"
        )


class KeyMaterialError(CipherError):
    """Raised when stored key material is partial or inconsistent."""


@dataclass(frozen=True)
class KeyMaterial:
    """Symmetric key, CBC initialization vector and salt length."""

    key: bytes
    vector: bytes
    salt_length: int

    def __post_init__(self) -> None:
        if len(self.key) not in VALID_KEY_SIZES:
            raise KeyMaterialError(
                f"Key must be 16, 24 or 32 bytes, got {len(self.key)}"
            )
        if len(self.vector) != BLOCK_SIZE:
            raise KeyMaterialError(
                f"Vector must be {BLOCK_SIZE} bytes, got {len(self.vector)}"
            )
        if not 0 < self.salt_length <= MAX_SALT_LENGTH:
            raise KeyMaterialError(
                f"Salt length must be between 1 and {MAX_SALT_LENGTH}, "
                f"got {self.salt_length}"
            )

    @classmethod
    def from_encoded(cls, key: str, vector: str, salt: str) -> "KeyMaterial":
        """Build material from the base64 values kept in the config store."""

        try:
            raw_key = base64.b64decode(key, validate=True)
            raw_vector = base64.b64decode(vector, validate=True)
            salt_length = decode_salt_length(salt)
        except (binascii.Error, ValueError) as exc:
            raise KeyMaterialError(f"Key material is not valid base64: {exc}") from exc
        return cls(key=raw_key, vector=raw_vector, salt_length=salt_length)

    def encoded(self) -> Dict[str, str]:
        return {
            CONFIG_KEY: base64.b64encode(self.key).decode("ascii"),
            CONFIG_VECTOR: base64.b64encode(self.vector).decode("ascii"),
            CONFIG_SALT: encode_salt_length(self.salt_length),
        }


def encode_salt_length(salt_length: int) -> str:
    """Encode a salt length as base64 of a little-endian 32-bit integer."""

    return base64.b64encode(struct.pack("<i", salt_length)).decode("ascii")


def decode_salt_length(value: str) -> int:
    raw = base64.b64decode(value, validate=True)
    try:
        (salt_length,) = struct.unpack_from("<i", raw)
    except struct.error as exc:
        raise KeyMaterialError("Salt length must hold at least four bytes") from exc
    return salt_length


def generate_encryption_key(size: int | None = None) -> bytes:
    """Return a fresh random AES key (defaults to the configured size)."""

    size = size or get_settings().key_size
    if size not in VALID_KEY_SIZES:
        raise KeyMaterialError(f"Unsupported key size {size}")
    return os.urandom(size)


def generate_encryption_vector() -> bytes:
    """Return a fresh random CBC initialization vector."""

    return os.urandom(BLOCK_SIZE)


def generate_salt_length(settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    span = settings.salt_length_max - settings.salt_length_min
    if settings.salt_length_min <= 0 or span <= 0:
        raise KeyMaterialError(
            f"Invalid salt length range [{settings.salt_length_min}, {settings.salt_length_max})"
        )
    return settings.salt_length_min + secrets.randbelow(span)


def generate_key_material(settings: Settings | None = None) -> KeyMaterial:
    """Return new material that is independent of anything stored."""

    settings = settings or get_settings()
    return KeyMaterial(
        key=generate_encryption_key(settings.key_size),
        vector=generate_encryption_vector(),
        salt_length=generate_salt_length(settings),
    )


def _read_key_material(app_config: AppConfigStore) -> KeyMaterial | None:
    values = {name: app_config.get(name) for name in KEY_MATERIAL_NAMES}
    missing = [name for name, value in values.items() if not value]
    if len(missing) == len(KEY_MATERIAL_NAMES):
        return None
    if missing:
        raise KeyMaterialError(f"Key material is incomplete; missing {', '.join(missing)}")
    return KeyMaterial.from_encoded(
        values[CONFIG_KEY], values[CONFIG_VECTOR], values[CONFIG_SALT]
    )


def _store_key_material(app_config: AppConfigStore, material: KeyMaterial) -> None:
    for name, value in material.encoded().items():
        app_config.set(name, value)


def load_key_material(
    app_config: AppConfigStore | None = None, *, settings: Settings | None = None
) -> KeyMaterial:
    """Load key material, generating and persisting it when absent.

    The check and the generation run under one process-wide lock, so
    concurrent callers that find the store empty produce a single set of
    material and all of them observe it.
    """

    app_config = app_config or get_app_config()
    with _KEY_MATERIAL_LOCK:
        try:
            material = _read_key_material(app_config)
        except KeyMaterialError as exc:
            logger.warning("Regenerating key material: %s", exc)
            material = None
        if material is None:
            material = generate_key_material(settings)
            _store_key_material(app_config, material)
            logger.info("Generated new key material (%d byte key)", len(material.key))
        return material


def new_keys(
    app_config: AppConfigStore | None = None,
    name: str = "",
    *,
    settings: Settings | None = None,
) -> tuple[str, ...]:
    """Regenerate all key material entries, or only the one called ``name``.

    Returns the names that were rewritten. Values encrypted under the
    previous material can no longer be decrypted afterwards.
    """

    if name and name not in KEY_MATERIAL_NAMES:
        raise KeyMaterialError(
            f"Unknown key material entry '{name}'; expected one of "
            f"{', '.join(KEY_MATERIAL_NAMES)}"
        )
    app_config = app_config or get_app_config()
    fresh = generate_key_material(settings).encoded()
    targets = (name,) if name else KEY_MATERIAL_NAMES
    with _KEY_MATERIAL_LOCK:
        for target in targets:
            app_config.set(target, fresh[target])
    logger.info("Regenerated key material entries: %s", ", ".join(targets))
    return targets


def _nonzero_bytes(length: int) -> bytes:
    collected = bytearray()
    while len(collected) < length:
        collected.extend(b for b in os.urandom(length - len(collected)) if b)
    return bytes(collected)


class SecureCipher:
    """Encrypt and decrypt setting values with the process key material."""

    def __init__(
        self,
        app_config: AppConfigStore | None = None,
        *,
        material: KeyMaterial | None = None,
    ) -> None:
        self._material = material or load_key_material(app_config)
        self._cipher = Cipher(
            algorithms.AES(self._material.key), modes.CBC(self._material.vector)
        )

    @property
    def salt_length(self) -> int:
        return self._material.salt_length

    def encrypt(self, text: str) -> bytes:
        """Encrypt ``text`` and return the raw, block aligned ciphertext."""

        payload = text.encode("utf-8")
        salted = (
            _nonzero_bytes(self.salt_length)
            + payload
            + _nonzero_bytes(self.salt_length)
        )
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(salted) + padder.finalize()
        encryptor = self._cipher.encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    def encrypt_string(self, text: str) -> str:
        """Encrypt ``text`` into base64; the empty string stays empty."""

        if text == "":
            return ""
        return base64.b64encode(self.encrypt(text)).decode("ascii")

    def decrypt(self, data: bytes) -> str:
        """Decrypt ciphertext produced by :meth:`encrypt`."""

        if not data or len(data) % BLOCK_SIZE:
            raise CipherError(
                f"Ciphertext length {len(data)} is not a positive multiple of {BLOCK_SIZE}"
            )
        decryptor = self._cipher.decryptor()
        padded = decryptor.update(data) + decryptor.finalize()
        unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
        try:
            decrypted = unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise CipherError("Ciphertext padding is invalid; wrong key material?") from exc

        if len(decrypted) < 2 * self.salt_length:
            raise DecryptLengthError(len(decrypted), self.salt_length)
        payload = decrypted[self.salt_length : len(decrypted) - self.salt_length]
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CipherError("Decrypted payload is not valid UTF-8") from exc

    def decrypt_string(self, value: str) -> str:
        """Decrypt a base64 value; the empty string stays empty."""

        if value == "":
            return ""
        try:
            data = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CipherError(f"Encrypted value is not valid base64: {exc}") from exc
        return self.decrypt(data)


__all__ = [
    "BLOCK_SIZE",
    "CONFIG_KEY",
    "CONFIG_SALT",
    "CONFIG_VECTOR",
    "CipherError",
    "DecryptLengthError",
    "KEY_MATERIAL_NAMES",
    "KeyMaterial",
    "KeyMaterialError",
    "SecureCipher",
    "decode_salt_length",
    "encode_salt_length",
    "generate_encryption_key",
    "generate_encryption_vector",
    "generate_key_material",
    "load_key_material",
    "new_keys",
]
