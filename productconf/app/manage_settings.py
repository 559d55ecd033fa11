"""Command-line utilities for managing product settings and key material."""

from __future__ import annotations

import argparse
import sys

from .config import SettingsValidationError, get_settings
from .logging_utils import setup_logging
from .security import KEY_MATERIAL_NAMES, CipherError, SecureCipher, new_keys
from .settings_base import (
    MISSING,
    EncryptionKind,
    SettingsError,
    get_settings_resolver,
    is_elevated,
)

_TYPES = {"str": str, "int": int, "float": float, "bool": bool}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Product settings tooling")
    sub = parser.add_subparsers(dest="command", required=True)

    get = sub.add_parser("get", help="Resolve a setting through every tier")
    get.add_argument("name", help="Setting name")
    get.add_argument("--type", choices=sorted(_TYPES), default="str", help="Value type")
    get.add_argument("--default", default=None, help="Value to print when undefined")

    add = sub.add_parser("set", help="Store a setting in the settings file")
    add.add_argument("name", help="Setting name")
    add.add_argument("value", help="Plaintext value")
    add.add_argument(
        "--encrypt",
        action="store_true",
        help="Encrypt the value with the current key material",
    )

    remove = sub.add_parser("remove", help="Remove a setting from the settings file")
    remove.add_argument("name", help="Setting name")

    sub.add_parser("list", help="List stored setting names and encryption")

    encrypt = sub.add_parser("encrypt", help="Encrypt a value and print base64")
    encrypt.add_argument("text", help="Plaintext value")

    decrypt = sub.add_parser("decrypt", help="Decrypt a base64 value")
    decrypt.add_argument("text", help="Base64 ciphertext")

    keys = sub.add_parser("new-keys", help="Regenerate key material")
    keys.add_argument(
        "--only",
        choices=KEY_MATERIAL_NAMES,
        default="",
        help="Regenerate a single entry instead of all three",
    )

    sub.add_parser("validate", help="Validate the runtime configuration")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "validate":
        try:
            result = settings.ensure_valid()
        except SettingsValidationError as exc:
            print(f"Invalid configuration: {exc}", file=sys.stderr)
            return 1
        for warning in result.warnings:
            print(f"warning: {warning}")
        print(f"Configuration OK (elevated={is_elevated()})")
        return 0

    if args.command == "new-keys":
        rewritten = new_keys(name=args.only)
        print(f"Regenerated {', '.join(rewritten)}")
        return 0

    if args.command in ("encrypt", "decrypt"):
        cipher = SecureCipher()
        try:
            if args.command == "encrypt":
                print(cipher.encrypt_string(args.text))
            else:
                print(cipher.decrypt_string(args.text))
        except CipherError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        return 0

    resolver = get_settings_resolver()

    if args.command == "list":
        for name, entry in sorted(resolver.entries.items()):
            print(f"{name}\t{entry.encryption.value}")
        return 0

    if args.command == "get":
        default = MISSING if args.default is None else args.default
        try:
            value = resolver.get_setting(args.name, _TYPES[args.type], default=default)
        except (SettingsError, CipherError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        print(value)
        return 0

    if args.command == "set":
        kind = EncryptionKind.AES if args.encrypt else EncryptionKind.NONE
        result = resolver.add_setting(args.name, args.value, kind)
    else:
        result = resolver.remove_setting(args.name)
    if not result.ok:
        print(f"error: {result.error}", file=sys.stderr)
        return 1
    print(f"Saved {result.path}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
