"""Top-level package for productconf.

Layered product settings (settings file, environment, application
configuration) with per-value AES encryption. Submodules live under
``productconf.app`` and are imported lazily.
"""

from importlib import import_module
from types import ModuleType
from typing import TYPE_CHECKING

__all__ = ["app"]


def __getattr__(name: str) -> ModuleType:
    if name in __all__:
        return import_module(f"productconf.{name}")
    raise AttributeError(f"module 'productconf' has no attribute {name!r}")


if TYPE_CHECKING:  # pragma: no cover
    from . import app as app  # type: ignore[F401]
