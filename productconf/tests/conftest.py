import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[2]

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def _reset_caches() -> None:
    from productconf.app import app_config
    from productconf.app import config
    from productconf.app import settings_base

    config.reset_settings_cache()
    app_config.reset_app_config_cache()
    settings_base.reset_settings_resolver()


@pytest.fixture(autouse=True)
def _reset_state(tmp_path, monkeypatch):
    """Point every file the library touches at a per-test directory."""

    monkeypatch.setenv("PRODUCTCONF_SETTINGS_FILE", str(tmp_path / "product_settings.json"))
    monkeypatch.setenv("PRODUCTCONF_APP_CONFIG_FILE", str(tmp_path / "appsettings.json"))
    # Small salts keep ciphertexts short; the scheme is the same.
    monkeypatch.setenv("PRODUCTCONF_SALT_LENGTH_MIN", "8")
    monkeypatch.setenv("PRODUCTCONF_SALT_LENGTH_MAX", "32")
    _reset_caches()
    yield
    _reset_caches()


@pytest.fixture
def app_config():
    from productconf.app.app_config import MemoryAppConfig

    return MemoryAppConfig()


@pytest.fixture
def settings_file(tmp_path) -> Path:
    return tmp_path / "product_settings.json"


@pytest.fixture
def resolver(settings_file, app_config):
    from productconf.app.settings_base import SettingsResolver

    instance = SettingsResolver(settings_file, app_config=app_config, environ={})
    instance.initialize()
    return instance
