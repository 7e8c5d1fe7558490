"""
Root conftest — isolate AIRASSIST_* environment variables so that config
tests are not affected by a developer's shell or CI environment.
"""
import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_airassist_env(monkeypatch):
    """Remove AIRASSIST_* env vars for every test and disable .env loading
    so a local .env file never leaks into Settings()."""
    for var in list(os.environ):
        if var.startswith("AIRASSIST_"):
            monkeypatch.delenv(var, raising=False)

    import airassist.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_prefix="AIRASSIST_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
