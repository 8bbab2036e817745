"""Tests for startup diagnostics helper functions.

Updates:
    v0.1 - 2025-11-06 - Added coverage for Redis fallbacks and health failure handling.
    v0.2 - 2025-11-08 - Covered credential and backend chain warnings.
"""

from __future__ import annotations

import sys
import types
from pathlib import Path

import pytest

from config import settings
from core.health import run_startup_checks


def _load_config(tmp_path: Path) -> settings.AppConfig:
    source = Path(__file__).resolve().parent.parent / "config" / "config.json"
    config_path = tmp_path / "config.json"
    config_path.write_text(source.read_text(encoding="utf-8"), encoding="utf-8")
    return settings.load_app_config(config_path)


def _install_stub_modules(
    monkeypatch: pytest.MonkeyPatch,
    redis_ping_ok: bool = True,
    litellm_version: str = "1.61.15",
) -> None:
    class _RedisClient:
        def __init__(self, **_: object) -> None:
            pass

        def ping(self) -> bool:
            if redis_ping_ok:
                return True
            raise RuntimeError("redis ping failed")

    redis_module = types.SimpleNamespace(Redis=_RedisClient)
    litellm_module = types.SimpleNamespace(__version__=litellm_version)

    monkeypatch.setitem(sys.modules, "redis", redis_module)
    monkeypatch.setitem(sys.modules, "litellm", litellm_module)

    monkeypatch.setattr("core.health.metadata.version", lambda _: litellm_version)


def _set_azure_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "key")
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://example.com")


def test_health_checks_with_stubbed_dependencies(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _load_config(tmp_path)
    _install_stub_modules(monkeypatch)
    _set_azure_env(monkeypatch)

    warnings = run_startup_checks(config)
    assert warnings == []


def test_health_checks_warn_on_redis_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _load_config(tmp_path)
    _install_stub_modules(monkeypatch, redis_ping_ok=False)
    _set_azure_env(monkeypatch)

    warnings = run_startup_checks(config)
    assert warnings == ["redis unavailable; artifacts will be kept in memory."]


def test_health_checks_skip_redis_when_store_disabled(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _load_config(tmp_path)
    config.store.enabled = False
    _install_stub_modules(monkeypatch, redis_ping_ok=False)
    _set_azure_env(monkeypatch)

    assert run_startup_checks(config) == []


def test_health_checks_warn_on_old_litellm(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _load_config(tmp_path)
    _install_stub_modules(monkeypatch, litellm_version="1.20.3")
    _set_azure_env(monkeypatch)

    warnings = run_startup_checks(config)
    assert any("litellm version 1.20.3" in warning for warning in warnings)


def test_health_checks_warn_when_azure_credentials_missing(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    config = _load_config(tmp_path)
    _install_stub_modules(monkeypatch)
    monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://example.com")

    warnings = run_startup_checks(config)
    assert len(warnings) == 1
    assert "AZURE_OPENAI_API_KEY" in warnings[0]


def test_health_checks_warn_on_fully_disabled_chain(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _load_config(tmp_path)
    config.backends["ollama-local"].enabled = False
    config.backends["azure-mini"].enabled = False
    _install_stub_modules(monkeypatch)
    _set_azure_env(monkeypatch)

    warnings = run_startup_checks(config)
    assert any("tier minimal" in warning for warning in warnings)
    assert any("tier baseline" in warning for warning in warnings)
