import logging

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import config


def test_settings_defaults(monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("OPTIMISTIC_REVERT_ON_ERROR", raising=False)
    s = config.Settings(_env_file=None)

    assert s.patients_table == "patients"
    assert s.notifications_table == "notifications"
    assert s.optimistic_revert_on_error is True
    assert s.supabase_configured is False
    assert s.is_production is False


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("OPTIMISTIC_REVERT_ON_ERROR", "false")
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service")
    monkeypatch.setenv("AUTH0_DOMAIN", "tenant.auth0.com")

    s = config.Settings(_env_file=None)

    assert s.optimistic_revert_on_error is False
    assert s.supabase_configured is True
    assert s.jwks_uri == "https://tenant.auth0.com/.well-known/jwks.json"


def test_require_supabase_raises_503():
    s = config.Settings(_env_file=None, supabase_url="", supabase_service_key="")

    with pytest.raises(HTTPException) as excinfo:
        s.require_supabase()

    assert excinfo.value.status_code == 503


def test_get_settings_warns_about_missing_vars(monkeypatch, caplog):
    for name in ("AUTH0_DOMAIN", "AUTH0_AUDIENCE", "SUPABASE_URL", "SUPABASE_SERVICE_KEY"):
        monkeypatch.delenv(name, raising=False)
    config.get_settings.cache_clear()

    try:
        with caplog.at_level(logging.WARNING, logger="carepanel.config"):
            config.get_settings()
    finally:
        config.get_settings.cache_clear()

    assert "PARTIAL mode" in caplog.text
    assert "SUPABASE_URL" in caplog.text


def test_auth0_issuer_has_trailing_slash():
    s = config.Settings(_env_file=None, auth0_domain="tenant.auth0.com")

    assert s.auth0_issuer == "https://tenant.auth0.com/"


def test_health_and_registry_on_startup():
    from main import app
    from routers.roster import RosterRegistry

    with TestClient(app) as client:
        resp = client.get("/health")
        assert isinstance(app.state.roster_registry, RosterRegistry)

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "carepanel-backend"}
