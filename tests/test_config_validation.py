from config.base import _coerce_bool, _coerce_int, _parse_adapter_list
from config.validation import validate_environment


def test_non_production_environments_always_validate():
    assert validate_environment("development") == (True, [])
    assert validate_environment("testing") == (True, [])


def test_production_requires_secret_and_database(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("IMPORTER_ADAPTERS", raising=False)
    monkeypatch.delenv("IMPORTER_WORKER_ENABLED", raising=False)
    monkeypatch.delenv("IMPORTER_TIMESERIES_DEFAULT_CHUNK", raising=False)

    is_valid, errors = validate_environment("production")

    assert not is_valid
    assert any("SECRET_KEY" in error for error in errors)
    assert any("DATABASE_URL" in error for error in errors)


def test_production_checks_salesforce_credentials_and_chunk(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "a" * 64)
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/graph")
    monkeypatch.setenv("IMPORTER_ADAPTERS", "standard,salesforce")
    monkeypatch.setenv("IMPORTER_TIMESERIES_DEFAULT_CHUNK", "fortnight")
    monkeypatch.setenv("SF_USERNAME", "user@example.com")
    monkeypatch.delenv("SF_PASSWORD", raising=False)
    monkeypatch.delenv("SF_SECURITY_TOKEN", raising=False)
    monkeypatch.delenv("IMPORTER_WORKER_ENABLED", raising=False)

    is_valid, errors = validate_environment("production")

    assert not is_valid
    assert any("SF_PASSWORD" in error for error in errors)
    assert any("SF_SECURITY_TOKEN" in error for error in errors)
    assert any("IMPORTER_TIMESERIES_DEFAULT_CHUNK" in error for error in errors)
    assert not any("SF_USERNAME" in error for error in errors)


def test_config_parsers():
    assert _parse_adapter_list(" Standard, http,standard ,") == ("standard", "http")
    assert _coerce_bool("on") is True
    assert _coerce_bool("nope", default=True) is True
    assert _coerce_int("5", 10, minimum=60) == 60
    assert _coerce_int("abc", 10) == 10
