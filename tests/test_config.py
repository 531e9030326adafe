import pytest

from eventpass.config import TICKET_TTL_SECONDS, Settings
from eventpass.errors import ConfigError


def test_defaults_are_valid():
    s = Settings.from_env({})
    assert s.ledger_backend == "pg"
    assert s.gateway == "mock"
    assert s.ticket_ttl_seconds == TICKET_TTL_SECONDS == 172800
    assert s.db_gate_limit is None


def test_from_env_parses_values():
    s = Settings.from_env({
        "DATABASE_URL": "postgresql://db/eventpass",
        "DB_GATE_LIMIT": "16",
        "LEDGER_BACKEND": "Redis",
        "GATEWAY_TIMEOUT": "2.5",
        "TICKET_SECRET": "t",
        "AUTH_SECRET": "a",
        "TICKET_TTL_SECONDS": "3600",
        "LOG_LEVEL": "debug",
    })
    assert s.database_url == "postgresql://db/eventpass"
    assert s.db_gate_limit == 16
    assert s.ledger_backend == "redis"
    assert s.gateway_timeout == 2.5
    assert s.ticket_ttl_seconds == 3600
    assert s.log_level == "DEBUG"


@pytest.mark.parametrize("env", [
    {"LEDGER_BACKEND": "mongo"},
    {"GATEWAY": "stripe"},
    {"MAIL_BACKEND": "smtp"},
    {"MAIL_BACKEND": "http"},
    {"TICKET_SECRET": ""},
    {"TICKET_SECRET": "same", "AUTH_SECRET": "same"},
    {"TICKET_TTL_SECONDS": "0"},
])
def test_invalid_configuration(env):
    with pytest.raises(ConfigError):
        Settings.from_env(env)


def test_with_overrides_validates():
    s = Settings()
    assert s.with_overrides(currency="USD").currency == "USD"
    with pytest.raises(ConfigError):
        s.with_overrides(auth_secret=s.ticket_secret)
