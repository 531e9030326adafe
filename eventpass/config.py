import os
from dataclasses import dataclass, replace

from .errors import ConfigError


# ----------------------------
# Config & Constants
# ----------------------------
TICKET_TTL_SECONDS = 2 * 24 * 3600  # 2 days

LEDGER_BACKENDS = ("pg", "redis")
GATEWAYS = ("mock", "razorpay")
MAIL_BACKENDS = ("log", "http")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./eventpass.db"
    db_gate_limit: int | None = None
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: float = 30.0
    ledger_backend: str = "pg"
    redis_url: str = "redis://127.0.0.1:6379"

    gateway: str = "mock"
    gateway_key_id: str = "rzp_test_key"
    gateway_key_secret: str = "gateway-secret-change-me"
    gateway_webhook_secret: str = "webhook-secret-change-me"
    gateway_api_url: str = "https://api.razorpay.com/v1"
    gateway_timeout: float = 10.0
    currency: str = "INR"

    ticket_secret: str = "ticket-secret-change-me"
    ticket_ttl_seconds: int = TICKET_TTL_SECONDS
    auth_secret: str = "auth-secret-change-me"

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    mail_backend: str = "log"
    mail_api_url: str = ""
    mail_api_key: str = ""
    mail_from: str = "tickets@eventpass.local"
    mail_timeout: float = 10.0

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        gate = env.get("DB_GATE_LIMIT")
        settings = cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            db_gate_limit=int(gate) if gate else None,
            db_pool_size=int(env.get("DB_POOL_SIZE", cls.db_pool_size)),
            db_max_overflow=int(
                env.get("DB_MAX_OVERFLOW", cls.db_max_overflow)),
            db_pool_timeout=float(
                env.get("DB_POOL_TIMEOUT", cls.db_pool_timeout)),
            ledger_backend=env.get(
                "LEDGER_BACKEND", cls.ledger_backend).lower(),
            redis_url=env.get("REDIS_URL", cls.redis_url),
            gateway=env.get("GATEWAY", cls.gateway).lower(),
            gateway_key_id=env.get("GATEWAY_KEY_ID", cls.gateway_key_id),
            gateway_key_secret=env.get(
                "GATEWAY_KEY_SECRET", cls.gateway_key_secret),
            gateway_webhook_secret=env.get(
                "GATEWAY_WEBHOOK_SECRET", cls.gateway_webhook_secret),
            gateway_api_url=env.get("GATEWAY_API_URL", cls.gateway_api_url),
            gateway_timeout=float(
                env.get("GATEWAY_TIMEOUT", cls.gateway_timeout)),
            currency=env.get("CURRENCY", cls.currency),
            ticket_secret=env.get("TICKET_SECRET", cls.ticket_secret),
            ticket_ttl_seconds=int(
                env.get("TICKET_TTL_SECONDS", cls.ticket_ttl_seconds)),
            auth_secret=env.get("AUTH_SECRET", cls.auth_secret),
            session_secret=env.get("SESSION_SECRET", cls.session_secret),
            admin_username=env.get("ADMIN_USERNAME", cls.admin_username),
            admin_password=env.get("ADMIN_PASSWORD", cls.admin_password),
            mail_backend=env.get("MAIL_BACKEND", cls.mail_backend).lower(),
            mail_api_url=env.get("MAIL_API_URL", cls.mail_api_url),
            mail_api_key=env.get("MAIL_API_KEY", cls.mail_api_key),
            mail_from=env.get("MAIL_FROM", cls.mail_from),
            mail_timeout=float(env.get("MAIL_TIMEOUT", cls.mail_timeout)),
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.ledger_backend not in LEDGER_BACKENDS:
            raise ConfigError(f"unknown LEDGER_BACKEND {self.ledger_backend!r}")
        if self.gateway not in GATEWAYS:
            raise ConfigError(f"unknown GATEWAY {self.gateway!r}")
        if self.mail_backend not in MAIL_BACKENDS:
            raise ConfigError(f"unknown MAIL_BACKEND {self.mail_backend!r}")
        if self.mail_backend == "http" and not self.mail_api_url:
            raise ConfigError("MAIL_BACKEND=http requires MAIL_API_URL")
        if not self.ticket_secret:
            raise ConfigError("TICKET_SECRET must be set")
        # tickets must not be verifiable with the user-auth key
        if self.ticket_secret == self.auth_secret:
            raise ConfigError("TICKET_SECRET must differ from AUTH_SECRET")
        if self.ticket_ttl_seconds <= 0:
            raise ConfigError("TICKET_TTL_SECONDS must be positive")

    def with_overrides(self, **kw) -> "Settings":
        s = replace(self, **kw)
        s.validate()
        return s
