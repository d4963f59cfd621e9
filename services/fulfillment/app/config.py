"""
Fulfillment Service — Configuration

All settings come from environment variables and are read once at startup.
DATABASE_URL and REDIS_URL are optional: without them the service runs on
the in-memory store and the in-process broker, which is what the tests and
local development use.
"""

import os
from dataclasses import dataclass, field


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    auto_create_schema: bool = True
    redis_url: str | None = None
    webhook_urls: tuple[str, ...] = field(default_factory=tuple)

    jwt_secret_key: str = "dev-only-secret-change-me"
    jwt_algorithm: str = "HS256"

    transition_timeout_seconds: float = 5.0
    inventory_retry_limit: int = 3

    notification_max_attempts: int = 5
    notification_retry_delay: float = 0.5

    order_number_prefix: str = "QC"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        webhooks = os.environ.get("WEBHOOK_URLS", "").split(",")
        return cls(
            database_url=os.environ.get("DATABASE_URL") or None,
            auto_create_schema=_flag("AUTO_CREATE_SCHEMA", "true"),
            redis_url=os.environ.get("REDIS_URL") or None,
            webhook_urls=tuple(url.strip() for url in webhooks if url.strip()),
            jwt_secret_key=os.environ.get("JWT_SECRET_KEY", cls.jwt_secret_key),
            jwt_algorithm=os.environ.get("JWT_ALGORITHM", cls.jwt_algorithm),
            transition_timeout_seconds=float(
                os.environ.get("TRANSITION_TIMEOUT_SECONDS", "5.0")
            ),
            inventory_retry_limit=int(os.environ.get("INVENTORY_RETRY_LIMIT", "3")),
            notification_max_attempts=int(
                os.environ.get("NOTIFICATION_MAX_ATTEMPTS", "5")
            ),
            notification_retry_delay=float(
                os.environ.get("NOTIFICATION_RETRY_DELAY", "0.5")
            ),
            order_number_prefix=os.environ.get("ORDER_NUMBER_PREFIX", "QC"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
