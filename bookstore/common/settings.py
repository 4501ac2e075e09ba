"""
Process configuration.

Every process reads its environment exactly once at start-up with
``Settings.from_env()`` and hands the resulting immutable object to the
components that need it. Nothing reads ``os.environ`` after that.
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict

DLQ_SUFFIX = "-dlq"


def _bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = "sqlite+aiosqlite:///./bookstore.db"
    redis_url: str = "redis://localhost:6379"
    bus_connect_timeout_seconds: float = 5.0
    bus_reconnect_max_seconds: float = 30.0
    shutdown_grace_seconds: float = 5.0
    orders_queue: str = "orders"
    updates_queue: str = "order-updates"

    crm_auth_url: str = "https://login.salesforce.com/services/oauth2/token"
    crm_client_id: str = ""
    crm_client_secret: str = ""
    crm_username: str = ""
    crm_password: str = ""
    crm_security_token: str = ""
    crm_api_version: str = "v58.0"
    crm_timeout_seconds: float = 10.0

    poll_interval_seconds: float = 30.0
    poll_lookback_minutes: int = 5

    admin_api_key: str = ""
    relay_dead_letter: bool = False
    notify_queue_size: int = 0
    status_consumer_enabled: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            database_url=env.get("DATABASE_URL", defaults.database_url),
            redis_url=env.get("REDIS_URL", defaults.redis_url),
            bus_connect_timeout_seconds=float(
                env.get("BUS_CONNECT_TIMEOUT_SECONDS", defaults.bus_connect_timeout_seconds)
            ),
            bus_reconnect_max_seconds=float(
                env.get("BUS_RECONNECT_MAX_SECONDS", defaults.bus_reconnect_max_seconds)
            ),
            shutdown_grace_seconds=float(
                env.get("SHUTDOWN_GRACE_SECONDS", defaults.shutdown_grace_seconds)
            ),
            orders_queue=env.get("ORDERS_QUEUE", defaults.orders_queue),
            updates_queue=env.get("UPDATES_QUEUE", defaults.updates_queue),
            crm_auth_url=env.get("CRM_AUTH_URL", defaults.crm_auth_url),
            crm_client_id=env.get("CRM_CLIENT_ID", "").strip(),
            crm_client_secret=env.get("CRM_CLIENT_SECRET", "").strip(),
            crm_username=env.get("CRM_USERNAME", "").strip(),
            crm_password=env.get("CRM_PASSWORD", "").strip(),
            crm_security_token=env.get("CRM_SECURITY_TOKEN", "").strip(),
            crm_api_version=env.get("CRM_API_VERSION", defaults.crm_api_version),
            crm_timeout_seconds=float(env.get("CRM_TIMEOUT_SECONDS", defaults.crm_timeout_seconds)),
            poll_interval_seconds=float(
                env.get("POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds)
            ),
            poll_lookback_minutes=int(env.get("POLL_LOOKBACK_MINUTES", defaults.poll_lookback_minutes)),
            admin_api_key=env.get("ADMIN_API_KEY", ""),
            relay_dead_letter=_bool(env.get("RELAY_DEAD_LETTER"), defaults.relay_dead_letter),
            notify_queue_size=int(env.get("NOTIFY_QUEUE_SIZE", defaults.notify_queue_size)),
            status_consumer_enabled=_bool(
                env.get("STATUS_CONSUMER_ENABLED"), defaults.status_consumer_enabled
            ),
            log_level=env.get("LOG_LEVEL", defaults.log_level),
        )


def dead_letter_name(queue: str) -> str:
    """``orders`` -> ``orders-dlq``"""
    return queue + DLQ_SUFFIX
