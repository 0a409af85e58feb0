import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class DeliverySettings:
    enabled: bool = True
    poll_interval_seconds: int = 30
    batch_size: int = 50
    max_attempts: int = 5
    retry_base_seconds: int = 60
    send_timeout_seconds: int = 10
    claim_ttl_seconds: int = 300
    wish_notification_delay_seconds: int = 3600


@dataclass(frozen=True)
class Settings:
    bot_token: str
    database_url: str
    log_level: str
    log_path: str
    draw_retry_budget: int = 200
    delivery: DeliverySettings = field(default_factory=DeliverySettings)


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from exc
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}.")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_delivery_settings() -> DeliverySettings:
    return DeliverySettings(
        enabled=_bool_env("DELIVERY_ENABLED", True),
        poll_interval_seconds=_int_env("DELIVERY_POLL_INTERVAL_SECONDS", 30, minimum=1),
        batch_size=_int_env("DELIVERY_BATCH_SIZE", 50, minimum=1),
        max_attempts=_int_env("DELIVERY_MAX_ATTEMPTS", 5, minimum=1),
        retry_base_seconds=_int_env("DELIVERY_RETRY_BASE_SECONDS", 60, minimum=1),
        send_timeout_seconds=_int_env("DELIVERY_SEND_TIMEOUT_SECONDS", 10, minimum=1),
        claim_ttl_seconds=_int_env("DELIVERY_CLAIM_TTL_SECONDS", 300, minimum=1),
        wish_notification_delay_seconds=_int_env("WISH_NOTIFICATION_DELAY_SECONDS", 3600),
    )


def load_settings() -> Settings:
    bot_token = os.getenv("BOT_TOKEN")
    database_url = os.getenv("DATABASE_URL")
    log_level = os.getenv("LOG_LEVEL", "INFO")
    log_path = os.getenv("LOG_PATH", "logs/santadraw.log")

    if not bot_token:
        raise ValueError("BOT_TOKEN is required. Set it in the environment or .env file.")
    if not database_url:
        raise ValueError("DATABASE_URL is required. Set it in the environment or .env file.")

    return Settings(
        bot_token=bot_token,
        database_url=database_url,
        log_level=log_level,
        log_path=log_path,
        draw_retry_budget=_int_env("DRAW_RETRY_BUDGET", 200),
        delivery=load_delivery_settings(),
    )
