from dataclasses import dataclass
import os
import re

from dotenv import load_dotenv


load_dotenv()


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_root: str
    inbox_dir: str
    outbox_dir: str
    target_url: str
    headless: bool
    concurrency: int
    entry_timeout_ms: int
    retry_errors: int
    retry_delay_ms: int
    retry_jitter_ms: int
    serial_cooldown_min_ms: int
    serial_cooldown_max_ms: int
    max_entries: int
    field_timeout_ms: int
    submit_timeout_ms: int
    settle_ms: int
    classify_timeout_ms: int
    poll_interval_ms: int
    archive_max_bytes: int
    approved_users: tuple[str, ...]
    inbox_poll_seconds: int

    def require_target_url(self) -> str:
        if not re.match(r"^https?://", self.target_url, flags=re.IGNORECASE):
            raise ConfigError("TARGET_URL must be a valid http(s) URL")
        return self.target_url


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _list_env(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def get_settings() -> Settings:
    settings = Settings(
        app_name=os.getenv("APP_NAME", "batchverify"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./batchverify.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_root=os.getenv("OUTPUT_ROOT", "./screenshots"),
        inbox_dir=os.getenv("INBOX_DIR", "./inbox"),
        outbox_dir=os.getenv("OUTBOX_DIR", "./outbox"),
        target_url=os.getenv("TARGET_URL", "").strip(),
        headless=_bool_env("HEADLESS", True),
        concurrency=_int_env("CONCURRENCY", 1, minimum=1),
        entry_timeout_ms=_int_env("ENTRY_TIMEOUT_MS", 80000, minimum=1),
        retry_errors=_int_env("RETRY_ERRORS", 1),
        retry_delay_ms=_int_env("RETRY_DELAY_MS", 2000),
        retry_jitter_ms=_int_env("RETRY_JITTER_MS", 0),
        serial_cooldown_min_ms=_int_env("SERIAL_COOLDOWN_MIN_MS", 700),
        serial_cooldown_max_ms=_int_env("SERIAL_COOLDOWN_MAX_MS", 1600),
        max_entries=_int_env("MAX_ENTRIES", 70, minimum=1),
        field_timeout_ms=_int_env("FIELD_TIMEOUT_MS", 3500, minimum=1),
        submit_timeout_ms=_int_env("SUBMIT_TIMEOUT_MS", 2500, minimum=1),
        settle_ms=_int_env("SETTLE_MS", 1500),
        classify_timeout_ms=_int_env("CLASSIFY_TIMEOUT_MS", 6500),
        poll_interval_ms=_int_env("POLL_INTERVAL_MS", 250, minimum=1),
        archive_max_bytes=_int_env("ARCHIVE_MAX_BYTES", 49 * 1024 * 1024, minimum=1),
        approved_users=_list_env("APPROVED_USERS"),
        inbox_poll_seconds=_int_env("INBOX_POLL_SECONDS", 30, minimum=1),
    )
    if settings.serial_cooldown_max_ms < settings.serial_cooldown_min_ms:
        raise ConfigError("SERIAL_COOLDOWN_MAX_MS must be >= SERIAL_COOLDOWN_MIN_MS")
    return settings
