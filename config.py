import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite:///push_subscriptions.db"
DEFAULT_VAPID_SUBJECT = "mailto:admin@example.com"


@dataclass(frozen=True)
class VapidCredentials:
    public_key: str
    private_key: str
    subject: str = DEFAULT_VAPID_SUBJECT

    @property
    def is_complete(self) -> bool:
        return bool(self.public_key and self.private_key)


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    durable_store: bool = True
    create_tables: bool = True
    vapid: VapidCredentials = VapidCredentials("", "")
    push_ttl: int = 300
    push_timeout: int = 12
    max_workers: int = 32
    log_level: str = "INFO"


def _flag(name: str, default: str = "1") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


def _int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _database_url() -> str:
    url = (os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL") or "").strip()
    if not url:
        url = DEFAULT_DATABASE_URL
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def _vapid_subject() -> str:
    # e.g. "mailto:you@example.com" or "https://yoursite.com"
    subject = (os.getenv("VAPID_SUBJECT") or "").strip()
    if subject:
        return subject
    email = (os.getenv("VAPID_EMAIL") or "").strip()
    if email:
        return email if email.startswith("mailto:") else f"mailto:{email}"
    return DEFAULT_VAPID_SUBJECT


def load_settings() -> Settings:
    """Build Settings from the environment (and a .env file, when present)."""
    load_dotenv()
    return Settings(
        database_url=_database_url(),
        durable_store=_flag("PUSH_DURABLE_STORE"),
        create_tables=_flag("PUSH_CREATE_TABLES"),
        vapid=VapidCredentials(
            public_key=os.getenv("VAPID_PUBLIC_KEY", "").strip(),
            # PEM keys pasted into a single-line env var keep literal "\n".
            private_key=os.getenv("VAPID_PRIVATE_KEY", "").strip().replace("\\n", "\n"),
            subject=_vapid_subject(),
        ),
        push_ttl=_int("PUSH_TTL_SECONDS", 300),
        push_timeout=_int("PUSH_TIMEOUT_SECONDS", 12),
        max_workers=max(1, _int("PUSH_MAX_WORKERS", 32)),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    )
