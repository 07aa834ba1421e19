from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    whatsapp_verify_token: str
    whatsapp_app_secret: str
    whatsapp_access_token: str
    whatsapp_phone_number_id: str
    graph_api_version: str
    meta_pixel_id: str
    meta_capi_access_token: str
    meta_test_event_code: str
    conversion_currency: str
    messaging_window_hours: int
    media_storage_dir: str
    public_base_url: str
    http_timeout_seconds: int
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str

    @property
    def conversions_configured(self) -> bool:
        return bool(self.meta_pixel_id and self.meta_capi_access_token)


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/wa_crm.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", "").strip(),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", "").strip(),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", "").strip(),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", "").strip(),
        graph_api_version=os.getenv("META_GRAPH_API_VERSION", "v18.0").strip() or "v18.0",
        meta_pixel_id=os.getenv("META_PIXEL_ID", "").strip(),
        meta_capi_access_token=os.getenv("META_CAPI_ACCESS_TOKEN", "").strip(),
        meta_test_event_code=os.getenv("META_TEST_EVENT_CODE", "").strip(),
        conversion_currency=os.getenv("CONVERSION_CURRENCY", "MXN").strip().upper() or "MXN",
        messaging_window_hours=max(1, min(168, _int_env("MESSAGING_WINDOW_HOURS", 24))),
        media_storage_dir=os.getenv("MEDIA_STORAGE_DIR", "data/media").strip(),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").strip().rstrip("/"),
        http_timeout_seconds=max(1, min(60, _int_env("HTTP_TIMEOUT_SECONDS", 10))),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
    )
