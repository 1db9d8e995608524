from pydantic_settings import BaseSettings
from functools import lru_cache
from datetime import datetime
from typing import Optional


class Settings(BaseSettings):
    # ── Database ──────────────────────────────────────────────
    database_hostname: str = "localhost"
    database_port: str = "5432"
    database_password: str = ""
    database_name: str = "accessgate"
    database_username: str = "accessgate"
    # Full URL override (e.g. sqlite:// for local runs and tests)
    sqlalchemy_database_url: Optional[str] = None

    # ── JWT ───────────────────────────────────────────────────
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    flow_token_expire_minutes: int = 15

    # ── SMTP (Notifier) ───────────────────────────────────────
    mail_username: str = ""
    mail_password: str = ""
    mail_from: str = "security@example.com"
    mail_server: str = "smtp.gmail.com"
    mail_port: int = 587
    # Dev mode: messages are built but never handed to the SMTP server
    mail_suppress_send: bool = False
    mail_timeout_seconds: int = 5

    # ── Geolocation provider ──────────────────────────────────
    geolocation_url_template: str = "https://ipapi.co/{ip}/json/"
    geolocation_timeout_seconds: float = 4.0

    # ── Verification policy ───────────────────────────────────
    otp_expiry_minutes: int = 10
    trusted_device_days: int = 90
    location_radius_km: float = 50.0
    location_risk_threshold: int = 70
    location_history_limit: int = 10
    high_risk_countries: str = "Unknown,China,Russia,North Korea"
    # 1 = any of persistentId / hardwareFingerprint / ipHash is enough
    device_min_matching_components: int = 1
    # Legacy device ids are accepted as "same device" as any hybrid id until this instant.
    # None closes the migration window.
    legacy_device_migration_until: Optional[datetime] = None

    # ── App ───────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000"
    # X-Forwarded-For and friends are only read when the socket peer is one of
    # trusted_proxies. Off by default: a direct client can write any header.
    trust_proxy_headers: bool = False
    trusted_proxies: str = "127.0.0.1,::1"
    log_level: str = "INFO"

    @property
    def cors_origins_list(self) -> list[str]:
        """Split comma-separated origins into a list, stripping whitespace."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def trusted_proxies_set(self) -> frozenset[str]:
        return frozenset(p.strip() for p in self.trusted_proxies.split(",") if p.strip())

    @property
    def high_risk_countries_set(self) -> frozenset[str]:
        return frozenset(c.strip() for c in self.high_risk_countries.split(",") if c.strip())

    @property
    def database_url(self) -> str:
        if self.sqlalchemy_database_url:
            return self.sqlalchemy_database_url
        return (
            f"postgresql://{self.database_username}:{self.database_password}"
            f"@{self.database_hostname}:{self.database_port}/{self.database_name}"
        )

    class Config:
        env_file = ".env"
        # Case-insensitive so SECRET_KEY and secret_key both work
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings loader: reads .env once and reuses it.
    Use this everywhere instead of instantiating Settings() directly.
    """
    return Settings()


# Module-level singleton for convenience imports
settings = get_settings()
