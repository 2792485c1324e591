"""
Application settings and environment configuration.

Purpose:
- Centralize all config (polling, alert policy, storage paths, transit API, Twilio)
- Load from environment variables for 12-factor app compliance
- Provide sensible defaults for local development
"""
import os
from pydantic_settings import BaseSettings

# Minimum time between two alerts for the same chat/route/vehicle.
# Fixed policy, not read from the environment.
ALERT_COOLDOWN_SECONDS = 600

class Settings(BaseSettings):
    # API Configuration
    API_TITLE: str = "Bus Proximity Notifier"
    API_VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "3000"))

    # Monitoring: poll period per monitor, in seconds
    CHECK_INTERVAL: int = int(os.getenv("CHECK_INTERVAL", "60"))

    # IANA zone for "today" in the daily alert cap, e.g. America/Sao_Paulo
    # Unset: the server's local zone
    TIMEZONE: str | None = os.getenv("TIMEZONE", None)

    # Alert policy defaults applied to new monitors
    PROXIMITY_THRESHOLD_METERS: int = int(os.getenv("PROXIMITY_THRESHOLD_METERS", "500"))
    MAX_ALERTS_PER_ROUTE: int = int(os.getenv("MAX_ALERTS_PER_ROUTE", "5"))

    # Alert history housekeeping
    ALERT_HISTORY_LIMIT: int = int(os.getenv("ALERT_HISTORY_LIMIT", "100"))
    ALERT_RETENTION_DAYS: int = int(os.getenv("ALERT_RETENTION_DAYS", "30"))
    ALERT_CLEANUP_INTERVAL: int = int(os.getenv("ALERT_CLEANUP_INTERVAL", "3600"))
    # inactive monitor configs untouched this long are purged by maintenance
    CONFIG_RETENTION_DAYS: int = int(os.getenv("CONFIG_RETENTION_DAYS", "30"))

    # Durable state (JSON documents)
    CONFIG_STORE_PATH: str = os.getenv("CONFIG_STORE_PATH", "./data/configurations.json")
    ALERT_STORE_PATH: str = os.getenv("ALERT_STORE_PATH", "./data/alerts.json")

    # Optional local route/stop catalog used when the provider is unreachable
    ROUTE_CATALOG_PATH: str = os.getenv("ROUTE_CATALOG_PATH", "./data/routes.json")

    # Transit provider
    # Example: https://bustime.noxxonsat.com.br
    TRANSIT_API_BASE_URL: str = os.getenv("TRANSIT_API_BASE_URL", "https://bustime.noxxonsat.com.br")
    TRANSIT_API_TIMEOUT: float = float(os.getenv("TRANSIT_API_TIMEOUT", "10"))
    TRANSIT_API_USER: str = os.getenv("TRANSIT_API_USER", "user")
    TRANSIT_API_PASSWORD: str = os.getenv("TRANSIT_API_PASSWORD", "pass")
    TRANSIT_CACHE_TTL: int = int(os.getenv("TRANSIT_CACHE_TTL", "300"))

    # Redis: optional shared cache for provider lookups
    # Format: redis://host:port/db, or "disabled" for the in-process cache
    REDIS_URL: str = os.getenv("REDIS_URL", "disabled")

    # Notifications: "console" (dev) or "whatsapp" (Twilio)
    NOTIFIER_CHANNEL: str = os.getenv("NOTIFIER_CHANNEL", "console")
    TWILIO_ACCOUNT_SID: str | None = os.getenv("TWILIO_ACCOUNT_SID", None)
    TWILIO_AUTH_TOKEN: str | None = os.getenv("TWILIO_AUTH_TOKEN", None)
    # Sender number, e.g. "+14155238886" (the Twilio sandbox number)
    TWILIO_WHATSAPP_FROM: str | None = os.getenv("TWILIO_WHATSAPP_FROM", None)
    TWILIO_VALIDATE_SIGNATURE: bool = os.getenv("TWILIO_VALIDATE_SIGNATURE", "false").lower() == "true"
    # Public URL Twilio posts to; needed for signature validation behind proxies
    PUBLIC_WEBHOOK_URL: str | None = os.getenv("PUBLIC_WEBHOOK_URL", None)

    # Logging: configure logging level and optional rotating log file
    # Values: DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str | None = os.getenv("LOG_FILE", None)

    class Config:
        env_file = ".env"  # Load from .env file if present
        extra = "allow"

# Global settings instance
settings = Settings()
