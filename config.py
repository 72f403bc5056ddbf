import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


class Settings:
    """
    Central place for environment-configured settings.
    Scheduling rules live here too so routes and jobs agree on them.
    """

    # Flask secret key
    SECRET_KEY: Optional[str] = os.getenv("SECRET_KEY")

    # Supabase
    SUPABASE_URL: Optional[str] = os.getenv("SUPABASE_URL")
    SUPABASE_KEY: Optional[str] = os.getenv("SUPABASE_KEY")
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

    # Caching / logging
    REDIS_URL: Optional[str] = os.getenv("REDIS_URL")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = os.getenv("RESEND_API_KEY") or os.getenv("EMAIL_API_KEY")
    FROM_EMAIL: str = os.getenv("FROM_EMAIL", "noreply@prismhealthlab.com")
    FROM_NAME: str = os.getenv("FROM_NAME", "Prism Health Lab")
    APP_URL: str = os.getenv("APP_URL", "http://localhost:3000")

    # Cron / background callers
    CRON_SECRET: Optional[str] = os.getenv("CRON_SECRET") or os.getenv("WEBHOOK_SECRET")

    # Locations without a timezone column use this
    DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "America/Chicago")

    # Scheduling rules
    SLOT_INTERVAL_MINUTES: int = 30
    MIN_LEAD_HOURS: int = 2
    CANCELLATION_NOTICE_HOURS: int = 24
    DEFAULT_DAYS_AHEAD: int = 30
    MAX_DAYS_AHEAD: int = 90
    AVAILABILITY_CACHE_TTL: int = 60


settings = Settings()
