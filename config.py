import os

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # dotenv is optional for production, but useful locally

class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker/backend) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telegram ---
    TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")
    TELEGRAM_WEBHOOK_SECRET = os.environ.get("TELEGRAM_WEBHOOK_SECRET")
    TELEGRAM_API_BASE = os.environ.get("TELEGRAM_API_BASE", "https://api.telegram.org")

    # --- Telnyx (SMS) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_PUBLIC_KEY = os.environ.get("TELNYX_PUBLIC_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")

    # --- Notion (external content source) ---
    NOTION_API_BASE = os.environ.get("NOTION_API_BASE", "https://api.notion.com/v1")
    NOTION_VERSION = os.environ.get("NOTION_VERSION", "2022-06-28")

    # --- Trigger / internal auth ---
    CRON_SECRET = os.environ.get("CRON_SECRET")
    INTERNAL_API_TOKEN = os.environ.get("INTERNAL_API_TOKEN")

    # --- Delivery defaults ---
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "America/New_York")
    DEFAULT_MORNING_TIME = os.environ.get("DEFAULT_MORNING_TIME", "09:00")
    DEFAULT_EVENING_TIME = os.environ.get("DEFAULT_EVENING_TIME", "18:00")
    DUE_TOLERANCE_MINUTES = int(os.environ.get("DUE_TOLERANCE_MINUTES", "5"))
    DELIVERY_CLAIM_TTL_SECONDS = int(os.environ.get("DELIVERY_CLAIM_TTL_SECONDS", "600"))
    SWEEP_CONCURRENCY = int(os.environ.get("SWEEP_CONCURRENCY", "10"))
    SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "300"))

    # --- Verification / linking ---
    VERIFICATION_CODE_TTL_MINUTES = int(os.environ.get("VERIFICATION_CODE_TTL_MINUTES", "10"))
    VERIFICATION_MAX_ATTEMPTS = int(os.environ.get("VERIFICATION_MAX_ATTEMPTS", "5"))
    VERIFICATION_LOCKOUT_MINUTES = int(os.environ.get("VERIFICATION_LOCKOUT_MINUTES", "15"))

    # --- External call timeout (seconds) ---
    EXTERNAL_CALL_TIMEOUT = float(os.environ.get("EXTERNAL_CALL_TIMEOUT", "10"))

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # --- Railway metadata (optional) ---
    RAILWAY_ENVIRONMENT = os.environ.get("RAILWAY_ENVIRONMENT")
    RAILWAY_PUBLIC_DOMAIN = os.environ.get("RAILWAY_PUBLIC_DOMAIN")

settings = Settings()
