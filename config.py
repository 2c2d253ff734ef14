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

    # --- Redis (Celery broker) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telnyx (SMS) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")

    # --- Recipients ---
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "America/New_York")
    DEFAULT_PREFERRED_TIME = os.environ.get("DEFAULT_PREFERRED_TIME", "09:00")

    # --- Delivery tick ---
    DELIVERY_TICK_SECONDS = float(os.environ.get("DELIVERY_TICK_SECONDS", "60"))
    DELIVERY_GRACE_MINUTES = int(os.environ.get("DELIVERY_GRACE_MINUTES", "5"))
    DELIVERY_LOOKBEHIND_HOURS = int(os.environ.get("DELIVERY_LOOKBEHIND_HOURS", "24"))
    DELIVERY_BATCH_SIZE = int(os.environ.get("DELIVERY_BATCH_SIZE", "10"))
    DELIVERY_SEND_DELAY_SECONDS = float(os.environ.get("DELIVERY_SEND_DELAY_SECONDS", "1.0"))
    DELIVERY_SEND_TIMEOUT_SECONDS = float(os.environ.get("DELIVERY_SEND_TIMEOUT_SECONDS", "30"))

    # --- Populate tick (hour of day, UTC) ---
    POPULATE_HOUR_UTC = int(os.environ.get("POPULATE_HOUR_UTC", "0"))

    # --- Circuit breaker ---
    BREAKER_FAILURE_THRESHOLD = int(os.environ.get("BREAKER_FAILURE_THRESHOLD", "5"))
    BREAKER_COOLDOWN_SECONDS = float(os.environ.get("BREAKER_COOLDOWN_SECONDS", "300"))

    # --- Retention ---
    INTERACTION_RETENTION_HOURS = int(os.environ.get("INTERACTION_RETENTION_HOURS", "24"))
    QUEUE_RETENTION_DAYS = int(os.environ.get("QUEUE_RETENTION_DAYS", "30"))

    # --- Admin API ---
    ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY")

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # --- Railway metadata (optional) ---
    RAILWAY_ENVIRONMENT = os.environ.get("RAILWAY_ENVIRONMENT")

settings = Settings()
