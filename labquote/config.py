import os

base_dir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
db_path = os.environ.get("LABQUOTE_DB_PATH") or os.path.join(base_dir, "labquote.db")


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = f"sqlite:///{db_path}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False

    # tracking gate
    TRACKING_COOLDOWN_MINUTES = _env_int("TRACKING_COOLDOWN_MINUTES", 60)
    TRACKING_STALE_HOURS = _env_int("TRACKING_STALE_HOURS", 4)

    # payment reminders
    PAYMENT_REMINDER_INTERVAL_DAYS = _env_int("PAYMENT_REMINDER_INTERVAL_DAYS", 7)

    # outbound mail
    MAIL_BACKEND = os.environ.get("MAIL_BACKEND", "log")
    MAIL_FROM = os.environ.get("MAIL_FROM", "quotes@labquote.local")
    SMTP_HOST = os.environ.get("SMTP_HOST")
    SMTP_PORT = _env_int("SMTP_PORT", 587)
    SMTP_USER = os.environ.get("SMTP_USER")
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD")

    # carrier
    CARRIER_BACKEND = os.environ.get("CARRIER_BACKEND", "none")
    UPS_CLIENT_ID = os.environ.get("UPS_CLIENT_ID")
    UPS_CLIENT_SECRET = os.environ.get("UPS_CLIENT_SECRET")
    UPS_BASE_URL = os.environ.get("UPS_BASE_URL", "https://onlinetools.ups.com")
    UPS_TIMEOUT = _env_int("UPS_TIMEOUT", 10)


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    MAIL_BACKEND = "log"
    CARRIER_BACKEND = "none"
