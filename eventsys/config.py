import os


def _app_base_url():
    return os.environ.get("APP_BASE_URL", "http://localhost:5000")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    APP_BASE_URL = _app_base_url()

    # --- M-Pesa (Daraja) ---
    MPESA_BASE_URL = os.environ.get("MPESA_BASE_URL", "https://sandbox.safaricom.co.ke")
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY")
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET")
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY")
    MPESA_SHORTCODE = os.environ.get("MPESA_SHORTCODE")
    MPESA_TRANSACTION_TYPE = os.environ.get(
        "MPESA_TRANSACTION_TYPE", "CustomerPayBillOnline"
    )
    MPESA_CALLBACK_URL = os.environ.get(
        "MPESA_CALLBACK_URL", f"{_app_base_url()}/events/mpesa/callback"
    )
    # Optional shared secret appended to the callback URL as ?token=...
    MPESA_CALLBACK_TOKEN = os.environ.get("MPESA_CALLBACK_TOKEN")
    MPESA_TIMEOUT = float(os.environ.get("MPESA_TIMEOUT", 10))  # seconds, per request
    MPESA_TIMEZONE = os.environ.get("MPESA_TIMEZONE", "Africa/Nairobi")

    # --- Reconciliation ---
    # Unresolved sessions are queried after this long...
    PAYMENT_POLL_AFTER_SECONDS = int(os.environ.get("PAYMENT_POLL_AFTER_SECONDS", 300))
    # ...and force-failed after this long, whether or not the query works.
    PAYMENT_HARD_DEADLINE_SECONDS = int(os.environ.get("PAYMENT_HARD_DEADLINE_SECONDS", 900))
    SWEEP_INTERVAL_SECONDS = int(os.environ.get("SWEEP_INTERVAL_SECONDS", 60))
    PROJECTION_REPAIR_MAX_ATTEMPTS = int(os.environ.get("PROJECTION_REPAIR_MAX_ATTEMPTS", 10))

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "EventSys")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "APP_BASE_URL",
            "MPESA_CONSUMER_KEY",
            "MPESA_CONSUMER_SECRET",
            "MPESA_PASSKEY",
            "MPESA_SHORTCODE",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = Config.SQLALCHEMY_DATABASE_URI or "sqlite:///eventsys-dev.db"
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled, fake Daraja credentials."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    APP_BASE_URL = "http://localhost:5000"
    MPESA_BASE_URL = "https://sandbox.safaricom.test"
    MPESA_CONSUMER_KEY = "consumer_key_test"
    MPESA_CONSUMER_SECRET = "consumer_secret_test"
    MPESA_PASSKEY = "passkey_test"
    MPESA_SHORTCODE = "174379"
    MPESA_CALLBACK_URL = "http://localhost:5000/events/mpesa/callback"
    MPESA_CALLBACK_TOKEN = None
    MPESA_TIMEOUT = 5
    MAIL_USERNAME = None  # email_service skips sending without credentials
    MAIL_PASSWORD = None
    WTF_CSRF_ENABLED = False  # disable CSRF for test forms
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
