import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


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

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # Checkout redirect targets. {CHECKOUT_SESSION_ID} is filled in by Stripe.
    STRIPE_SUCCESS_URL = os.environ.get(
        "STRIPE_SUCCESS_URL",
        f"{APP_BASE_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
    )
    STRIPE_CANCEL_URL = os.environ.get(
        "STRIPE_CANCEL_URL", f"{APP_BASE_URL}/payment/cancel"
    )

    # --- Lead pricing ---
    LEAD_DEFAULT_PRICE = os.environ.get("LEAD_DEFAULT_PRICE", "5.00")  # major units
    LEAD_CURRENCY = os.environ.get("LEAD_CURRENCY", "USD")
    LEAD_DEFAULT_MAX_PROVIDERS = int(os.environ.get("LEAD_DEFAULT_MAX_PROVIDERS", 3))

    # --- Payment hold ---
    PAYMENT_HOLD_MINUTES = int(os.environ.get("PAYMENT_HOLD_MINUTES", 5))

    # --- Matching ---
    MATCH_RADIUS_CAP_KM = float(os.environ.get("MATCH_RADIUS_CAP_KM", 50))
    # Scan existing providers when a request is created (request -> provider).
    MATCH_ON_REQUEST_CREATE = _env_flag("MATCH_ON_REQUEST_CREATE", "true")

    # --- Scheduler ---
    REQUEST_EXPIRY_HOURS = int(os.environ.get("REQUEST_EXPIRY_HOURS", 24))
    AUTO_APPROVE_HOURS = int(os.environ.get("AUTO_APPROVE_HOURS", 72))
    EXPIRY_SWEEP_SECONDS = int(os.environ.get("EXPIRY_SWEEP_SECONDS", 3600))
    AUTO_APPROVE_SWEEP_SECONDS = int(
        os.environ.get("AUTO_APPROVE_SWEEP_SECONDS", 6 * 3600)
    )

    # --- Rate limiting ---
    # memory:// is per-process. Point this at redis:// when running more
    # than one instance so limits are shared.
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")

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
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    APP_BASE_URL = "http://localhost:5000"
    STRIPE_SUCCESS_URL = "http://localhost:5000/payment/success?session_id={CHECKOUT_SESSION_ID}"
    STRIPE_CANCEL_URL = "http://localhost:5000/payment/cancel"
    LEAD_DEFAULT_PRICE = "5.00"
    LEAD_CURRENCY = "USD"
    LEAD_DEFAULT_MAX_PROVIDERS = 3
    PAYMENT_HOLD_MINUTES = 5
    MATCH_RADIUS_CAP_KM = 50.0
    MATCH_ON_REQUEST_CREATE = True
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
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
