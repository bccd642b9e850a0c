import os


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

    # --- Task ordering engine ---
    # Attempts per operation before a Conflict reaches the caller.
    ORDERING_MAX_ATTEMPTS = int(os.environ.get("ORDERING_MAX_ATTEMPTS", 5))
    # Base backoff in seconds, doubled per attempt (plus jitter).
    ORDERING_RETRY_BACKOFF = float(os.environ.get("ORDERING_RETRY_BACKOFF", 0.05))
    ORDERING_RETRY_BACKOFF_MAX = float(os.environ.get("ORDERING_RETRY_BACKOFF_MAX", 1.0))
    # Upper bound on waiting for a column lock.
    ORDERING_LOCK_TIMEOUT_MS = int(os.environ.get("ORDERING_LOCK_TIMEOUT_MS", 5000))

    # --- New project defaults ---
    DEFAULT_BOARD_NAME = "Main Board"
    DEFAULT_COLUMNS = [
        ("To Do", "#EF4444"),
        ("In Progress", "#F59E0B"),
        ("In Review", "#3B82F6"),
        ("Done", "#10B981"),
    ]

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
    # JSON clients send the token from /api/auth/csrf-token as X-CSRFToken.
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
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
    ORDERING_RETRY_BACKOFF = 0.001  # keep retry tests fast
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
