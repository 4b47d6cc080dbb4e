import os


def _normalize_database_url(url: str) -> str:
    # Render/Heroku sometimes provide postgres:// which SQLAlchemy expects as postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return float(default)


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return int(default)


class Config:
    # Base directory of the project (one level above this `dolci` package)
    BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    INSTANCE_DIR = os.path.join(BASE_DIR, "instance")
    ENV = (os.getenv("DOLCI_ENV", "dev") or "dev").strip().lower()
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    _default_sqlite_path = os.path.join(INSTANCE_DIR, "dolci.db").replace("\\", "/")
    _db_url = os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URI") or f"sqlite:///{_default_sqlite_path}"
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CORS: comma-separated origins for the booking front-end and the admin back-office
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "XOF")

    # Fallback platform commission when no CommissionRule matches (0.05 = 5%)
    COMMISSION_RATE = _float_env("COMMISSION_RATE", 0.05)

    # Release tokens
    QR_TOKEN_GRACE_HOURS = _int_env("QR_TOKEN_GRACE_HOURS", 48)
    QR_TOKEN_RETENTION_DAYS = _int_env("QR_TOKEN_RETENTION_DAYS", 90)
    QR_VERIFY_BASE_URL = os.getenv("QR_VERIFY_BASE_URL", "https://app.dolci-reva.com")

    # on_release | after_stay
    BOOKING_COMPLETION_POLICY = os.getenv("BOOKING_COMPLETION_POLICY", "on_release")

    # Coordinator retries on storage contention
    RECONCILE_MAX_ATTEMPTS = _int_env("RECONCILE_MAX_ATTEMPTS", 3)
    RECONCILE_BACKOFF_SECONDS = _float_env("RECONCILE_BACKOFF_SECONDS", 0.05)

    # Payment gateway (external provider)
    GATEWAY_SECRET = os.getenv("GATEWAY_SECRET", "")
    GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "")
    GATEWAY_TIMEOUT_SECONDS = _int_env("GATEWAY_TIMEOUT_SECONDS", 20)
