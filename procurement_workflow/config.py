import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def parse_currency_rates(raw: str | None) -> dict[str, float]:
    """Parse ``"USD:1,EUR:1.08"`` into ``{"USD": 1.0, "EUR": 1.08}``.

    Rates are expressed against one shared reference unit; malformed pairs are skipped.
    """
    rates: dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        code, _, value = chunk.partition(":")
        code = code.strip().upper()
        if not code or not value.strip():
            continue
        try:
            rate = float(value)
        except ValueError:
            continue
        if rate > 0:
            rates[code] = rate
    return rates


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "procurement_workflow.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-procurement-workflow")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    EXTERNAL_TIMEOUT_SECONDS = _float_env("EXTERNAL_TIMEOUT_SECONDS", 5.0)
    LOOKUP_RETRY_ATTEMPTS = _int_env("LOOKUP_RETRY_ATTEMPTS", 3)
    LOOKUP_RETRY_BASE_DELAY_MS = _int_env("LOOKUP_RETRY_BASE_DELAY_MS", 100)
    LOOKUP_RETRY_MAX_DELAY_MS = _int_env("LOOKUP_RETRY_MAX_DELAY_MS", 1000)

    VENDOR_APPROVAL_3QUOTE_MONTHS = _int_env("VENDOR_APPROVAL_3QUOTE_MONTHS", 12)
    VENDOR_APPROVAL_COMPLETED_MONTHS = _int_env("VENDOR_APPROVAL_COMPLETED_MONTHS", 6)
    VENDOR_APPROVAL_MANUAL_MONTHS = _int_env("VENDOR_APPROVAL_MANUAL_MONTHS", 12)
    HIGH_VALUE_VENDOR_MAX_MONTHS = _int_env("HIGH_VALUE_VENDOR_MAX_MONTHS", 24)

    CURRENCY_RATES = os.environ.get("CURRENCY_RATES", "USD:1")

    HOUSEKEEPING_ENABLED = _bool_env("HOUSEKEEPING_ENABLED", True)
    HOUSEKEEPING_INTERVAL_SECONDS = _int_env("HOUSEKEEPING_INTERVAL_SECONDS", 86_400)
    HOUSEKEEPING_MIN_BACKOFF_SECONDS = _int_env("HOUSEKEEPING_MIN_BACKOFF_SECONDS", 60)
    HOUSEKEEPING_MAX_BACKOFF_SECONDS = _int_env("HOUSEKEEPING_MAX_BACKOFF_SECONDS", 3600)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required in production.")
        if env == "production" and self.SECRET_KEY == "dev-secret-procurement-workflow":
            raise RuntimeError("SECRET_KEY must be changed for production.")
