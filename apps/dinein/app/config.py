import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_flag(key: str, default: bool = False) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


ENV = _env_or("ENV", "dev").strip().lower()
DB_URL = _env_or("DINEIN_DB_URL", "sqlite+pysqlite:////tmp/dinein.db")
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None
ALLOWED_ORIGINS = _env_or("ALLOWED_ORIGINS", "*")

# Omise gateway (PromptPay)
OMISE_API_URL = _env_or("OMISE_API_URL", "https://api.omise.co").rstrip("/")
OMISE_SECRET_KEY = _env_or("OMISE_SECRET_KEY", "")
OMISE_PUBLIC_KEY = _env_or("OMISE_PUBLIC_KEY", "")
OMISE_RETURN_URI = _env_or("OMISE_RETURN_URI", "http://localhost:3000/payment/complete")
OMISE_TIMEOUT_SECS = float(_env_or("OMISE_TIMEOUT_SECS", "15"))
PROMPTPAY_CURRENCY = "thb"
PROMPTPAY_MIN_AMOUNT = float(_env_or("PROMPTPAY_MIN_AMOUNT", "20"))
PROMPTPAY_EXPIRY_HOURS = int(_env_or("PROMPTPAY_EXPIRY_HOURS", "24"))

# Occupy/free tables on check-in/checkout.
TABLE_AUTO_STATUS = _env_flag("DINEIN_TABLE_AUTO_STATUS", False)


def is_prod_env() -> bool:
    # read per call so a running process follows ENV changes
    env = (os.getenv("ENV") or "dev").strip().lower()
    return env in ("prod", "production", "staging")
