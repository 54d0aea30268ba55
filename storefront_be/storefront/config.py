import os
from functools import lru_cache

# Prefer loading environment variables from a .env file if python-dotenv is available
try:
    from dotenv import load_dotenv, find_dotenv
    _env_path = find_dotenv(usecwd=True)
    if _env_path:
        load_dotenv(_env_path, override=False)
except ImportError:
    pass


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL")
    # Seconds to wait for a pooled connection before failing the request
    DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "10"))

    SECRET_KEY: str = os.getenv("SECRET_KEY", "change_me_secret")
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(7 * 24 * 60)))

    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: int = int(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "15"))
    # Retries reuse the same idempotency key, so they never double-refund
    PAYMENT_GATEWAY_MAX_RETRIES: int = int(os.getenv("PAYMENT_GATEWAY_MAX_RETRIES", "2"))

    RETURN_WINDOW_DAYS: int = int(os.getenv("RETURN_WINDOW_DAYS", "7"))
    DEFECT_RETURN_WINDOW_DAYS: int = int(os.getenv("DEFECT_RETURN_WINDOW_DAYS", "30"))

    RETURN_RATE_LIMIT_MAX: int = int(os.getenv("RETURN_RATE_LIMIT_MAX", "5"))
    RETURN_RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RETURN_RATE_LIMIT_WINDOW_SECONDS", str(24 * 60 * 60)))
    # "memory" is only correct for a single instance; use "database" when scaled out
    RATE_LIMIT_BACKEND: str = os.getenv("RATE_LIMIT_BACKEND", "memory").lower()
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("RATE_LIMIT_SWEEP_INTERVAL_SECONDS", "3600"))

    # Comma separated list; "*" allows any origin
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


@lru_cache
def get_settings():
    return Settings()
