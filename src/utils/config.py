import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings, read from the environment (and a .env file if present).

    Fields:
      - db_path: sqlite file backing the local persistence/identity backends
      - cart_path: json file the cart is mirrored into
      - intent_path: json file holding the pending checkout intent
      - profile_timeout: seconds the profile lookup may take before falling back
      - call_timeout: per-call timeout for checkout backend calls
      - retry_attempts / retry_wait_max: retry policy for transient checkout errors
      - session_ttl_hours: lifetime of a new session
      - seed_demo: seed demo vendors and products when the database is created
    """

    db_path: str = "data/market.sqlite"
    cart_path: str = "data/cart.json"
    intent_path: str = "data/checkout_intent.json"
    profile_timeout: float = 2.5
    call_timeout: float = 10.0
    retry_attempts: int = 3
    retry_wait_max: float = 4.0
    session_ttl_hours: int = 168
    seed_demo: bool = True


_settings: Optional[Settings] = None


def get_settings(reload: bool = False) -> Settings:
    global _settings
    if _settings is not None and not reload:
        return _settings

    load_dotenv()
    defaults = Settings()
    _settings = Settings(
        db_path=os.getenv("MARKET_DB_PATH", defaults.db_path),
        cart_path=os.getenv("MARKET_CART_PATH", defaults.cart_path),
        intent_path=os.getenv("MARKET_INTENT_PATH", defaults.intent_path),
        profile_timeout=float(
            os.getenv("MARKET_PROFILE_TIMEOUT", defaults.profile_timeout)
        ),
        call_timeout=float(os.getenv("MARKET_CALL_TIMEOUT", defaults.call_timeout)),
        retry_attempts=int(
            os.getenv("MARKET_RETRY_ATTEMPTS", defaults.retry_attempts)
        ),
        retry_wait_max=float(
            os.getenv("MARKET_RETRY_WAIT_MAX", defaults.retry_wait_max)
        ),
        session_ttl_hours=int(
            os.getenv("MARKET_SESSION_TTL_HOURS", defaults.session_ttl_hours)
        ),
        seed_demo=_env_bool("MARKET_SEED_DEMO", defaults.seed_demo),
    )
    return _settings
