import os
from typing import Optional


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on", "t")


def _env_int(key: str, default: Optional[int]) -> Optional[int]:
    v = os.getenv(key)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or not v.strip():
        return default
    try:
        return float(v)
    except ValueError:
        return default


DB_URL = _env_or("CLINIC_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/clinic.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

CLINIC_TZ = _env_or("CLINIC_TZ", "Asia/Kolkata")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")
LOG_LEVEL = _env_or("LOG_LEVEL", "INFO")
DEMO_SEED = _env_bool("CLINIC_DEMO_SEED", False)

DEFAULT_SLOT_MINUTES = _env_int("DEFAULT_SLOT_MINUTES", 15) or 15
MAX_BREAKS_PER_SESSION = _env_int("MAX_BREAKS_PER_SESSION", 3) or 3

# arrive-by window around each slot
CUT_OFF_MINUTES = _env_int("CUT_OFF_MINUTES", 15) or 0
NO_SHOW_MINUTES = _env_int("NO_SHOW_MINUTES", 15) or 0

RESERVATION_MAX_ATTEMPTS = _env_int("RESERVATION_MAX_ATTEMPTS", 3) or 1
SHIFT_MAX_ATTEMPTS = _env_int("SHIFT_MAX_ATTEMPTS", 2) or 1

WALK_IN_RESERVE_RATIO = _env_float("WALK_IN_RESERVE_RATIO", 0.15)

# None keeps break-blocked slots closed until an operator reopens them
BREAK_BLOCK_RELEASE_MINUTES = _env_int("BREAK_BLOCK_RELEASE_MINUTES", None)
