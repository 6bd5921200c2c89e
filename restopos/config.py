# restopos/config.py
from __future__ import annotations

import logging
import os

from pydantic import BaseModel

# Load .env locally (safe in prod too)
try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass


def _env_flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except Exception:
        return default


# -------------------
# Config (env-driven)
# -------------------
class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./restopos.db")

    # scheduler tick, milliseconds
    auto_progress_interval_ms: int = _env_int("AUTO_PROGRESS_INTERVAL_MS", 5000)

    printing_enabled: bool = _env_flag("PRINTING_ENABLED", "1")
    print_spool_dir: str = os.getenv("PRINT_SPOOL_DIR", "print_spool")

    currency_symbol: str = os.getenv("CURRENCY_SYMBOL", "R$")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
