from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("ignoring %s=%r, using %s", name, raw, default)
        return default
    if value != value or value < 0:
        logger.warning("ignoring %s=%r, using %s", name, raw, default)
        return default
    return value


def _env_int(name: str, default: int) -> int:
    value = _env_float(name, float(default))
    return int(value)


@dataclass
class EngineConfig:
    storage: str = "memory"  # memory | file | redis
    state_dir: str = "./rps_state"
    redis_url: Optional[str] = None
    journal_dir: Optional[str] = None
    realtime_eta: float = 1.6
    history_eta: float = 0.4
    min_rounds: int = 15
    flush_interval: float = 0.25
    allow_origins: str = "*"
    log_level: str = "INFO"

    @property
    def origins(self) -> List[str]:
        return [o.strip() for o in self.allow_origins.split(",") if o.strip()]

    @staticmethod
    def from_env() -> "EngineConfig":
        redis_url = os.getenv("REDIS_URL") or None
        state_dir = os.getenv("STATE_DIR")
        storage = (os.getenv("RPS_STORAGE") or "").strip().lower()
        if storage not in ("memory", "file", "redis"):
            if redis_url:
                storage = "redis"
            elif state_dir:
                storage = "file"
            else:
                storage = "memory"
        return EngineConfig(
            storage=storage,
            state_dir=state_dir or "./rps_state",
            redis_url=redis_url,
            journal_dir=os.getenv("RPS_JOURNAL_DIR") or None,
            realtime_eta=_env_float("RPS_REALTIME_ETA", 1.6) or 1.6,
            history_eta=_env_float("RPS_HISTORY_ETA", 0.4) or 0.4,
            min_rounds=_env_int("RPS_MIN_ROUNDS", 15),
            flush_interval=_env_float("RPS_FLUSH_INTERVAL", 0.25),
            allow_origins=os.getenv("ALLOW_ORIGINS", "*"),
            log_level=(os.getenv("RPS_LOG_LEVEL") or "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
