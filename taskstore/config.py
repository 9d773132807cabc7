"""Runtime settings for taskstore, read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DATA_DIR_ENV = "TASKSTORE_DATA_DIR"
FALLBACK_DATA_DIR_ENV = "DATA_DIR"
TEMPLATE_LANGUAGE_ENV = "TEMPLATES_USE"
STATS_TTL_ENV = "TASKSTORE_STATS_TTL"
LOG_LEVEL_ENV = "TASKSTORE_LOG_LEVEL"
LOG_FILE_ENV = "TASKSTORE_LOG_FILE"

DEFAULT_DATA_DIR = "data"
DEFAULT_STATS_TTL_SECONDS = 300.0

logger = logging.getLogger("taskstore.config")


@dataclass(slots=True)
class StoreSettings:
    """Where data lives and how the stores behave."""

    data_dir: Path
    template_language: str = "en"
    auto_backup: bool = True
    stats_ttl_seconds: float = DEFAULT_STATS_TTL_SECONDS
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StoreSettings":
        env = os.environ if environ is None else environ

        data_dir = env.get(DATA_DIR_ENV) or env.get(FALLBACK_DATA_DIR_ENV) or DEFAULT_DATA_DIR

        ttl_raw = env.get(STATS_TTL_ENV)
        stats_ttl = DEFAULT_STATS_TTL_SECONDS
        if ttl_raw:
            try:
                stats_ttl = float(ttl_raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {STATS_TTL_ENV}={ttl_raw!r}")
            else:
                if stats_ttl < 0:
                    logger.warning(f"Ignoring negative {STATS_TTL_ENV}={ttl_raw!r}")
                    stats_ttl = DEFAULT_STATS_TTL_SECONDS

        log_file = env.get(LOG_FILE_ENV)
        return cls(
            data_dir=Path(data_dir).expanduser().resolve(),
            template_language=env.get(TEMPLATE_LANGUAGE_ENV) or "en",
            stats_ttl_seconds=stats_ttl,
            log_level=(env.get(LOG_LEVEL_ENV) or "INFO").upper(),
            log_file=Path(log_file) if log_file else None,
        )
