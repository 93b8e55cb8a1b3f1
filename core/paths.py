#!/usr/bin/env python3
"""
Central path configuration for the encoding scheduler.

Resolution order for the base directory:
1. ENCODING_BASE_DIR environment variable
2. Auto-detect the repository root (directory holding pyproject.toml)
3. Current working directory

Usage:
    from core.paths import get_base_dir, get_data_dir, get_default_db_path

    db_path = get_default_db_path()  # base / "data" / "encoding_jobs.db"
"""

import logging
import os
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

DB_FILENAME = "encoding_jobs.db"


@lru_cache(maxsize=1)
def get_base_dir() -> Path:
    """Get the base directory for runtime data."""
    env_path = os.environ.get("ENCODING_BASE_DIR")
    if env_path:
        path = Path(env_path).expanduser()
        logger.info(f"Base dir from environment: {path}")
        return path

    current = Path(__file__).resolve().parent
    while current != current.parent:
        if (current / "pyproject.toml").exists():
            logger.info(f"Base dir auto-detected (pyproject.toml): {current}")
            return current
        current = current.parent

    return Path.cwd()


def get_data_dir() -> Path:
    """Get the data directory (base/data)."""
    return get_base_dir() / "data"


def get_default_db_path() -> Path:
    """Default job database location (base/data/encoding_jobs.db)."""
    return get_data_dir() / DB_FILENAME
