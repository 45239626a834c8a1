"""Canonical filesystem paths for tagscan configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

TAGSCAN_CONFIG_DIR = Path.home() / ".config" / "tagscan"

_env_db = os.environ.get("TAGSCAN_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else TAGSCAN_CONFIG_DIR / "tagscan.db"

LOG_DIR = TAGSCAN_CONFIG_DIR / "logs"
