"""
config.py
Process settings from environment variables (a local .env file is honoured).
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_FILE = Path(os.environ.get("DUES_DB_FILE", str(Path(__file__).with_name("dues.db"))))
LOG_LEVEL = os.environ.get("DUES_LOG_LEVEL", "INFO")
DEFAULT_TIMEZONE = os.environ.get("DUES_DEFAULT_TIMEZONE", "America/Los_Angeles")
STORE_TIMEOUT = float(os.environ.get("DUES_STORE_TIMEOUT", "10"))
