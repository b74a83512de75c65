"""
Runtime configuration for the POS sync service.

Values come from the environment (optionally a .env file next to the
process). Empty strings are treated as unset.

Env vars:
  POS_DB_PATH          SQLite file for the queue and offline cache (default: pos.db)
  REMOTE_URL           Base URL of the remote REST backend
  REMOTE_API_KEY       Project API key sent as the `apikey` header
  REMOTE_ACCESS_TOKEN  Session bearer token (falls back to the API key)
  POS_OWNER_ID         Owner/user id the store writes on behalf of
  REMOTE_TIMEOUT       Seconds per remote request (default: 15)
  SYNC_INTERVAL        Seconds between worker ticks (default: 10)
  POS_LOG_LEVEL        Logging level name (default: INFO)
  HOST / PORT          Flask bind address (default: 0.0.0.0:5000)
  FLASK_DEBUG          '1' to run Flask in debug mode
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


class PosConfig:
    def __init__(self):
        self.db_path = _env_string('POS_DB_PATH', 'pos.db')
        self.remote_url = _env_string('REMOTE_URL')
        self.remote_api_key = _env_string('REMOTE_API_KEY')
        self.remote_access_token = _env_string('REMOTE_ACCESS_TOKEN')
        self.owner_id = _env_string('POS_OWNER_ID')
        self.remote_timeout = max(1.0, _env_float('REMOTE_TIMEOUT', 15.0))
        self.sync_interval = max(1.0, _env_float('SYNC_INTERVAL', 10.0))
        self.log_level = (_env_string('POS_LOG_LEVEL', 'INFO') or 'INFO').upper()
        self.host = _env_string('HOST', '0.0.0.0')
        self.port = _env_int('PORT', 5000)
        self.debug = _env_string('FLASK_DEBUG', '0') == '1'

    @property
    def has_remote(self) -> bool:
        return bool(self.remote_url and self.remote_api_key)


def load_config() -> PosConfig:
    return PosConfig()


def configure_logging(config: PosConfig, fmt: str = '%(asctime)s %(levelname)s %(name)s %(message)s') -> None:
    level = getattr(logging, config.log_level, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger('werkzeug').setLevel(level)
