"""
Application configuration manager.
Stores settings in a JSON file under Application Support.
"""

import json
import logging
from pathlib import Path
from urllib.parse import urlparse

from app.core.constants import (
    CONFIG_PATH, DEFAULT_EXTRACTION_ROOT, DEFAULT_SERVER_BASE_URL,
    RETENTION_COUNT, MAX_DOWNLOAD_RETRIES, RETRY_DELAY_SEC,
    CONNECT_TIMEOUT_SEC, UPLOAD_TIMEOUT_SEC, DOWNLOAD_TIMEOUT_SEC,
)

# Validation bounds
_RETENTION_MIN = 1
_RETENTION_MAX = 20
_RETRIES_MIN = 0
_RETRIES_MAX = 10
_RETRY_DELAY_MIN = 0.0
_RETRY_DELAY_MAX = 60.0
_TIMEOUT_MIN = 10
_TIMEOUT_MAX = 3600

_TIMEOUT_KEYS = {
    'connect_timeout_sec': CONNECT_TIMEOUT_SEC,
    'upload_timeout_sec': UPLOAD_TIMEOUT_SEC,
    'download_timeout_sec': DOWNLOAD_TIMEOUT_SEC,
}

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'server_base_url': DEFAULT_SERVER_BASE_URL,
    'extraction_root': str(DEFAULT_EXTRACTION_ROOT),
    'retention_count': RETENTION_COUNT,
    'max_download_retries': MAX_DOWNLOAD_RETRIES,
    'retry_delay_sec': RETRY_DELAY_SEC,
    'connect_timeout_sec': CONNECT_TIMEOUT_SEC,
    'upload_timeout_sec': UPLOAD_TIMEOUT_SEC,
    'download_timeout_sec': DOWNLOAD_TIMEOUT_SEC,
    'keep_debug_artifacts': False,
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)
                return
            for key, value in saved.items():
                self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'server_base_url':
            parsed = urlparse(str(value or ""))
            if parsed.scheme not in ('http', 'https') or not parsed.netloc:
                logger.warning("Invalid server_base_url %r, using default", value)
                return DEFAULT_SERVER_BASE_URL
            return str(value).rstrip('/')

        if key == 'retention_count':
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid retention_count %r, using default", value)
                return RETENTION_COUNT
            return max(_RETENTION_MIN, min(_RETENTION_MAX, value))

        if key == 'max_download_retries':
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid max_download_retries %r, using default", value)
                return MAX_DOWNLOAD_RETRIES
            return max(_RETRIES_MIN, min(_RETRIES_MAX, value))

        if key == 'retry_delay_sec':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid retry_delay_sec %r, using default", value)
                return RETRY_DELAY_SEC
            return max(_RETRY_DELAY_MIN, min(_RETRY_DELAY_MAX, value))

        if key in _TIMEOUT_KEYS:
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _TIMEOUT_KEYS[key]
            return max(_TIMEOUT_MIN, min(_TIMEOUT_MAX, value))

        if key == 'keep_debug_artifacts':
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def server_base_url(self) -> str:
        return self._data.get('server_base_url', DEFAULT_SERVER_BASE_URL)

    @server_base_url.setter
    def server_base_url(self, value: str):
        self.set('server_base_url', value)

    @property
    def extraction_root(self) -> str:
        return self._data.get('extraction_root', str(DEFAULT_EXTRACTION_ROOT))

    @extraction_root.setter
    def extraction_root(self, value: str):
        self._data['extraction_root'] = value
        self.save()

    @property
    def retention_count(self) -> int:
        return self._data.get('retention_count', RETENTION_COUNT)

    @property
    def keep_debug_artifacts(self) -> bool:
        return self._data.get('keep_debug_artifacts', False)

    @keep_debug_artifacts.setter
    def keep_debug_artifacts(self, value: bool):
        self._data['keep_debug_artifacts'] = value
        self.save()
