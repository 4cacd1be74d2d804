"""
Configuration Loader Service - Loads config from GCS with caching.

The job bucket holds a single JSON document (config/system_config.json) that
overrides environment variables for tunables such as the Gemini model, retry
delays and concurrency limits. Missing keys fall through to the environment
and then to the defaults in config.py.
"""
import json
import time
from typing import Any, Optional
from google.cloud import storage
from google.api_core import exceptions as google_exceptions


class ConfigLoader:
    """Loads configuration from GCS with local cache and fallback."""

    def __init__(self, bucket_name: str, config_path: str = "config/system_config.json",
                 cache_ttl: int = 0, client: Optional[storage.Client] = None):
        """
        Initialize the config loader.

        Args:
            bucket_name: GCS bucket name
            config_path: Path to config file in GCS (default: config/system_config.json)
            cache_ttl: Cache TTL in seconds. 0 = no caching (default).
            client: Optional pre-built storage client
        """
        self.bucket_name = bucket_name
        self.config_path = config_path
        self.cache_ttl = cache_ttl
        self._cache = None
        self._cache_time = None
        self._client = client

    def _get_storage_client(self) -> storage.Client:
        """Lazy initialization of storage client."""
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def get_config(self, force_refresh: bool = False) -> dict:
        """
        Returns cached or fresh config from GCS.

        Falls back to the last good copy (or an empty dict) when GCS is
        unreachable or the document is not valid JSON.
        """
        if not force_refresh and self._cache_is_fresh():
            return self._cache

        try:
            blob = self._get_storage_client().bucket(self.bucket_name).blob(self.config_path)
            if not blob.exists():
                print(f"Warning: Config file {self.config_path} not found in GCS. Using env/defaults.")
                return self._cache or {}

            config = json.loads(blob.download_as_text())
            if not isinstance(config, dict):
                print(f"Warning: Config file {self.config_path} is not a JSON object. Ignoring it.")
                return self._cache or {}

            self._cache = config
            self._cache_time = time.time()
            return config

        except (google_exceptions.GoogleAPIError, ValueError) as e:
            print(f"Error loading config from GCS: {e}. Using cache/env/defaults.")
            return self._cache or {}

    def _cache_is_fresh(self) -> bool:
        if self.cache_ttl <= 0 or self._cache is None or self._cache_time is None:
            return False
        return (time.time() - self._cache_time) < self.cache_ttl

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get nested config value using dot notation.

        Example:
            >>> loader.get('retry.max_attempts', 3)
        """
        value = self.get_config()
        for key in key_path.split('.'):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value
