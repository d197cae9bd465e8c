#!/usr/bin/env python3
"""
MUTT v2.5 - Dynamic Configuration for Checks

Redis-backed runtime overrides for check settings, so thresholds can be
tuned without redeploying check definitions.

Keys live under a prefix, one per setting:

    ratio_check:config:<check_name>_warning   -> "7.5"
    ratio_check:config:<check_name>_critical  -> "2"

Usage:
    from dynamic_config import DynamicConfig

    config = DynamicConfig(redis_client, prefix="ratio_check:config")
    warning = config.get_float('errors_ratio_warning', default=10.0)

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DynamicConfigError(Exception):
    """Raised when dynamic configuration operations fail."""
    pass


class DynamicConfig:
    """
    Read-side dynamic configuration with a local TTL cache.

    All keys under the prefix are loaded once on construction; later reads
    are served from the cache until the TTL expires.

    Attributes:
        redis: Redis client instance
        prefix: Key prefix for all config keys
        cache_ttl: Time-to-live for local cache entries in seconds
    """

    def __init__(self, redis_client, prefix: str = "ratio_check:config", cache_ttl: int = 5):
        self.redis = redis_client
        self.prefix = prefix
        self.cache_ttl = cache_ttl
        self.cache: Dict[str, Dict[str, Any]] = {}

        self.load_all()

        logger.debug(f"DynamicConfig initialized: prefix={prefix}, cache_ttl={cache_ttl}s")

    def get(self, key: str, default: Optional[str] = None) -> str:
        """
        Get a configuration value, checking the local cache first.

        Raises:
            KeyError: If key not found and no default provided
            DynamicConfigError: If the Redis read fails
        """
        if key in self.cache:
            cache_entry = self.cache[key]
            if time.time() - cache_entry['timestamp'] < self.cache_ttl:
                return cache_entry['value']

        try:
            value = self.redis.get(f"{self.prefix}:{key}")
        except Exception as e:
            logger.error(f"Failed to get config {key} from Redis: {e}")
            raise DynamicConfigError(f"Failed to get config {key}: {e}") from e

        if value is not None:
            value = value.decode('utf-8') if isinstance(value, bytes) else value
            self.cache[key] = {'value': value, 'timestamp': time.time()}
            logger.debug(f"Config loaded from Redis: {key}={value}")
            return value

        if default is not None:
            return default

        raise KeyError(f"Configuration key not found: {key}")

    def get_float(self, key: str, default: float) -> float:
        """
        Get a numeric value, falling back to ``default`` when the key is absent.

        Raises:
            DynamicConfigError: If the Redis read fails or the value is not a number
        """
        raw = self.get(key, default=str(default))
        try:
            return float(raw)
        except ValueError as e:
            raise DynamicConfigError(f"Config {key} is not a number: {raw!r}") from e

    def load_all(self) -> int:
        """
        Load every key under the prefix into the local cache.

        Returns:
            Number of config keys loaded
        """
        count = 0
        try:
            for redis_key in self.redis.scan_iter(match=f"{self.prefix}:*", count=100):
                key_str = redis_key.decode('utf-8') if isinstance(redis_key, bytes) else redis_key
                key_name = key_str[len(self.prefix) + 1:]

                value = self.redis.get(redis_key)
                if value:
                    value = value.decode('utf-8') if isinstance(value, bytes) else value
                    self.cache[key_name] = {'value': value, 'timestamp': time.time()}
                    count += 1
        except Exception as e:
            logger.error(f"Failed to load config from Redis: {e}")
            raise DynamicConfigError(f"Failed to load config: {e}") from e

        logger.debug(f"Loaded {count} config values from Redis")
        return count
