"""
Redis Rule Storage

Stores the rule list as one JSON document under a single key, so a save is
one atomic SET.

Key patterns:
- torbox_rules:rules - Rule list (STRING, JSON array)
"""

import json
import logging
from typing import Any, Dict, List

try:
    import redis
except ImportError:
    raise ImportError(
        "Redis backend requires 'redis' package. "
        "Install with: pip install torbox-rules[redis]"
    )

from torbox_rules.errors import StorageError
from torbox_rules.storage.base import RuleStorage

logger = logging.getLogger(__name__)


class RedisRuleStorage(RuleStorage):
    """Redis-based rule storage"""

    KEY_PREFIX = "torbox_rules"
    backend_name = 'redis'

    def __init__(self, redis_url: str = 'redis://localhost:6379/0'):
        """
        Args:
            redis_url: Redis connection URL
                      Format: redis://[:password@]host[:port][/database]
        """
        self.redis_url = redis_url

        try:
            self.pool = redis.ConnectionPool.from_url(
                redis_url,
                decode_responses=True,
                max_connections=4,
                socket_timeout=5,
                socket_connect_timeout=5
            )
            self.redis = redis.Redis(connection_pool=self.pool)
            self.redis.ping()
        except redis.RedisError as e:
            raise StorageError('redis', f"Cannot connect to Redis at {redis_url}: {e}")

        logger.info(f"Redis rule storage initialized: {redis_url}")

    def _key(self, *parts: str) -> str:
        """Build Redis key with prefix"""
        return ':'.join([self.KEY_PREFIX] + list(parts))

    def load_rules(self) -> List[Dict[str, Any]]:
        try:
            raw = self.redis.get(self._key('rules'))
        except redis.RedisError as e:
            raise StorageError('redis', f"Cannot read rules: {e}")

        if not raw:
            return []

        try:
            rules = json.loads(raw)
        except ValueError as e:
            raise StorageError('redis', f"Stored rules are not valid JSON: {e}")

        if not isinstance(rules, list):
            raise StorageError('redis', "Stored rules must be a JSON array")

        return rules

    def save_rules(self, rules: List[Dict[str, Any]]) -> None:
        try:
            self.redis.set(self._key('rules'), json.dumps(rules))
        except redis.RedisError as e:
            raise StorageError('redis', f"Cannot write rules: {e}")

        logger.debug(f"Saved {len(rules)} rules to Redis")

    def health_check(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            logger.error(f"Health check failed: {e}")
            return False
