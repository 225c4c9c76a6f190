"""
Rule storage backends

Available backends:
- yaml: rules.yml in the config directory (default)
- sqlite: File-based database
- redis: Redis key (optional)
- memory: Non-persistent, for tests
"""

from torbox_rules.storage.base import RuleStorage, MemoryRuleStorage
from torbox_rules.storage.sqlite_storage import SQLiteRuleStorage
from torbox_rules.storage.yaml_storage import YamlRuleStorage

__all__ = ['RuleStorage', 'MemoryRuleStorage', 'SQLiteRuleStorage', 'YamlRuleStorage', 'create_storage']

# Redis is optional - only import if available
try:
    from torbox_rules.storage.redis_storage import RedisRuleStorage
    __all__.append('RedisRuleStorage')
    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False


def create_storage(backend: str = 'yaml', **kwargs) -> RuleStorage:
    """
    Factory function to create rule storage backends

    Args:
        backend: Backend type ('yaml', 'sqlite', 'redis' or 'memory')
        **kwargs: Backend-specific configuration
            - rules_path: rules.yml path (yaml)
            - sqlite_path: database path (sqlite)
            - redis_url: connection URL (redis)

    Returns:
        RuleStorage instance

    Raises:
        ValueError: If backend is unknown or unavailable
    """
    if backend == 'yaml':
        return YamlRuleStorage(file_path=kwargs.get('rules_path', '/config/rules.yml'))

    elif backend == 'sqlite':
        return SQLiteRuleStorage(db_path=kwargs.get('sqlite_path', '/config/torbox-rules.db'))

    elif backend == 'redis':
        if not REDIS_AVAILABLE:
            raise ValueError("Redis backend not available. Install with: pip install torbox-rules[redis]")
        return RedisRuleStorage(redis_url=kwargs.get('redis_url', 'redis://localhost:6379/0'))

    elif backend == 'memory':
        return MemoryRuleStorage()

    else:
        raise ValueError(f"Unknown storage backend: {backend}. Available: yaml, sqlite, redis, memory")
