# Storage backends
from .base import (
    KeyValueStore,
    fingerprint_key,
    usage_key,
    rule_key,
    assessment_key,
    pattern_key,
    blacklist_key,
    review_key,
    family_prefix,
)
from .memory import MemoryStore
from .redis_store import RedisStore
from .postgres import PostgresStore
from .factory import build_store
from .cas import cas_update

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
    "PostgresStore",
    "build_store",
    "cas_update",
    "fingerprint_key",
    "usage_key",
    "rule_key",
    "assessment_key",
    "pattern_key",
    "blacklist_key",
    "review_key",
    "family_prefix",
]
