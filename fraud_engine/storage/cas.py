"""
Optimistic read-modify-write over KeyValueStore.compare_and_set.
"""

import logging
from typing import Any, Callable, Optional

from ..errors import ConcurrentModification
from ..metrics import metrics
from .base import KeyValueStore

logger = logging.getLogger("fraud_engine.storage")


async def cas_update(
    store: KeyValueStore,
    key: str,
    mutate: Callable[[Optional[dict[str, Any]]], dict[str, Any]],
    max_attempts: int,
    family: str,
) -> tuple[dict[str, Any], Optional[int]]:
    """
    Apply mutate to the current record until the write lands.

    mutate receives the stored record (None if absent) and returns the
    new content; it may raise to abort. It is re-run on every retry, so
    it must not have side effects outside its return value.

    Args:
        store: Backing store
        key: Record key
        mutate: current record -> new record
        max_attempts: Writes attempted before giving up
        family: Key family label for the conflict metric

    Returns:
        (record as written including its new version, version that was replaced
        or None if the record was created)

    Raises:
        ConcurrentModification: every attempt conflicted
    """
    for attempt in range(1, max_attempts + 1):
        current = await store.get(key)
        expected = int(current.get("version", 0)) if current is not None else None

        value = mutate(current)
        if await store.compare_and_set(key, value, expected):
            value = {**value, "version": 1 if expected is None else expected + 1}
            return value, expected

        metrics.cas_conflicts.labels(family=family).inc()
        logger.debug("CAS conflict on %s (attempt %d/%d)", key, attempt, max_attempts)

    raise ConcurrentModification(key, max_attempts)
