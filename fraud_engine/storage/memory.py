"""
In-Process Store

Dict-backed implementation of KeyValueStore. Used by tests and
single-process deployments. Records are deep-copied on the way in and
out so callers never share mutable state with the store.

No awaits happen inside an operation, so each operation is atomic with
respect to other coroutines on the same event loop.
"""

import bisect
import copy
from collections import defaultdict
from typing import Any, Optional

from .base import KeyValueStore


class MemoryStore(KeyValueStore):
    """Key-value store held in process memory."""

    backend = "memory"

    def __init__(self):
        self._records: dict[str, dict[str, Any]] = {}
        self._sequences: dict[str, int] = defaultdict(int)
        # index -> sorted [(score, member)] and member -> score
        self._index_entries: dict[str, list[tuple[float, str]]] = defaultdict(list)
        self._index_scores: dict[str, dict[str, float]] = defaultdict(dict)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._records.clear()
        self._sequences.clear()
        self._index_entries.clear()
        self._index_scores.clear()

    # =========================================================================
    # Records
    # =========================================================================

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        self._records[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    async def compare_and_set(
        self,
        key: str,
        value: dict[str, Any],
        expected_version: Optional[int],
    ) -> bool:
        current = self._records.get(key)
        if expected_version is None:
            if current is not None:
                return False
            new_version = 1
        else:
            if current is None or current.get("version", 0) != expected_version:
                return False
            new_version = expected_version + 1

        record = copy.deepcopy(value)
        record["version"] = new_version
        self._records[key] = record
        return True

    async def scan(self, prefix: str) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(self._records[key])
            for key in sorted(self._records)
            if key.startswith(prefix)
        ]

    # =========================================================================
    # Counters
    # =========================================================================

    async def next_sequence(self, name: str) -> int:
        self._sequences[name] += 1
        return self._sequences[name]

    # =========================================================================
    # Sorted Indexes
    # =========================================================================

    async def index_add(self, index: str, member: str, score: float) -> None:
        entries = self._index_entries[index]
        scores = self._index_scores[index]

        previous = scores.get(member)
        if previous is not None:
            entries.pop(bisect.bisect_left(entries, (previous, member)))

        bisect.insort(entries, (float(score), member))
        scores[member] = float(score)

    async def index_range(
        self,
        index: str,
        min_score: float,
        max_score: float,
    ) -> list[str]:
        entries = self._index_entries.get(index, [])
        start = bisect.bisect_left(entries, (float(min_score), ""))
        members = []
        for score, member in entries[start:]:
            if score > max_score:
                break
            members.append(member)
        return members

    async def index_tail(self, index: str, count: int) -> list[str]:
        if count <= 0:
            return []
        entries = self._index_entries.get(index, [])
        return [member for _, member in entries[-count:]]

    async def index_remove_below(self, index: str, score: float) -> list[str]:
        entries = self._index_entries.get(index)
        if not entries:
            return []

        cut = bisect.bisect_left(entries, (float(score), ""))
        removed = [member for _, member in entries[:cut]]
        del entries[:cut]

        scores = self._index_scores[index]
        for member in removed:
            scores.pop(member, None)
        return removed
