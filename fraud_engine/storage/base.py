"""
Key-Value Store Abstraction

Every component persists through this interface so the engine can run
on an in-process store, Redis, or PostgreSQL without changing its
semantics.

Records are JSON documents (dicts). Records written through
compare_and_set carry an integer "version" that the store bumps on
every successful write.

Sorted indexes follow Redis ZSET semantics:
- Members are unique strings (record keys)
- Scores are floats (epoch milliseconds for time indexes)
- Ranges are inclusive and ordered by (score, member)
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


# =============================================================================
# Key Families
# =============================================================================

FINGERPRINTS = "fingerprints"
USAGE = "usage"
RULES = "rules"
ASSESSMENTS = "assessments"
PATTERNS = "patterns"
BLACKLIST = "blacklist"
REVIEWS = "reviews"


def fingerprint_key(kind: str, fingerprint_id: str) -> str:
    """fingerprints:{kind}:{id}"""
    return f"{FINGERPRINTS}:{kind}:{fingerprint_id}"


def usage_key(fingerprint_id: str, sequence: int) -> str:
    """usage:{fingerprint_id}:{seq}"""
    return f"{USAGE}:{fingerprint_id}:{sequence}"


def rule_key(rule_id: str) -> str:
    return f"{RULES}:{rule_id}"


def assessment_key(assessment_id: str) -> str:
    return f"{ASSESSMENTS}:{assessment_id}"


def pattern_key(pattern_id: str) -> str:
    return f"{PATTERNS}:{pattern_id}"


def blacklist_key(entry_id: str) -> str:
    return f"{BLACKLIST}:{entry_id}"


def review_key(assessment_id: str) -> str:
    return f"{REVIEWS}:{assessment_id}"


def family_prefix(family: str, *parts: str) -> str:
    """Prefix matching every key of a family, e.g. 'fingerprints:payment:'."""
    return ":".join((family, *parts)) + ":"


class KeyValueStore(ABC):
    """
    Async key-value store with optimistic writes, counters and
    sorted secondary indexes.
    """

    backend: str = "abstract"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Open connections and create schema if needed."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the backend answers."""

    # =========================================================================
    # Records
    # =========================================================================

    @abstractmethod
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        """Return the record stored under key, or None."""

    async def get_many(self, keys: list[str]) -> list[dict[str, Any]]:
        """Fetch several records in key order, skipping missing ones."""
        records = []
        for key in keys:
            record = await self.get(key)
            if record is not None:
                records.append(record)
        return records

    @abstractmethod
    async def put(self, key: str, value: dict[str, Any]) -> None:
        """Unconditionally write a record."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a record; returns True if it existed."""

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        value: dict[str, Any],
        expected_version: Optional[int],
    ) -> bool:
        """
        Optimistic write.

        Args:
            key: Record key
            value: New record content (its "version" field is ignored)
            expected_version: Version the caller read, or None to create
                only if the key is absent

        Returns:
            True if written with version expected_version + 1 (1 on create),
            False if the stored version did not match
        """

    @abstractmethod
    async def scan(self, prefix: str) -> list[dict[str, Any]]:
        """Return every record whose key starts with prefix."""

    # =========================================================================
    # Counters
    # =========================================================================

    @abstractmethod
    async def next_sequence(self, name: str) -> int:
        """Atomically increment and return a named counter (first value 1)."""

    # =========================================================================
    # Sorted Indexes
    # =========================================================================

    @abstractmethod
    async def index_add(self, index: str, member: str, score: float) -> None:
        """Add or re-score a member."""

    @abstractmethod
    async def index_range(
        self,
        index: str,
        min_score: float,
        max_score: float,
    ) -> list[str]:
        """Members with min_score <= score <= max_score, ascending."""

    @abstractmethod
    async def index_tail(self, index: str, count: int) -> list[str]:
        """The count highest-scored members, ascending."""

    @abstractmethod
    async def index_remove_below(self, index: str, score: float) -> list[str]:
        """Remove and return members with a score strictly below score."""

