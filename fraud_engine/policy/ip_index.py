"""
IP Account Index

Tracks which users have been assessed from each IP address so the
account rules can cap accounts per IP. IPs are stored only as HMAC
digests under ip_accounts:{digest}.
"""

import logging
from datetime import datetime, UTC
from typing import Optional

from ..config import Settings
from ..fingerprints import SignalHasher
from ..storage import KeyValueStore, cas_update
from ..utils.locks import KeyedLock

logger = logging.getLogger("fraud_engine.policy")


class IpAccountIndex:
    """Distinct users per (hashed) IP address."""

    def __init__(self, store: KeyValueStore, settings: Settings):
        self.store = store
        self.settings = settings
        self.hasher = SignalHasher(settings.fingerprint_hash_key)
        self._locks = KeyedLock()

    def _key(self, ip: str) -> str:
        return f"ip_accounts:{self.hasher.digest(ip.strip())}"

    async def add(self, ip: str, user_id: str) -> int:
        """Associate a user with an IP; returns the distinct user count."""
        key = self._key(ip)

        def mutate(current: Optional[dict]) -> dict:
            users = set(current["users"]) if current else set()
            users.add(user_id)
            return {
                "users": sorted(users),
                "last_seen": datetime.now(UTC).isoformat(),
            }

        async with self._locks.hold(key):
            value, _ = await cas_update(
                self.store, key, mutate, self.settings.cas_max_retries, "ip_accounts"
            )
        return len(value["users"])

    async def users(self, ip: str) -> list[str]:
        record = await self.store.get(self._key(ip))
        return list(record["users"]) if record else []

    async def account_count(self, ip: str) -> int:
        return len(await self.users(ip))
