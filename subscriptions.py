"""
Per-user access expiry ledger.
"""

import logging
import time
from typing import Optional

from models import Access, SubscriptionInfo
from storage import Database

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class SubscriptionLedger:
    """Gates admission: a user is allowed while ``now < expires_at``."""

    def __init__(self, db: Database):
        self.db = db

    async def check(self, user_id: int, now: Optional[float] = None) -> Access:
        expires_at = await self.get_expiration(user_id)
        now = time.time() if now is None else now
        if expires_at is not None and expires_at > now:
            return Access.ALLOWED
        return Access.DENIED

    async def grant(self, user_id: int, until: float) -> None:
        """Set the expiry for ``user_id``, replacing any previous value."""
        await self.db.execute(
            "INSERT INTO subscriptions (user_id, expires_at) VALUES (?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET expires_at = excluded.expires_at",
            (user_id, int(until)),
        )
        logger.info("Subscription for user %s set to expire at %s", user_id, int(until))

    async def extend(self, user_id: int, days: int, now: Optional[float] = None) -> int:
        """
        Add ``days`` to the subscription and return the new expiry.

        An active subscription is extended from its current expiry,
        an expired or missing one from ``now``.
        """
        now = time.time() if now is None else now
        current = await self.get_expiration(user_id)
        base = current if current is not None and current > now else now
        until = int(base + days * SECONDS_PER_DAY)
        await self.grant(user_id, until)
        return until

    async def get_expiration(self, user_id: int) -> Optional[int]:
        row = await self.db.fetch_one(
            "SELECT expires_at FROM subscriptions WHERE user_id = ?", (user_id,)
        )
        return row["expires_at"] if row else None

    async def info(self, user_id: int, now: Optional[float] = None) -> SubscriptionInfo:
        now = time.time() if now is None else now
        expires_at = await self.get_expiration(user_id)
        if expires_at is None:
            return SubscriptionInfo(expires_at=None, active=False)
        if expires_at > now:
            days_left = int((expires_at - now) // SECONDS_PER_DAY)
            return SubscriptionInfo(expires_at=expires_at, active=True, days_left=days_left)
        return SubscriptionInfo(expires_at=expires_at, active=False)
