from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.rate_limit import RateLimitEntry
from app.utils.dates import utcnow, as_utc
from app.utils.logger import get_logger

logger = get_logger("rate_limit")


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in_seconds: int


class RateLimitService:
    """
    Fixed-window limiter stored in the database.

    The in-window increment is a conditional UPDATE guarded by ``count < limit``,
    so concurrent callers cannot both take the last slot.
    """

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def check_rate_limit(
        self,
        identifier: str,
        limit: int,
        window: timedelta,
        ip_address: Optional[str] = None,
    ) -> RateLimitDecision:
        # One retry covers two first-time callers racing on the insert
        for attempt in range(2):
            try:
                return await self._check(identifier, limit, window, ip_address)
            except IntegrityError:
                await self.db.rollback()
                if attempt:
                    raise
                logger.info(f"Concurrent window creation for {identifier}, retrying")

    async def _check(self, identifier: str, limit: int, window: timedelta, ip_address: Optional[str]) -> RateLimitDecision:
        now = self.clock()
        cutoff = now - window

        result = await self.db.execute(
            update(RateLimitEntry)
            .where(
                RateLimitEntry.identifier == identifier,
                RateLimitEntry.window_start > cutoff,
                RateLimitEntry.count < limit,
            )
            .values(count=RateLimitEntry.count + 1)
            .execution_options(synchronize_session=False)
        )

        entry = (await self.db.execute(
            select(RateLimitEntry)
            .where(RateLimitEntry.identifier == identifier)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()

        if result.rowcount == 1:
            await self.db.commit()
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, limit - entry.count),
                reset_in_seconds=self._reset_in(entry, window, now),
            )

        if entry is not None and as_utc(entry.window_start) > cutoff:
            await self.db.commit()
            logger.warning(f"Rate limit exceeded for {identifier}")
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_in_seconds=self._reset_in(entry, window, now),
            )

        # No entry yet, or the previous window has ended
        if entry is None:
            self.db.add(RateLimitEntry(identifier=identifier, count=1, window_start=now, ip_address=ip_address))
        else:
            entry.count = 1
            entry.window_start = now
            entry.ip_address = ip_address
        await self.db.commit()

        return RateLimitDecision(
            allowed=True,
            remaining=max(0, limit - 1),
            reset_in_seconds=int(window.total_seconds()),
        )

    def _reset_in(self, entry: RateLimitEntry, window: timedelta, now: datetime) -> int:
        return max(0, int((as_utc(entry.window_start) + window - now).total_seconds()))
