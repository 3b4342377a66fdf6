"""Monthly request quota per guest identity"""

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.config import settings
from instantphoto.db.database import dialect_insert
from instantphoto.db.models import UsageRecord
from instantphoto.exceptions import UsageLimitExceeded
from instantphoto.schemas.requests import GuestUsage
from instantphoto.utils.clock import month_bucket, utcnow

logger = logging.getLogger(__name__)


def phone_digits(phone: str) -> str:
    return "".join(filter(str.isdigit, phone))


def guest_key(phone: str, email: str | None) -> str:
    """Identity used for quota accounting: phone digits plus lower-cased email"""
    return f"{phone_digits(phone)}|{(email or '').strip().lower()}"


class UsageQuotaTracker:
    """Enforces the per-guest monthly request cap"""

    def __init__(self, db: AsyncSession):
        self.db = db

    @property
    def limit(self) -> int:
        return settings.monthly_request_limit

    async def get_usage(
        self,
        phone: str,
        email: str | None,
        current_time: datetime | None = None,
    ) -> GuestUsage:
        """Current month's usage for a guest"""
        month = month_bucket(current_time or utcnow(), settings.local_timezone)
        result = await self.db.execute(
            select(UsageRecord.count).where(
                UsageRecord.guest_key == guest_key(phone, email),
                UsageRecord.month == month,
            )
        )
        count = result.scalar_one_or_none() or 0
        return GuestUsage(
            month=month,
            usage_count=count,
            monthly_limit=self.limit,
            can_use=count < self.limit,
            limit_reached=count >= self.limit,
        )

    async def consume(
        self,
        phone: str,
        email: str | None,
        current_time: datetime | None = None,
    ) -> int:
        """
        Take one unit of quota inside the caller's transaction

        The counter row is created if missing, then bumped with a single
        conditional UPDATE so concurrent submissions cannot both pass the
        check. Raises UsageLimitExceeded when the cap is reached; the caller
        must roll back.
        """
        key = guest_key(phone, email)
        month = month_bucket(current_time or utcnow(), settings.local_timezone)

        seed = dialect_insert(self.db, UsageRecord).values(
            guest_key=key, month=month, count=0
        ).on_conflict_do_nothing(index_elements=["guest_key", "month"])
        await self.db.execute(seed)

        result = await self.db.execute(
            update(UsageRecord)
            .where(
                UsageRecord.guest_key == key,
                UsageRecord.month == month,
                UsageRecord.count < self.limit,
            )
            .values(count=UsageRecord.count + 1)
            .returning(UsageRecord.count)
            .execution_options(synchronize_session=False)
        )
        new_count = result.scalar_one_or_none()
        if new_count is None:
            logger.info(f"Monthly limit reached for guest in {month}")
            raise UsageLimitExceeded(
                f"Monthly limit of {self.limit} requests reached",
                month=month,
                monthly_limit=self.limit,
            )
        return new_count
