"""Photographer live location and availability registry"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.db.database import dialect_insert
from instantphoto.db.models import PhotographerAvailability
from instantphoto.exceptions import NotFound
from instantphoto.schemas.photographers import LocationUpdate
from instantphoto.utils.clock import utcnow
from instantphoto.utils.geographic import bounding_box

logger = logging.getLogger(__name__)

_NULLABLE_FIELDS = {"accuracy", "display_name", "available_until"}


class LocationRegistry:
    """Reads and writes PhotographerAvailability rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, photographer_id: uuid.UUID) -> PhotographerAvailability | None:
        result = await self.db.execute(
            select(PhotographerAvailability)
            .where(PhotographerAvailability.photographer_id == photographer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require(self, photographer_id: uuid.UUID) -> PhotographerAvailability:
        availability = await self.get(photographer_id)
        if availability is None:
            raise NotFound(f"Photographer {photographer_id} has no availability record")
        return availability

    async def upsert_location(
        self,
        photographer_id: uuid.UUID,
        update_data: LocationUpdate,
        current_time: datetime | None = None,
    ) -> PhotographerAvailability:
        """
        Last-write-wins upsert of a photographer's location and flags

        The assignment pointer and rating statistics are never touched here.
        """
        now = current_time or utcnow()
        values = {
            key: value
            for key, value in update_data.model_dump(exclude_unset=True).items()
            if value is not None or key in _NULLABLE_FIELDS
        }
        values.update(latitude=update_data.latitude, longitude=update_data.longitude)

        insert_values = {
            "photographer_id": photographer_id,
            "is_online": update_data.is_online,
            "accepting_requests": update_data.accepting_requests,
            "instant_rates": {},
            "idle_since": now,
            "created_at": now,
            "updated_at": now,
            **values,
        }
        stmt = dialect_insert(self.db, PhotographerAvailability).values(**insert_values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["photographer_id"],
            set_={**values, "updated_at": now},
        )
        await self.db.execute(stmt)
        await self.db.commit()

        logger.debug(f"Location updated for photographer {photographer_id}")
        return await self.require(photographer_id)

    async def set_online(
        self,
        photographer_id: uuid.UUID,
        is_online: bool,
        accepting_requests: bool | None = None,
    ) -> PhotographerAvailability:
        """Toggle the online flag; going offline also stops new offers"""
        values = {"is_online": is_online, "updated_at": utcnow()}
        if accepting_requests is not None:
            values["accepting_requests"] = accepting_requests
        elif not is_online:
            values["accepting_requests"] = False

        result = await self.db.execute(
            update(PhotographerAvailability)
            .where(PhotographerAvailability.photographer_id == photographer_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFound(f"Photographer {photographer_id} has no availability record")
        await self.db.commit()
        logger.info(f"Photographer {photographer_id} is now {'online' if is_online else 'offline'}")
        return await self.require(photographer_id)

    async def list_eligible(
        self,
        latitude: float,
        longitude: float,
        radius_m: float,
        current_time: datetime | None = None,
    ) -> list[PhotographerAvailability]:
        """Online, accepting, unassigned photographers inside a bounding box"""
        now = current_time or utcnow()
        min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_m)
        stmt = select(PhotographerAvailability).where(
            and_(
                PhotographerAvailability.is_online.is_(True),
                PhotographerAvailability.accepting_requests.is_(True),
                PhotographerAvailability.current_booking_id.is_(None),
                or_(
                    PhotographerAvailability.available_until.is_(None),
                    PhotographerAvailability.available_until > now,
                ),
                PhotographerAvailability.latitude.between(min_lat, max_lat),
                PhotographerAvailability.longitude.between(min_lon, max_lon),
            )
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def assign(self, photographer_id: uuid.UUID, booking_id: uuid.UUID) -> bool:
        """
        Claim a free photographer for a booking

        Conditional on the pointer being empty; runs inside the caller's
        transaction and reports whether the claim won.
        """
        result = await self.db.execute(
            update(PhotographerAvailability)
            .where(
                PhotographerAvailability.photographer_id == photographer_id,
                PhotographerAvailability.current_booking_id.is_(None),
            )
            .values(current_booking_id=booking_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release(
        self,
        photographer_id: uuid.UUID,
        booking_id: uuid.UUID,
        current_time: datetime | None = None,
    ) -> bool:
        """Clear the assignment pointer if it still points at booking_id"""
        result = await self.db.execute(
            update(PhotographerAvailability)
            .where(
                PhotographerAvailability.photographer_id == photographer_id,
                PhotographerAvailability.current_booking_id == booking_id,
            )
            .values(current_booking_id=None, idle_since=current_time or utcnow())
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
        if released:
            logger.info(f"Photographer {photographer_id} released from booking {booking_id}")
        return released

    async def record_response_latency(self, photographer_id: uuid.UUID, seconds: float) -> None:
        """Fold one response latency into the running average"""
        availability = await self.get(photographer_id)
        if availability is None:
            return
        count = availability.response_count or 0
        previous = availability.avg_response_seconds or 0.0
        availability.avg_response_seconds = (previous * count + seconds) / (count + 1)
        availability.response_count = count + 1

    async def record_rating(self, photographer_id: uuid.UUID, rating: int) -> None:
        """Fold one guest rating into the running average"""
        availability = await self.get(photographer_id)
        if availability is None:
            return
        count = availability.rating_count or 0
        availability.rating = (availability.rating * count + rating) / (count + 1)
        availability.rating_count = count + 1
