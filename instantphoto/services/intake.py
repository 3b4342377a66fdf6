"""Request intake: validation, quota gate and persistence"""

import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.config import settings
from instantphoto.db.models import InstantRequest, RequestStatus
from instantphoto.exceptions import ExternalServiceUnavailable, UsageLimitExceeded, ValidationError
from instantphoto.schemas.requests import InstantRequestCreate
from instantphoto.services.geocoding import ReverseGeocoder
from instantphoto.services.usage import UsageQuotaTracker, phone_digits
from instantphoto.utils.clock import utcnow

logger = logging.getLogger(__name__)


def validate_request_data(data: InstantRequestCreate | dict[str, Any]) -> InstantRequestCreate:
    """Coerce raw input into a request, reporting the first bad field"""
    if isinstance(data, InstantRequestCreate):
        return data
    try:
        return InstantRequestCreate.model_validate(data)
    except PydanticValidationError as e:
        errors = e.errors()
        first = errors[0]
        field = ".".join(str(part) for part in first["loc"])
        raise ValidationError(
            f"{field}: {first['msg']}",
            field=field,
            errors=[
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in errors
            ],
        ) from e


class RequestIntake:
    """Creates pending requests for guests"""

    def __init__(
        self,
        db: AsyncSession,
        usage: UsageQuotaTracker | None = None,
        geocoder: ReverseGeocoder | None = None,
    ):
        self.db = db
        self.usage = usage or UsageQuotaTracker(db)
        self.geocoder = geocoder

    async def _lookup_address(self, latitude: float, longitude: float) -> str | None:
        if self.geocoder is None:
            return None
        try:
            return await self.geocoder.address(latitude, longitude)
        except ExternalServiceUnavailable as e:
            logger.warning(f"Continuing without address: {e.message}")
            return None

    async def create_request(
        self,
        data: InstantRequestCreate | dict[str, Any],
        current_time: datetime | None = None,
    ) -> InstantRequest:
        """
        Validate, take one unit of quota and persist a pending request

        Quota and the new row commit together; when the guest is over the cap
        nothing is written.
        """
        request_data = validate_request_data(data)
        now = current_time or utcnow()

        address = request_data.location_address
        if not address:
            address = await self._lookup_address(request_data.latitude, request_data.longitude)

        try:
            await self.usage.consume(request_data.guest_phone, request_data.guest_email, now)
        except UsageLimitExceeded:
            await self.db.rollback()
            raise

        request = InstantRequest(
            guest_name=request_data.guest_name,
            guest_phone=request_data.guest_phone,
            guest_phone_digits=phone_digits(request_data.guest_phone),
            guest_email=request_data.guest_email,
            party_size=request_data.party_size,
            latitude=request_data.latitude,
            longitude=request_data.longitude,
            location_address=address,
            location_landmark=request_data.location_landmark,
            request_type=request_data.request_type,
            urgency=request_data.urgency,
            duration=request_data.duration,
            budget=request_data.budget,
            special_requests=request_data.special_requests,
            payment_method=request_data.payment_method,
            status=RequestStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(minutes=settings.ttl_minutes(request_data.urgency.value)),
        )
        self.db.add(request)
        await self.db.commit()

        logger.info(
            f"Created {request.urgency.value} {request.request_type.value} request {request.id}, "
            f"expires at {request.expires_at.isoformat()}"
        )
        return request

    async def history(self, phone: str, limit: int = 10) -> list[InstantRequest]:
        """A guest's most recent requests, newest first"""
        result = await self.db.execute(
            select(InstantRequest)
            .where(InstantRequest.guest_phone_digits == phone_digits(phone))
            .order_by(InstantRequest.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
