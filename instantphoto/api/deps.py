"""Request-scoped dependencies shared by the routers"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.db.database import get_db
from instantphoto.services.instant import InstantPhotoService


async def get_instant_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> InstantPhotoService:
    """Build the service facade from app-wide collaborators held on app.state"""
    state = request.app.state
    return InstantPhotoService(
        db,
        state.notification_channel,
        state.payment_processor,
        geocoder=getattr(state, "geocoder", None),
        sms=getattr(state, "sms", None),
    )
