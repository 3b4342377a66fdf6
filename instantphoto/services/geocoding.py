"""Best-effort reverse geocoding over HTTP"""

import logging

import httpx

from instantphoto.config import settings
from instantphoto.exceptions import ExternalServiceUnavailable

logger = logging.getLogger(__name__)


class ReverseGeocoder:
    """Client for a Nominatim-compatible /reverse endpoint"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.geocoding_url).rstrip("/")
        self.timeout = timeout or settings.geocoding_timeout_seconds
        self.client = client

    async def address(self, latitude: float, longitude: float) -> str:
        """Human-readable address for a point; raises ExternalServiceUnavailable"""
        params = {"lat": latitude, "lon": longitude, "format": "jsonv2"}
        headers = {"User-Agent": settings.geocoding_user_agent}
        try:
            if self.client is not None:
                response = await self.client.get(f"{self.base_url}/reverse", params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(f"{self.base_url}/reverse", params=params, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalServiceUnavailable(f"Reverse geocoding failed: {e}", service="geocoding") from e

        address = payload.get("display_name") if isinstance(payload, dict) else None
        if not address:
            raise ExternalServiceUnavailable("Reverse geocoding returned no address", service="geocoding")
        return address


def create_geocoder() -> ReverseGeocoder | None:
    return ReverseGeocoder() if settings.enable_geocoding else None
