"""
Location Client for Delivery Service

HTTP client for reading the latest device coordinates of a user from location_service
"""

import httpx
import logging
from typing import Optional

from core.service_client_base import BaseServiceClient
from ..models import GeoPoint

logger = logging.getLogger(__name__)


class LocationClient(BaseServiceClient):
    """Client for location_service"""

    service_name = "location_service"
    default_port = 8224

    def __init__(self, base_url: Optional[str] = None, timeout: float = 3.0):
        # Lookups run inside a transition, keep them short
        super().__init__(base_url=base_url, timeout=timeout)

    async def get_latest_location(self, user_id: str) -> Optional[GeoPoint]:
        """
        Most recent coordinate across the user's devices

        Returns None when the user has no locations or the lookup fails.
        """
        try:
            response = await self.get(f"/api/v1/locations/user/{user_id}")
            response.raise_for_status()
            locations = response.json().get("locations") or []
        except httpx.HTTPError as e:
            logger.warning(f"Failed to get locations for {user_id}: {e}")
            return None

        points = [
            loc for loc in locations
            if loc.get("latitude") is not None and loc.get("longitude") is not None
        ]
        if not points:
            return None

        latest = max(points, key=lambda loc: loc.get("timestamp") or "")
        return GeoPoint(latitude=latest["latitude"], longitude=latest["longitude"])
