"""
Identity Client for Delivery Service

HTTP client for resolving platform users to roles via account_service
"""

import httpx
import logging
from typing import Optional, Dict, Any

from core.service_client_base import BaseServiceClient
from ..protocols import ServiceUnavailableError

logger = logging.getLogger(__name__)


class IdentityClient(BaseServiceClient):
    """Client for account_service profiles"""

    service_name = "account_service"
    default_port = 8202

    async def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Get user profile

        Returns:
            Profile dict, or None if the user does not exist

        Raises:
            ServiceUnavailableError: account_service unreachable or failing
        """
        try:
            response = await self.get(f"/api/v1/accounts/profile/{user_id}")
            if response.status_code == 404:
                logger.warning(f"User {user_id} not found")
                return None
            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to get profile for {user_id}: {e.response.status_code}")
            raise ServiceUnavailableError(f"account_service returned {e.response.status_code}")
        except httpx.RequestError as e:
            logger.error(f"Error reaching account_service: {e}")
            raise ServiceUnavailableError("account_service is unavailable")

    async def get_user_role(self, user_id: str) -> Optional[str]:
        """'admin', 'driver', or None when the user is unknown or has no delivery role"""
        profile = await self.get_user_profile(user_id)
        if not profile:
            return None
        role = profile.get("role")
        if isinstance(role, str):
            role = role.strip().lower()
        return role or None
