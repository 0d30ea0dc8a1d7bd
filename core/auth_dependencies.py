"""
FastAPI Authentication Dependencies for Microservices

统一的认证依赖函数，供所有微服务使用
"""

from dataclasses import dataclass
from fastapi import Header, HTTPException, status, Request
from typing import Optional
import logging

from .internal_service_auth import InternalServiceAuth, INTERNAL_SERVICE_USER_ID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedCaller:
    """Who made the request, as established by the headers"""
    user_id: str
    # True only when the internal service secret was verified
    is_internal_service: bool = False


async def require_auth_or_internal_service(
    request: Request,
    user_id: Optional[str] = Header(None, alias="user-id"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_internal_service: Optional[str] = Header(None, alias="X-Internal-Service"),
    x_internal_service_secret: Optional[str] = Header(None, alias="X-Internal-Service-Secret"),
) -> AuthenticatedCaller:
    """
    认证依赖：允许用户认证或内部服务认证

    Priority:
    1. Internal service (X-Internal-Service + X-Internal-Service-Secret)
    2. User id (user-id or X-User-Id)

    A user id header never grants internal service status, whatever its value.

    Raises:
        HTTPException 401: no usable credentials
    """
    if x_internal_service == "true" and x_internal_service_secret:
        if InternalServiceAuth.is_valid(x_internal_service, x_internal_service_secret):
            logger.debug(f"Internal service request to {request.url.path}")
            return AuthenticatedCaller(user_id=INTERNAL_SERVICE_USER_ID, is_internal_service=True)
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Invalid internal service secret from {client_host}")

    user_id_value = user_id or x_user_id
    if user_id_value:
        return AuthenticatedCaller(user_id=user_id_value)

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="User authentication required"
    )


__all__ = [
    "AuthenticatedCaller",
    "require_auth_or_internal_service",
]
