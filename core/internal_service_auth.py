"""
Internal Service Authentication

用于微服务间通信的内部认证机制
Service-to-service calls carry a shared secret instead of a user id.
"""

import os
import logging

logger = logging.getLogger(__name__)

# 内部服务认证密钥（生产环境必须设置）
INTERNAL_SERVICE_SECRET = os.getenv("INTERNAL_SERVICE_SECRET", "dev-internal-secret-change-in-production")
INTERNAL_SERVICE_HEADER = "X-Internal-Service"
INTERNAL_SERVICE_SECRET_HEADER = "X-Internal-Service-Secret"
INTERNAL_SERVICE_USER_ID = "internal-service"


class InternalServiceAuth:
    """内部服务认证工具类"""

    @staticmethod
    def get_internal_service_headers() -> dict:
        """Headers a client adds to authenticate as an internal service"""
        return {
            INTERNAL_SERVICE_HEADER: "true",
            INTERNAL_SERVICE_SECRET_HEADER: INTERNAL_SERVICE_SECRET
        }

    @staticmethod
    def is_valid(flag: str, secret: str) -> bool:
        """Check the internal service header pair"""
        return flag == "true" and secret == INTERNAL_SERVICE_SECRET


__all__ = [
    "InternalServiceAuth",
    "INTERNAL_SERVICE_HEADER",
    "INTERNAL_SERVICE_SECRET_HEADER",
    "INTERNAL_SERVICE_USER_ID",
]
