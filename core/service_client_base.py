"""
Base Service Client for Internal Microservice Communication

所有微服务客户端的基类，自动处理内部服务认证
"""

import httpx
import logging
from typing import Optional, Dict, Any
from abc import ABC

logger = logging.getLogger(__name__)


class BaseServiceClient(ABC):
    """
    微服务客户端基类

    Handles:
    1. Base URL resolution (explicit URL or localhost default port)
    2. Internal service authentication headers
    3. HTTP client lifecycle and timeouts

    Example:
        class IdentityClient(BaseServiceClient):
            service_name = "account_service"
            default_port = 8202

            async def get_user(self, user_id: str):
                response = await self.get(f"/api/v1/accounts/{user_id}")
                return response.json()
    """

    # 子类需要定义这些
    service_name: str = None
    default_port: int = None

    def __init__(
        self,
        base_url: Optional[str] = None,
        use_internal_auth: bool = True,
        timeout: float = 10.0
    ):
        if not self.service_name:
            raise ValueError(f"{self.__class__.__name__} must define 'service_name'")

        if base_url:
            self.base_url = base_url.rstrip('/')
        else:
            self.base_url = f"http://localhost:{self.default_port}" if self.default_port else "http://localhost:8000"

        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers=self._build_default_headers(use_internal_auth)
        )

        logger.debug(
            f"Initialized {self.service_name} client: {self.base_url} "
            f"(internal_auth={'enabled' if use_internal_auth else 'disabled'})"
        )

    def _build_default_headers(self, use_internal_auth: bool) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"delivery-internal-client/{self.service_name}"
        }

        if use_internal_auth:
            from core.internal_service_auth import InternalServiceAuth
            headers.update(InternalServiceAuth.get_internal_service_headers())

        return headers

    async def close(self):
        """关闭HTTP客户端"""
        await self.client.aclose()
        logger.debug(f"Closed {self.service_name} client")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ========================================
    # HTTP 方法封装
    # ========================================

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        """GET 请求"""
        return await self.client.get(f"{self.base_url}{path}", params=params, headers=headers)


__all__ = ["BaseServiceClient"]
