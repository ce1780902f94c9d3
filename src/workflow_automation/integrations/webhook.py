"""
基于 httpx 的 Webhook 调用实现
"""
import logging
from typing import Dict, Any, Optional

import httpx

from .collaborators import WebhookCaller
from ..exceptions import TransientDeliveryError, PermanentDeliveryError


logger = logging.getLogger(__name__)


# 需要重试的 HTTP 状态码
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class HttpWebhookCaller(WebhookCaller):
    """HTTP Webhook 调用器"""

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport = None):
        self._timeout = timeout
        self._transport = transport

    async def call(
        self,
        url: str,
        method: str,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        发起 HTTP 调用

        Raises:
            TransientDeliveryError: 超时、连接失败、429 或 5xx
            PermanentDeliveryError: 其余 4xx 或非法请求
        """
        method = method.upper()
        request_kwargs: Dict[str, Any] = {"headers": headers or {}}
        if body:
            if method == "GET":
                request_kwargs["params"] = body
            else:
                request_kwargs["json"] = body

        try:
            logger.debug(f"{method} {url}")
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Timeout calling webhook {url}") from e
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise PermanentDeliveryError(f"Invalid webhook URL {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Connection error calling webhook {url}: {e}") from e

        logger.info(f"Webhook {method} {url} -> {response.status_code}")

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientDeliveryError(
                f"Webhook {url} returned {response.status_code}"
            )
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                f"Webhook {url} rejected the call with {response.status_code}: {response.text[:200]}"
            )

        return {"status_code": response.status_code}
