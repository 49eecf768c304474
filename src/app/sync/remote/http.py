"""Shared httpx plumbing for the Phorest and GHL clients.

Every request goes through BaseHTTPClient._request, which converts transport
failures and non-2xx responses into RemoteAPIError so callers only ever deal
with one exception type. Transient failures are retried with tenacity
(3 attempts, exponential backoff 1-10s).
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.app.sync.remote.adapter import RemoteAPIError, classify_error
from src.app.sync.schemas import ErrorClass

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, RemoteAPIError) and classify_error(exc.code) == ErrorClass.TRANSIENT


remote_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class BaseHTTPClient:
    """Owns one httpx.AsyncClient and normalises its failures.

    Args:
        base_url: API root.
        headers: Default headers for every request.
        timeout: Request timeout in seconds.
        auth: Optional httpx auth (Phorest uses basic auth).
        transport: Optional transport override (httpx.MockTransport in tests).
    """

    service_name = "remote"

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        auth: httpx.Auth | tuple[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout,
            auth=auth,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteAPIError(f"{self.service_name} timeout: {exc}", code="ETIMEDOUT") from exc
        except httpx.TransportError as exc:
            raise RemoteAPIError(f"{self.service_name} connection error: {exc}", code="ECONNRESET") from exc

        if response.status_code >= 400:
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            message = body.get("message") if isinstance(body, dict) else None
            if response.status_code == 429:
                logger.warning(
                    f"{self.service_name}.rate_limited",
                    path=path,
                    retry_after=response.headers.get("retry-after"),
                )
            elif response.status_code >= 500:
                logger.error(f"{self.service_name}.server_error", path=path, status=response.status_code)
            raise RemoteAPIError(
                f"{method} {path} failed with {response.status_code}: {message or body}",
                status_code=response.status_code,
                response_data=body,
            )

        if not response.content:
            return {}
        return response.json()
