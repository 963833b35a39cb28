from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import SecretStr
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from provisioner.core.errors import PermanentProviderError, TransientProviderError

logger = structlog.get_logger()


def is_retryable_status(status_code: int) -> bool:
    """Determine if HTTP status code is retryable."""
    return status_code in (408, 429, 500, 502, 503, 504)


class DriverHTTPClient:
    """JSON HTTP client for drivers with bounded in-call retries.

    Retries here only smooth over blips inside a single driver call; the task
    poller's backoff and the circuit breaker sit above it. Errors surface as
    TransientProviderError or PermanentProviderError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max(1, max_retries)
        self._backoff_factor = backoff_factor
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _headers(self, credentials: SecretStr | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if credentials is not None:
            headers["Authorization"] = f"Bearer {credentials.get_secret_value()}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        credentials: SecretStr | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute HTTP request with retry on transient failures."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._backoff_factor, min=0, max=10),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(
                    method, path, credentials=credentials, params=params, json=json, headers=headers
                )
        raise AssertionError("unreachable")  # pragma: no cover

    async def _send(
        self,
        method: str,
        path: str,
        *,
        credentials: SecretStr | None,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        req_headers = self._headers(credentials)
        if headers:
            req_headers.update(headers)

        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers=req_headers,
            )
        except httpx.TransportError as exc:
            logger.warning("http_network_error", method=method, url=url, error=str(exc))
            raise TransientProviderError(
                "Provider unreachable", {"method": method, "path": path}
            ) from exc

        if is_retryable_status(response.status_code):
            logger.warning(
                "http_retryable_error",
                status=response.status_code,
                method=method,
                url=url,
            )
            raise TransientProviderError(
                f"Provider returned HTTP {response.status_code}",
                {"method": method, "path": path, "status": response.status_code},
            )

        if response.is_error:
            logger.error(
                "http_permanent_error",
                status=response.status_code,
                method=method,
                url=url,
            )
            # response bodies never go into error details
            raise PermanentProviderError(
                f"Provider rejected request with HTTP {response.status_code}",
                {"method": method, "path": path, "status": response.status_code},
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            logger.error("http_invalid_json", status=response.status_code, method=method, url=url)
            raise PermanentProviderError(
                "Provider returned a non-JSON response",
                {"method": method, "path": path, "status": response.status_code},
            ) from exc

    async def get(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("POST", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return await self.request("DELETE", path, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()
