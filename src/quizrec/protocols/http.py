"""Shared async JSON-over-HTTP plumbing with retry and error mapping."""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from common import ResultEnvelope

logger = structlog.get_logger(__name__)

_DEFAULT_TIMEOUT = 15.0
_MAX_RETRIES = 2


class HttpClientError(Exception):
    """Raised when a request fails after retries."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_message(response: httpx.Response) -> str:
    """Prefer the ``{ok: false, error}`` envelope over the raw body."""
    try:
        body = response.json()
    except ValueError:
        return response.text
    if not isinstance(body, dict):
        return response.text
    try:
        envelope = ResultEnvelope.model_validate(body)
    except ValidationError:
        return response.text
    return envelope.error or response.text


class JsonHttpClient:
    """Async HTTP client returning decoded JSON bodies."""

    error_class: type[HttpClientError] = HttpClientError

    def __init__(
        self,
        base_url: str,
        timeout: float = _DEFAULT_TIMEOUT,
        max_retries: int = _MAX_RETRIES,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._headers = headers or {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy-initialise the shared ``httpx.AsyncClient``."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                headers=self._headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Shut down the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Execute a request with retries; 4xx responses are not retried."""
        client = await self._get_client()
        url = f"{self._base_url}{path}"
        last_error: Exception | None = None
        last_status: int | None = None

        for attempt in range(self._max_retries + 1):
            try:
                response = await client.request(method, url, json=json_body, params=params)
                response.raise_for_status()
                data = response.json()
                if isinstance(data, dict) and data.get("ok") is False:
                    raise self.error_class(
                        f"{method} {path} failed: {data.get('error') or 'unknown error'}",
                        status_code=response.status_code,
                    )
                return data
            except httpx.TimeoutException as exc:
                last_error = exc
                logger.warning("http_request_timeout", url=url, attempt=attempt + 1)
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if 400 <= status < 500:
                    raise self.error_class(
                        f"{method} {path} failed ({status}): {_error_message(exc.response)}",
                        status_code=status,
                    ) from exc
                last_error = exc
                last_status = status
                logger.warning(
                    "http_request_status_error",
                    url=url,
                    status=status,
                    attempt=attempt + 1,
                )
            except httpx.RequestError as exc:
                last_error = exc
                logger.warning(
                    "http_request_error",
                    url=url,
                    error=str(exc),
                    attempt=attempt + 1,
                )
            except ValueError as exc:
                raise self.error_class(f"{method} {path} returned invalid JSON: {exc}") from exc

        raise self.error_class(
            f"{method} {path} failed after {self._max_retries + 1} attempts: {last_error}",
            status_code=last_status,
        )
