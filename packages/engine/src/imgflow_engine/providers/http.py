from __future__ import annotations

from typing import Any, Mapping

import httpx
import structlog
from imgflow_engine.core import GenerationError, NetworkError, ValidationError
from imgflow_engine.pipeline.types import ImageArtifact
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
)
from tenacity.wait import wait_base

_RETRYABLE_STATUSES: set[int] = {408, 429, 500, 502, 503, 504}

log = structlog.get_logger(__name__)


def is_retryable_status(code: int) -> bool:
    return code in _RETRYABLE_STATUSES


class DeterministicExponentialBackoff(wait_base):
    def __init__(self, *, base: float = 0.5, cap: float = 4.0) -> None:
        self._base = float(base)
        self._cap = float(cap)

    def __call__(self, retry_state) -> float:
        n = retry_state.attempt_number
        if n <= 1:
            return 0.0
        return min(self._cap, self._base * (2 ** (n - 2)))


class RetryableHttpStatus(Exception):
    def __init__(self, *, url: str, status_code: int) -> None:
        super().__init__(f"HTTP {status_code} for GET {url}")
        self.url = url
        self.status_code = status_code


def make_http_client(
    *,
    timeout: httpx.Timeout | None = None,
    user_agent: str = "imgflow-engine/0.1",
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    t = timeout or httpx.Timeout(connect=5.0, read=30.0, write=30.0, pool=5.0)
    return httpx.AsyncClient(
        timeout=t,
        follow_redirects=True,
        headers={"User-Agent": user_agent},
        transport=transport,
    )


class UrlImageGenerator:
    """
    "Generates" an image by downloading it.

    params:
      url      required
      headers  optional extra request headers

    Transport errors and 408/429/5xx are retried; when attempts run out the
    failure surfaces as a retryable NetworkError. Other statuses and non-image
    bodies raise a non-retryable GenerationError.
    """

    name = "url"

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_cap: float = 4.0,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.transport = transport
        self.timeout = timeout

    async def generate(self, params: dict[str, Any]) -> ImageArtifact:
        url = params.get("url")
        if not isinstance(url, str) or not url:
            raise ValidationError(
                "url generator requires a 'url' parameter",
                provider=self.name,
                operation="generate",
            )
        headers = params.get("headers") or {}

        async with make_http_client(transport=self.transport, timeout=self.timeout) as client:
            resp = await self._get_with_retries(client, url, headers)

        content_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            raise GenerationError(
                f"Expected an image from {url}, got {content_type or 'no content type'}",
                provider=self.name,
                operation="generate",
                retryable=False,
            )

        return ImageArtifact(
            bytes=resp.content,
            format=content_type,
            metadata={"url": str(resp.url)},
            source=f"{self.name}:{url}",
        )

    async def _get_with_retries(
        self, client: httpx.AsyncClient, url: str, headers: Mapping[str, str]
    ) -> httpx.Response:
        def _before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            sleep = retry_state.next_action.sleep if retry_state.next_action else None
            log.warning(
                "http.retry",
                url=url,
                attempt=retry_state.attempt_number,
                sleep_s=sleep,
                error=repr(exc) if exc else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=DeterministicExponentialBackoff(
                base=self.backoff_base, cap=self.backoff_cap
            ),
            retry=retry_if_exception_type(
                (httpx.TimeoutException, httpx.TransportError, RetryableHttpStatus)
            ),
            reraise=False,
            before_sleep=_before_sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._get_once(client, url, headers)
        except RetryError as re:
            last = re.last_attempt.exception()
            raise NetworkError(
                f"GET {url} failed after {re.last_attempt.attempt_number} attempts: {last}",
                provider=self.name,
                operation="generate",
            ) from last

        raise RuntimeError("unreachable")

    async def _get_once(
        self, client: httpx.AsyncClient, url: str, headers: Mapping[str, str]
    ) -> httpx.Response:
        resp = await client.get(url, headers=dict(headers))
        if resp.status_code == 200:
            return resp

        if is_retryable_status(resp.status_code):
            raise RetryableHttpStatus(url=url, status_code=resp.status_code)

        snippet = resp.text[:200].strip() if resp.content else ""
        msg = f"HTTP {resp.status_code} for GET {url}"
        if snippet:
            msg += f" (body: {snippet})"
        raise GenerationError(
            msg, provider=self.name, operation="generate", retryable=False
        )
