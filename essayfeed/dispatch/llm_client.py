"""
LLM client for OpenAI-compatible chat completion endpoints.

Wraps the async OpenAI SDK for one provider. Raw response access is
used so streamed `data:` lines and full JSON bodies can be parsed by
the provider adapter. Includes count-based retry with optional
exponential backoff.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI, Omit

from essayfeed.config import Settings, get_settings
from essayfeed.dispatch.cancellation import CancellationToken
from essayfeed.dispatch.providers import ProviderProfile

logger = logging.getLogger(__name__)

_SDK_FIELDS = ("model", "messages", "temperature", "max_tokens", "stream")
_TRANSPORT_ERRORS = (APIError, httpx.HTTPError)

# The SDK insists on a key; real credentials travel in per-request headers,
# and its default Authorization header is dropped when the adapter sets none.
_PLACEHOLDER_API_KEY = "not-used"


class DispatchError(Exception):
    """Raised when an LLM request fails after all retries."""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        self.cause = cause
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


def _describe(error: Exception | None) -> str:
    if error is None:
        return "unknown error"
    return str(error) or error.__class__.__name__


def _status_code(error: Exception | None) -> int | None:
    return error.status_code if isinstance(error, APIStatusError) else None


class LLMClient:
    """
    Client for one OpenAI-compatible provider.

    Retries consider only the attempt count, not the failure class,
    so a 4xx is retried like a timeout.
    """

    def __init__(
        self,
        profile: ProviderProfile,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the LLM client.

        Args:
            profile: Provider to talk to.
            settings: Configuration settings. Uses global settings if not provided.
            http_client: HTTP client handed to the SDK. The SDK builds its own if not provided.
        """
        self._settings = settings or get_settings()
        self._profile = profile
        self._client = AsyncOpenAI(
            api_key=_PLACEHOLDER_API_KEY,
            base_url=profile.base_url,
            max_retries=0,
            timeout=httpx.Timeout(
                self._settings.request_timeout, connect=self._settings.connect_timeout
            ),
            http_client=http_client,
        )

        # Retry configuration
        self._max_retries = self._settings.max_retries
        self._base_delay = self._settings.retry_base_delay
        self._max_delay = self._settings.retry_max_delay

    @property
    def profile(self) -> ProviderProfile:
        """The provider this client talks to."""
        return self._profile

    async def complete(
        self,
        payload: dict[str, Any],
        headers: dict[str, str],
        cancel: CancellationToken | None = None,
    ) -> str:
        """
        Send a non-streamed completion and return the raw response body.

        Args:
            payload: Request payload built by the provider adapter.
            headers: Request headers built by the provider adapter.
            cancel: Token checked before every attempt.

        Returns:
            The response body text.

        Raises:
            DispatchError: If every attempt fails.
            OperationCancelled: If the token is cancelled between attempts.
        """
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                return await self._post(payload, headers)
            except _TRANSPORT_ERRORS as e:
                last_error = e
                if attempt < self._max_retries:
                    logger.warning(
                        f"{self._profile.name} request failed (attempt {attempt + 1}), "
                        f"retrying: {_describe(e)}"
                    )
                    await asyncio.sleep(self._calculate_delay(attempt))
                    continue

        raise DispatchError(
            f"Request failed after {self._max_retries} retries: {_describe(last_error)}",
            cause=last_error,
            retryable=True,
            status_code=_status_code(last_error),
        )

    async def stream(
        self,
        payload: dict[str, Any],
        headers: dict[str, str],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """
        Send a streamed completion and yield raw response lines.

        Only opening the stream is retried. Once a line has been
        yielded, a transport failure ends the stream with DispatchError.

        Raises:
            DispatchError: If the stream cannot be opened or breaks mid-way.
            OperationCancelled: If the token is cancelled between attempts.
        """
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            received = False
            try:
                async with aclosing(self._iter_lines(payload, headers)) as lines:
                    async for line in lines:
                        received = True
                        yield line
                return
            except _TRANSPORT_ERRORS as e:
                if received:
                    raise DispatchError(
                        f"Stream interrupted: {_describe(e)}",
                        cause=e,
                        status_code=_status_code(e),
                    ) from e
                last_error = e
                if attempt < self._max_retries:
                    logger.warning(
                        f"{self._profile.name} stream failed to open (attempt {attempt + 1}), "
                        f"retrying: {_describe(e)}"
                    )
                    await asyncio.sleep(self._calculate_delay(attempt))
                    continue

        raise DispatchError(
            f"Stream failed after {self._max_retries} retries: {_describe(last_error)}",
            cause=last_error,
            retryable=True,
            status_code=_status_code(last_error),
        )

    async def aclose(self) -> None:
        """Release the underlying HTTP connection pool."""
        await self._client.close()

    async def _post(self, payload: dict[str, Any], headers: dict[str, str]) -> str:
        raw = await self._client.chat.completions.with_raw_response.create(
            **self._sdk_arguments(payload, headers)
        )
        return raw.http_response.text

    async def _iter_lines(
        self, payload: dict[str, Any], headers: dict[str, str]
    ) -> AsyncIterator[str]:
        async with self._client.chat.completions.with_streaming_response.create(
            **self._sdk_arguments(payload, headers)
        ) as response:
            async for line in response.iter_lines():
                yield line

    @staticmethod
    def _sdk_arguments(payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        """Split a payload into SDK keyword arguments plus extra body fields."""
        arguments: dict[str, Any] = {k: payload[k] for k in _SDK_FIELDS if k in payload}
        extra_body = {k: v for k, v in payload.items() if k not in _SDK_FIELDS}
        if extra_body:
            arguments["extra_body"] = extra_body
        extra_headers: dict[str, Any] = dict(headers)
        if "Authorization" not in extra_headers:
            extra_headers["Authorization"] = Omit()
        arguments["extra_headers"] = extra_headers
        return arguments

    def _calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds (0 when no base delay is configured).
        """
        delay = self._base_delay * (2**attempt)
        return min(delay, self._max_delay)
