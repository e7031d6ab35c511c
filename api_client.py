"""HTTP client with retry for the transcription and summary endpoints.

Rate limits (429) wait for the server's retry-after hint when it sends one,
otherwise back off exponentially. Network failures and 5xx responses are
retried the same way; any other 4xx fails immediately.
"""

import asyncio
import email.utils
import time
from typing import Callable

import httpx

from config import API_TIMEOUT
from errors import ApiError

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


def _error_message(resp: httpx.Response) -> str:
    """Pull a readable message out of an error body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip() or resp.reason_phrase
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if body.get("message"):
            return str(body["message"])
    return resp.text.strip() or resp.reason_phrase


def _retry_after(resp: httpx.Response) -> float | None:
    """Seconds the server asked us to wait, if it said."""
    ms = resp.headers.get("retry-after-ms")
    if ms:
        try:
            return max(0.0, float(ms) / 1000)
        except ValueError:
            pass
    value = resp.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


class ResilientClient:
    """Wraps an httpx.AsyncClient with bounded retry and cancellation."""

    def __init__(self, http_client: httpx.AsyncClient | None = None,
                 sleep: Callable = asyncio.sleep, cancel_signal=None, timeout: float = API_TIMEOUT):
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep
        self.cancel_signal = cancel_signal

    async def request(self, method: str, url: str, *, max_attempts: int = 3,
                      base_delay_ms: int = 1000, **kwargs) -> httpx.Response:
        """Send a request, retrying on rate limits and transient failures.

        Returns the first successful response. Raises ApiError with the last
        status (None for network errors) once attempts run out.
        """
        last_error: ApiError | None = None
        for attempt in range(1, max_attempts + 1):
            self._check_cancelled()
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                last_error = ApiError(None, f"Network error: {e}")
                delay = base_delay_ms * 2 ** (attempt - 1) / 1000
            else:
                if resp.is_success:
                    return resp
                last_error = ApiError(resp.status_code, _error_message(resp))
                if resp.status_code not in RETRYABLE_STATUSES:
                    raise last_error
                delay = None
                if resp.status_code == 429:
                    delay = _retry_after(resp)
                if delay is None:
                    delay = base_delay_ms * 2 ** (attempt - 1) / 1000

            if attempt == max_attempts:
                break
            print(f"  [api] {last_error} - retrying in {delay:.1f}s (attempt {attempt}/{max_attempts})")
            await self._sleep(delay)
            self._check_cancelled()

        print(f"  [api] Giving up after {max_attempts} attempts: {last_error}")
        raise last_error

    def _check_cancelled(self):
        if self.cancel_signal is not None and self.cancel_signal.is_set():
            raise ApiError(None, "Request cancelled", kind="cancelled")

    async def aclose(self):
        await self._client.aclose()
