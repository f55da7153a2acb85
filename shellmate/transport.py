import asyncio
import inspect
import logging
import math
import re
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

RETRY_DELAY_PATTERN = re.compile(r"retry in ([\d.]+)\s*s", re.IGNORECASE)
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_WAIT = 5
RATE_LIMIT_STATUS = 429


class ProviderError(Exception):
    """A chat-completion request that failed at the transport level."""

    def __init__(self, status: Optional[int], body: str):
        self.status = status
        self.body = body
        super().__init__(f"API {status}: {body}" if status is not None else body)


def parse_retry_delay(response, default: int = DEFAULT_RETRY_WAIT) -> int:
    """Best-effort wait, in whole seconds, suggested by a rate-limited response."""
    match = RETRY_DELAY_PATTERN.search(response.text or "")
    if match:
        try:
            return max(1, math.ceil(float(match.group(1))))
        except ValueError:
            pass
    retry_after = (response.headers or {}).get("Retry-After", "")
    if retry_after.strip().isdigit():
        return max(1, int(retry_after))
    return default


class RateLimitedTransport:
    """
    One streaming POST to a chat-completions endpoint, retried on HTTP 429.

    On a rate limit the suggested wait is counted down one second at a time
    through ``on_countdown`` before the identical request is sent again.
    Any other non-2xx status raises ``ProviderError``; so does running out of
    retries. The payload is never inspected.
    """

    def __init__(self, url: str, api_key: str = None, max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_wait: int = DEFAULT_RETRY_WAIT, timeout: float = 120,
                 session: requests.Session = None, sleep=asyncio.sleep):
        self.url = url
        self.api_key = api_key
        self.max_retries = max_retries
        self.retry_wait = retry_wait
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "X-Title": "shellmate",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, payload: dict) -> requests.Response:
        return self.session.post(
            self.url, json=payload, headers=self._headers(), stream=True, timeout=self.timeout,
        )

    async def send(self, payload: dict, on_countdown: Callable[[int], None] = None) -> requests.Response:
        retry_count = 0
        while True:
            try:
                response = await asyncio.to_thread(self._post, payload)
            except requests.RequestException as e:
                raise ProviderError(None, f"Request to {self.url} failed: {e}") from e

            if response.status_code == RATE_LIMIT_STATUS and retry_count < self.max_retries:
                wait = parse_retry_delay(response, self.retry_wait)
                response.close()
                retry_count += 1
                logger.info("Rate limited, retrying in %ss (attempt %d/%d)", wait, retry_count, self.max_retries)
                for remaining in range(wait, 0, -1):
                    if on_countdown:
                        result = on_countdown(remaining)
                        if inspect.isawaitable(result):
                            await result
                    await self._sleep(1)
                continue

            if not response.ok:
                body = response.text
                response.close()
                raise ProviderError(response.status_code, body)
            return response

    async def iter_chunks(self, response: requests.Response):
        """Yields raw body chunks without blocking the event loop."""
        iterator = response.iter_content(chunk_size=None)
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(next, iterator, None)
                except requests.RequestException as e:
                    raise ProviderError(None, f"Response stream broke off: {e}") from e
                if chunk is None:
                    return
                yield chunk
        finally:
            response.close()
