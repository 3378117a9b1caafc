"""Bounded exponential-backoff retry around one generation call."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import is_retryable
from .i18n import tr

logger = logging.getLogger(__name__)

T = TypeVar("T")

StatusCallback = Callable[[str], None]
Sleep = Callable[[float], Awaitable[None]]


async def run_with_retry(
    call: Callable[[], Awaitable[T]],
    max_retries: int = 0,
    base_delay_ms: int = 1000,
    on_status: Optional[StatusCallback] = None,
    locale: str = "en",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run `call`, retrying transient failures up to `max_retries` times.

    Delay before retry n (0-based) is base_delay_ms * 2**n. Non-retryable
    errors and the last failure propagate unchanged.
    """
    max_retries = max(0, int(max_retries))
    attempt = 0
    while True:
        if on_status:
            if attempt == 0:
                on_status(tr("generating", locale))
            else:
                on_status(tr("generating_retry", locale, attempt=attempt, max_retries=max_retries))
        try:
            return await call()
        except Exception as e:
            retryable = is_retryable(e)
            logger.error(f"🔁 [Retry] Attempt {attempt + 1}/{max_retries + 1} failed "
                         f"({'retryable' if retryable else 'fatal'}): {e}")
            if not retryable or attempt >= max_retries:
                raise
            delay_ms = base_delay_ms * (2 ** attempt)
            if on_status:
                on_status(tr("retry_in", locale, seconds=delay_ms / 1000))
            logger.info(f"🔁 [Retry] Sleeping {delay_ms}ms before next attempt")
            await sleep(delay_ms / 1000)
            attempt += 1
