"""Retry utility with exponential backoff for model API calls."""
import asyncio
import random
import logging

logger = logging.getLogger(__name__)

_RETRYABLE_MARKERS = ("429", "quota", "rate", "resource_exhausted", "503", "unavailable")


def is_retryable_error(error: Exception) -> bool:
    """Rate-limit and transient availability errors are worth another attempt."""
    error_str = str(error).lower()
    return any(marker in error_str for marker in _RETRYABLE_MARKERS)


async def retry_with_backoff(func, max_retries=3, base_delay=1.0, label="model call"):
    """Retry async function with exponential backoff."""
    for attempt in range(max_retries):
        try:
            return await func()
        except Exception as e:
            if attempt < max_retries - 1 and is_retryable_error(e):
                delay = base_delay * (2 ** attempt) + random.uniform(0, base_delay)
                logger.warning(
                    f"{label}: retry {attempt+1}/{max_retries} after {delay:.1f}s: {str(e)[:100]}"
                )
                await asyncio.sleep(delay)
            else:
                raise
