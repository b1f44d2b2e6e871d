import asyncio
import logging
from functools import wraps
from typing import Tuple, Type

from .exceptions import TransientIOError

logger = logging.getLogger(__name__)


def async_retry(max_retries: int = 3, delay: float = 1.0,
                retry_on: Tuple[Type[BaseException], ...] = (TransientIOError,)):
    """Decorator for async retry logic with exponential backoff"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        wait = delay * (2 ** attempt)
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {e}; "
                            f"retrying in {wait:.1f}s"
                        )
                        await asyncio.sleep(wait)
            raise last_exception
        return wrapper
    return decorator
