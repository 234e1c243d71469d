"""Bounded retry with exponential backoff for external calls."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    return min(base_delay * (2 ** attempt), max_delay)


def call_with_backoff(
    func: Callable,
    *args,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Optional[Callable[[float], None]] = None,
    **kwargs,
):
    """Call ``func`` retrying only on ``exceptions``; re-raises the last one when exhausted."""
    sleep = sleep or time.sleep
    last_exception: Optional[BaseException] = None
    for attempt in range(max_attempts):
        try:
            return func(*args, **kwargs)
        except exceptions as e:
            last_exception = e
            if attempt < max_attempts - 1:
                delay = backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    f"Attempt {attempt + 1}/{max_attempts} failed for {getattr(func, '__name__', func)}: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                sleep(delay)
            else:
                logger.error(f"All {max_attempts} attempts failed for {getattr(func, '__name__', func)}: {e}")
    raise last_exception
