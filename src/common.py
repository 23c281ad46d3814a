"""Common utilities and types for the provisioning engine."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class ActionResult:
    """Result returned by a provider action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    attributes: dict = field(default_factory=dict)
    code: str = ''


def poll_until(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    timeout: float = 600,
    interval: float = 2,
    description: str = 'operation'
) -> Optional[T]:
    """Call fetch() until done(value) is true.

    Returns:
        The first value accepted by done(), or None on timeout
    """
    logger.debug(f"Waiting for {description}...")
    start = time.time()
    while True:
        value = fetch()
        if done(value):
            return value
        if time.time() - start >= timeout:
            logger.error(f"Timeout after {timeout}s waiting for {description}")
            return None
        logger.debug(f"{description} not finished, retrying in {interval}s...")
        time.sleep(interval)


def retry_with_backoff(
    fn: Callable[[], T],
    retry_on: tuple[type[BaseException], ...],
    attempts: int = 4,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    description: str = 'call'
) -> T:
    """Call fn(), retrying on the given exceptions with exponential backoff.

    The delay doubles after each failure, capped at max_delay. The last
    exception propagates once attempts are exhausted.
    """
    delay = base_delay
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"{description} failed ({e}), retry {attempt}/{attempts - 1} in {delay:.1f}s")
            time.sleep(delay)
            delay = min(delay * 2, max_delay)
            attempt += 1


def format_duration(seconds: float) -> str:
    """Format seconds as '1m 05s' or '3.2s'."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"
