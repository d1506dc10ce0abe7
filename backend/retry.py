from dataclasses import dataclass
from typing import Callable, Optional, TypeVar
import logging
import time

from errors import RetryTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded polling: at most ``max_attempts`` checks, ``interval`` seconds
    apart, the wait growing by ``backoff`` after each miss and capped at
    ``max_interval``."""
    max_attempts: int = 24
    interval: float = 5.0
    backoff: float = 1.0
    max_interval: float = 30.0

    def delays(self):
        delay = self.interval
        for _ in range(max(self.max_attempts - 1, 0)):
            yield delay
            delay = min(delay * self.backoff, self.max_interval)

    @property
    def total_wait(self) -> float:
        return sum(self.delays())


def retry_until(check: Callable[[], Optional[T]], policy: RetryPolicy, description: str = "condition",
                sleep: Callable[[float], None] = time.sleep) -> T:
    """Call ``check`` until it returns a truthy value.

    Exceptions raised by ``check`` count as a miss. Raises
    RetryTimeoutError once the attempts are used up.
    """
    delays = policy.delays()
    last_error: Optional[Exception] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = check()
            if result:
                if attempt > 1:
                    logger.info(f"{description} ready after {attempt} attempts")
                return result
            last_error = None
        except Exception as e:
            last_error = e
            logger.debug(f"{description} check failed (attempt {attempt}): {e}")
        if attempt < policy.max_attempts:
            sleep(next(delays))

    message = f"{description} not ready after {policy.max_attempts} attempts"
    if last_error is not None:
        message += f" (last error: {last_error})"
    raise RetryTimeoutError(message)
