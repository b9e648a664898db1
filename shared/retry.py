import random
import time
import logging
from dataclasses import dataclass
from typing import Callable, Tuple, Type, Optional

from tenacity import Retrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff: base * 2**(attempt - 1), capped, with jitter."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        raw = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        if self.jitter:
            raw += raw * random.uniform(0, self.jitter)
        return min(raw, self.max_delay)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def retrying(
        self,
        retry_on: Tuple[Type[BaseException], ...],
        description: str = "operation",
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[int, BaseException], None]] = None
    ) -> Retrying:
        """
        A tenacity controller that retries ``retry_on`` errors under this policy.

        Call it with the function to run. Other exceptions propagate at once,
        and the last retried one is re-raised when the attempts run out.
        """
        def before_sleep(retry_state: RetryCallState):
            error = retry_state.outcome.exception()
            logger.warning(
                f"{description} failed (attempt {retry_state.attempt_number}/{self.max_attempts}), "
                f"retrying in {retry_state.next_action.sleep:.2f}s: {error}"
            )
            if on_retry:
                on_retry(retry_state.attempt_number, error)

        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.base_delay,
                max=self.max_delay,
                jitter=self.base_delay * self.jitter
            ),
            retry=retry_if_exception_type(retry_on),
            before_sleep=before_sleep,
            sleep=sleep,
            reraise=True
        )
