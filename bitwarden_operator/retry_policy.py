"""
Requeue policy for failed reconciliations.

Defaults reproduce a fixed 5 second delay with unlimited attempts. Every
value is validated and clamped so a bad configuration cannot produce a
tight retry loop against a degraded vault or an unbounded delay.
"""
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

MAX_DELAY_LIMIT = 3600.0  # one hour
MAX_BACKOFF_MULTIPLIER = 10.0
MIN_BACKOFF_MULTIPLIER = 1.0
MIN_DELAY = 0.1
MAX_JITTER = 1.0

DEFAULT_INITIAL_DELAY = 5.0
DEFAULT_MAX_DELAY = 300.0
DEFAULT_BACKOFF_MULTIPLIER = 1.0


def _clamp(name: str, value: Any, default: float, low: float, high: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        logger.warning(f"Invalid {name} type: {type(value)}, defaulting to {default}")
        return default
    if value != value:  # NaN
        logger.warning(f"Invalid {name} value: NaN, defaulting to {default}")
        return default
    if value < low:
        logger.warning(f"{name} {value} is below minimum {low}, setting to {low}")
        return low
    if value > high:
        logger.warning(f"{name} {value} exceeds limit {high}, capping to {high}")
        return high
    return float(value)


@dataclass(frozen=True)
class RetryPolicy:
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = 0.0
    max_attempts: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        """
        Build a validated policy from a configuration mapping.

        Args:
            data: Mapping with optional keys initial_delay, max_delay,
                backoff_multiplier, jitter (fraction of the delay, 0-1) and
                max_attempts (None or missing means unlimited).

        Returns:
            A policy with every value inside its allowed range.
        """
        initial_delay = _clamp(
            "initial_delay", data.get("initial_delay", DEFAULT_INITIAL_DELAY),
            DEFAULT_INITIAL_DELAY, MIN_DELAY, MAX_DELAY_LIMIT,
        )
        max_delay = _clamp(
            "max_delay", data.get("max_delay", DEFAULT_MAX_DELAY),
            DEFAULT_MAX_DELAY, MIN_DELAY, MAX_DELAY_LIMIT,
        )
        if max_delay < initial_delay:
            logger.warning(
                f"max_delay {max_delay} is less than initial_delay {initial_delay}, "
                f"setting max_delay to {initial_delay}"
            )
            max_delay = initial_delay

        backoff_multiplier = _clamp(
            "backoff_multiplier", data.get("backoff_multiplier", DEFAULT_BACKOFF_MULTIPLIER),
            DEFAULT_BACKOFF_MULTIPLIER, MIN_BACKOFF_MULTIPLIER, MAX_BACKOFF_MULTIPLIER,
        )
        jitter = _clamp("jitter", data.get("jitter", 0.0), 0.0, 0.0, MAX_JITTER)

        max_attempts = data.get("max_attempts")
        if max_attempts is not None:
            if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
                logger.warning(f"Invalid max_attempts type: {type(max_attempts)}, using unlimited")
                max_attempts = None
            elif max_attempts < 1:
                logger.warning(f"max_attempts {max_attempts} is below minimum 1, setting to 1")
                max_attempts = 1

        return cls(
            initial_delay=initial_delay,
            max_delay=max_delay,
            backoff_multiplier=backoff_multiplier,
            jitter=jitter,
            max_attempts=max_attempts,
        )

    def exhausted(self, attempt: int) -> bool:
        """True once ``attempt`` consecutive failures used up the budget."""
        return self.max_attempts is not None and attempt >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """
        Delay before retrying after the ``attempt``-th consecutive failure.

        Args:
            attempt: 1 for the first failure, 2 for the second, ...

        Returns:
            Delay in seconds, capped at max_delay before jitter is added.
        """
        exponent = max(0, attempt - 1)
        try:
            delay = self.initial_delay * (self.backoff_multiplier ** exponent)
        except OverflowError:
            delay = self.max_delay
        if not (delay >= 0 and delay != float("inf")):
            delay = self.max_delay
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay
