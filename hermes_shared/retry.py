"""
Retry policy and backoff calculation for outbound delivery.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

StatusRange = Tuple[int, int]

DEFAULT_RETRYABLE_STATUSES = ("5xx", "429", "408")


def parse_status_ranges(specs: Iterable[Union[str, int]]) -> Tuple[StatusRange, ...]:
    """Parse status specs such as "5xx", "429" or "500-504" into inclusive ranges."""
    ranges = []
    for spec in specs:
        text = str(spec).strip().lower()
        if len(text) == 3 and text.endswith("xx") and text[0].isdigit():
            low = int(text[0]) * 100
            ranges.append((low, low + 99))
        elif "-" in text:
            low_text, _, high_text = text.partition("-")
            low, high = int(low_text), int(high_text)
            if low > high:
                raise ValueError(f"invalid status range '{spec}'")
            ranges.append((low, high))
        else:
            code = int(text)
            ranges.append((code, code))
    for low, high in ranges:
        if low < 100 or high > 599:
            raise ValueError(f"status range {low}-{high} is outside 100-599")
    return tuple(ranges)


@dataclass(frozen=True)
class RetryPolicy:
    """How delivery to a single target is retried."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    retry_on_network_error: bool = True
    retry_on_timeout: bool = True
    retryable_statuses: Tuple[StatusRange, ...] = parse_status_ranges(DEFAULT_RETRYABLE_STATUSES)

    def validate(self) -> Optional[str]:
        """Return a description of the first invalid field, or None."""
        if self.max_attempts < 1:
            return "max_attempts must be at least 1"
        if self.base_delay < 0:
            return "base delay must not be negative"
        if self.multiplier < 1:
            return "backoff multiplier must be at least 1"
        if self.max_delay < 0:
            return "max delay must not be negative"
        return None

    def is_retryable_status(self, status_code: int) -> bool:
        return any(low <= status_code <= high for low, high in self.retryable_statuses)

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return compute_backoff(attempt, self)


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Calculate delay between retry attempts.

    Exponential: base * multiplier^(attempt-1), capped at max_delay.
    """
    try:
        delay = policy.base_delay * (policy.multiplier ** (attempt - 1))
    except OverflowError:
        delay = policy.max_delay
    return max(0.0, min(delay, policy.max_delay))
