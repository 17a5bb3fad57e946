import time
from typing import Callable, Optional

# 100 is reserved for the terminal success write
MAX_PROCESSING_PROGRESS = 99.5


def clamp_processing(progress: float) -> float:
    return min(max(progress, 0.0), MAX_PROCESSING_PROGRESS)


def single_phase(local: float) -> float:
    return clamp_processing(local)


def two_phase(phase_index: int, local: float, first_weight: float) -> float:
    """Map one phase's local [0,100] into the job range.

    Phase 0 covers [0, first_weight], phase 1 covers [first_weight, 100].
    """
    local = min(max(local, 0.0), 100.0)
    if phase_index == 0:
        return clamp_processing(local * first_weight / 100.0)
    return clamp_processing(first_weight + local * (100.0 - first_weight) / 100.0)


def multi_item(index: int, local: float, total: int) -> float:
    """``(i + local/100) / N * 100`` for item ``index`` of ``total``."""
    if total <= 0:
        return 0.0
    local = min(max(local, 0.0), 100.0)
    return clamp_processing((index + local / 100.0) / total * 100.0)


class ProgressThrottle:
    """Decides which processing updates are worth publishing.

    An update passes when it is strictly higher than the last published
    value and either advances by ``min_delta`` points or arrives at least
    ``min_interval`` seconds after the last published update.
    """

    def __init__(self, min_interval: float = 1.0, min_delta: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self.min_delta = min_delta
        self.clock = clock
        self.last_value: Optional[float] = None
        self.last_time: float = 0.0

    def should_publish(self, progress: float) -> bool:
        now = self.clock()
        if self.last_value is not None:
            if progress <= self.last_value:
                return False
            if (progress - self.last_value < self.min_delta
                    and now - self.last_time < self.min_interval):
                return False
        self.last_value = progress
        self.last_time = now
        return True
