from dataclasses import dataclass
from typing import Literal

Modifier = Literal["c", "ms"]

COUNTER: Modifier = "c"
TIMER: Modifier = "ms"


@dataclass(frozen=True)
class Packet:
    """One parsed metric sample.

    Attributes:
        bucket: Metric name the sample is grouped under
        value: Raw sample value
        modifier: "c" for counters, "ms" for timers
        sampling_rate: Probability the sender emitted this sample, in (0, 1]

    Raises:
        ValueError: If bucket is empty, modifier is unknown, or the sampling
            rate falls outside (0, 1]
    """

    bucket: str
    value: int
    modifier: Modifier
    sampling_rate: float = 1.0

    def __post_init__(self) -> None:
        if not self.bucket:
            raise ValueError("bucket must not be empty")
        if self.modifier not in (COUNTER, TIMER):
            raise ValueError(f"modifier must be 'c' or 'ms' (got {self.modifier!r})")
        if not 0.0 < self.sampling_rate <= 1.0:
            raise ValueError(f"sampling_rate must be in (0, 1], got {self.sampling_rate}")

    @property
    def is_timer(self) -> bool:
        return self.modifier == TIMER
