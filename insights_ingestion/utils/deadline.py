"""Run-level deadline shared by the fetch and enrichment stages."""

import time
from typing import Optional

from insights_ingestion.errors import IngestionTimeout


class Deadline:
    """Wall-clock limit for one ingestion run. None means unbounded."""

    def __init__(self, seconds: Optional[float] = None, clock=time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self._expires_at = clock() + seconds if seconds is not None else None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(self._expires_at - self._clock(), 0.0)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, stage: str) -> None:
        if self.expired():
            raise IngestionTimeout(f"Run deadline of {self.seconds}s exceeded while {stage}")
