"""Bookkeeping shared by every queue drain pass."""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..core.config import settings


@dataclass
class ItemError:
    local_id: str
    category: str
    error: str


@dataclass
class DrainResult:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    errors: List[ItemError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def to_dict(self) -> Dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "errors": [e.__dict__ for e in self.errors],
        }


class CircuitBreaker:
    """
    Trips after ``threshold`` consecutive failures within one pass.
    Any success resets the run of failures.
    """

    def __init__(self, threshold: Optional[int] = None):
        self.threshold = threshold if threshold is not None else settings.CIRCUIT_BREAKER_THRESHOLD
        self.consecutive_failures = 0

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.consecutive_failures += 1

    @property
    def tripped(self) -> bool:
        return self.consecutive_failures >= self.threshold
