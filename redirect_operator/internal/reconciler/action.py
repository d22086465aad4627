from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Action:
    """What the driver should do with an object after a successful reconciliation."""

    requeue_after: Optional[float] = None

    @classmethod
    def requeue(cls, seconds: float) -> 'Action':
        return cls(requeue_after=seconds)

    @classmethod
    def await_change(cls) -> 'Action':
        return cls(requeue_after=None)
