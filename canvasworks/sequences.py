from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Tuple

from . import emails

UPSELL = "canvas-upsell"
FOLLOWUP = "lead-followup"


@dataclass(frozen=True)
class Sequence:
    """A drip: step n (1-based) may go out once ``thresholds[n-1]`` has
    elapsed since enrollment."""

    name: str
    thresholds: Tuple[timedelta, ...]
    render: Callable[[int, Dict[str, Any]], emails.Message]

    @property
    def steps(self) -> int:
        return len(self.thresholds)


CANVAS_UPSELL = Sequence(
    name=UPSELL,
    thresholds=(
        timedelta(hours=1),
        timedelta(days=1),
        timedelta(days=2),
    ),
    render=emails.upsell,
)

# step 1 is sent by the enrollment path itself
LEAD_FOLLOWUP = Sequence(
    name=FOLLOWUP,
    thresholds=(
        timedelta(days=0),
        timedelta(days=1),
        timedelta(days=3),
        timedelta(days=7),
        timedelta(days=21),
        timedelta(days=30),
    ),
    render=emails.followup,
)

SEQUENCES = {s.name: s for s in (CANVAS_UPSELL, LEAD_FOLLOWUP)}
