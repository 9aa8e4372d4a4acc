from __future__ import annotations

from typing import Optional

from narrative_tracker.schemas.state import TensionDirection, TensionLevel


def calculate_tension_direction(
    current: TensionLevel,
    previous: Optional[TensionLevel],
) -> TensionDirection:
    """Compare two tension levels; no previous level means ``stable``."""
    if previous is None:
        return TensionDirection.stable
    if current.ordinal > previous.ordinal:
        return TensionDirection.escalating
    if current.ordinal < previous.ordinal:
        return TensionDirection.decreasing
    return TensionDirection.stable
