"""Descriptor and candidate builders shared by the test modules."""

from __future__ import annotations

from typing import List, Optional

from core.matcher.types import DESCRIPTOR_DIM, Candidate


def descriptor_at(distance: float, axis: int = 0) -> List[float]:
    """A descriptor exactly *distance* away from the all-zero descriptor."""
    v = [0.0] * DESCRIPTOR_DIM
    v[axis] = float(distance)
    return v


def make_candidate(
    cid,
    distance: Optional[float] = None,
    name: Optional[str] = None,
    axis: int = 0,
    **extra,
) -> Candidate:
    """Candidate placed *distance* away from zero; ``distance=None`` → no descriptor."""
    return Candidate(
        id=cid,
        name=name or f"person-{cid}",
        crime_type="theft",
        risk_level="HIGH",
        image_url=f"/uploads/{cid}.jpg",
        descriptor=None if distance is None else descriptor_at(distance, axis),
        metadata=extra,
    )
