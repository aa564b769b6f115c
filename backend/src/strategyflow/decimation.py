"""
Deterministic downsampling for series handed to rendering or persistence.
"""

import math
from typing import List, Sequence, TypeVar

T = TypeVar("T")


def decimate(points: Sequence[T], max_points: int = 1000) -> List[T]:
    """
    Reduce a series to at most ``max_points`` elements.

    Series at or under the cap come back unchanged (as a list). Longer series
    keep every ``ceil(len / max_points)``-th element starting at index 0; if
    that stride skips the final element it replaces the last kept one, so the
    first and last points of the input always survive.

    Args:
        points: Ordered series to decimate
        max_points: Upper bound on the output length

    Returns:
        An order-preserving sub-sequence of ``points``
    """
    if max_points < 1:
        raise ValueError(f"max_points must be positive, got {max_points}")

    length = len(points)
    if length <= max_points:
        return list(points)

    skip = math.ceil(length / max_points)
    result = [points[i] for i in range(0, length, skip)]
    if (length - 1) % skip != 0:
        result[-1] = points[-1]
    return result
