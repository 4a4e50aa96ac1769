"""Timing curves applied to linear phase progress."""


def ease_in_out_cubic(x: float) -> float:
    """Cubic ease-in/ease-out; input is clamped to [0, 1]."""
    if x <= 0.0:
        return 0.0
    if x >= 1.0:
        return 1.0
    if x < 0.5:
        return 4.0 * x * x * x
    return 1.0 - (-2.0 * x + 2.0) ** 3 / 2.0
