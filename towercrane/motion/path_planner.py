"""
Obstacle-avoiding tool paths around the tower.

The tower footprint is a vertical keep-out cylinder of radius R centered at the
world origin. A straight move whose horizontal projection crosses the circle
is split into line -> arc -> line, with the arc hugging the circle between the
entry and exit points. The segments are then resampled by arc length into a
fixed number of waypoints, so the animation can index them uniformly
regardless of path shape.

All functions are pure: same inputs, same (N, 3) float64 waypoint array.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import ClassVar, TypeAlias

import numpy as np
from numpy.typing import ArrayLike, NDArray

from towercrane.config import CRANE, INTERSECTION_EPS, PATH_STEPS, TRACE

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LineSegment:
    """Straight segment in 3D."""

    kind: ClassVar[str] = "line"

    start: NDArray[np.float64]
    end: NDArray[np.float64]
    length: float

    def point_at(self, p: float) -> NDArray[np.float64]:
        return self.start + (self.end - self.start) * min(p, 1.0)


@dataclass(frozen=True, slots=True)
class ArcSegment:
    """Arc on the keep-out circle; height varies linearly along it."""

    kind: ClassVar[str] = "arc"

    start: NDArray[np.float64]
    end: NDArray[np.float64]
    radius: float
    start_angle: float
    angle_diff: float
    length: float

    def point_at(self, p: float) -> NDArray[np.float64]:
        if p >= 1.0:
            # exact end point, avoids drift at the arc -> line boundary
            return self.end.copy()
        angle = self.start_angle + self.angle_diff * p
        y = self.start[1] + (self.end[1] - self.start[1]) * p
        return np.array(
            [self.radius * math.cos(angle), y, self.radius * math.sin(angle)],
            dtype=np.float64,
        )


PathSegment: TypeAlias = LineSegment | ArcSegment


def _line(start: NDArray[np.float64], end: NDArray[np.float64]) -> LineSegment:
    return LineSegment(start, end, float(np.linalg.norm(end - start)))


def _wrap_angle(angle: float) -> float:
    """Wrap to (-pi, pi]."""
    if angle > math.pi:
        angle -= 2.0 * math.pi
    if angle <= -math.pi:
        angle += 2.0 * math.pi
    return angle


def circle_intersections(
    start: ArrayLike, end: ArrayLike, radius: float
) -> list[float]:
    """
    Line parameters t where start -> end crosses the circle (XZ plane).

    Only roots strictly inside (eps, 1 - eps) are returned, ascending, so
    tangent touches at the endpoints do not count.
    """
    s = np.asarray(start, dtype=np.float64)
    e = np.asarray(end, dtype=np.float64)
    dx, dz = e[0] - s[0], e[2] - s[2]

    a = dx * dx + dz * dz
    b = 2.0 * (s[0] * dx + s[2] * dz)
    c = s[0] * s[0] + s[2] * s[2] - radius * radius
    if a == 0.0:
        return []

    discriminant = b * b - 4.0 * a * c
    if discriminant < 0.0:
        return []

    sqrt_disc = math.sqrt(discriminant)
    roots = ((-b - sqrt_disc) / (2.0 * a), (-b + sqrt_disc) / (2.0 * a))
    return sorted(
        float(t) for t in roots if INTERSECTION_EPS < t < 1.0 - INTERSECTION_EPS
    )


def plan_segments(
    start: ArrayLike, end: ArrayLike, radius: float | None = None
) -> list[PathSegment]:
    """Decompose start -> end into a line, or line/arc/line around the tower."""
    r = CRANE.obstacle.radius if radius is None else radius
    s = np.asarray(start, dtype=np.float64).copy()
    e = np.asarray(end, dtype=np.float64).copy()

    ts = circle_intersections(s, e, r)
    if len(ts) < 2:
        return [_line(s, e)]

    t1, t2 = ts[0], ts[1]
    entry = s + (e - s) * t1
    exit_ = s + (e - s) * t2
    start_angle = math.atan2(entry[2], entry[0])
    angle_diff = _wrap_angle(math.atan2(exit_[2], exit_[0]) - start_angle)

    arc = ArcSegment(
        start=entry,
        end=exit_,
        radius=r,
        start_angle=start_angle,
        angle_diff=angle_diff,
        length=abs(angle_diff) * r,
    )
    return [_line(s, entry), arc, _line(exit_, e)]


def resample(
    segments: list[PathSegment], steps: int = PATH_STEPS
) -> NDArray[np.float64]:
    """
    Sample ``steps + 1`` waypoints equally spaced by arc length.

    A zero-length path collapses to its single start point.
    """
    total = sum(seg.length for seg in segments)
    if total <= 0.0:
        return segments[0].start.reshape(1, 3).copy()

    out = np.empty((steps + 1, 3), dtype=np.float64)
    for i in range(steps + 1):
        remaining = (i / steps) * total
        for seg in segments:
            if remaining <= seg.length + INTERSECTION_EPS:
                p = 0.0 if seg.length == 0.0 else remaining / seg.length
                out[i] = seg.point_at(p)
                break
            remaining -= seg.length
        else:
            out[i] = segments[-1].end
    return out


def calculate_path(
    start: ArrayLike,
    end: ArrayLike,
    steps: int = PATH_STEPS,
    radius: float | None = None,
) -> NDArray[np.float64]:
    """
    Plan a tool path from ``start`` to ``end`` that stays outside the tower.

    Args:
        start: Cartesian start point [x, y, z]
        end: Cartesian end point [x, y, z]
        steps: Number of resampling intervals (waypoints = steps + 1)
        radius: Keep-out radius (defaults to the configured obstacle)

    Returns:
        (steps + 1, 3) waypoint array, or (1, 3) for a zero-length move
    """
    segments = plan_segments(start, end, radius)
    points = resample(segments, steps)
    logger.log(
        TRACE,
        "path segments=%s length=%.3f points=%d",
        "+".join(seg.kind for seg in segments),
        sum(seg.length for seg in segments),
        len(points),
    )
    return points


def path_length(points: ArrayLike) -> float:
    """Sum of distances between consecutive waypoints."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if len(pts) < 2:
        return 0.0
    return float(np.linalg.norm(np.diff(pts, axis=0), axis=1).sum())


def concat_paths(*paths: NDArray[np.float64]) -> NDArray[np.float64]:
    """Join multi-stage paths end to end."""
    return np.vstack([np.asarray(p, dtype=np.float64).reshape(-1, 3) for p in paths])
