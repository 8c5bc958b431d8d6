"""
Primitive library binding.

Exposes the fixed set of solid-modeling constructors and operators that
generated scripts may call. Every solid is an opaque :class:`Solid` handle
wrapping a ``manifold3d.Manifold``; scripts can only build and combine
handles, never reach into them.

Conventions (kept identical in the system prompt):
  - lengths are millimetres, solids are centred on the origin
  - cylinders and revolved profiles run along Z
  - rotate() takes radians, XYZ order
  - transforms take the vector first and the solid second
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from typing import Any, Callable

import manifold3d as m3d
import numpy as np

from .errors import GeometryError

DEFAULT_SEGMENTS = 32
MAX_SEGMENTS = 1024


class Solid:
    """Opaque boundary-representation handle produced by the primitives.

    It has no public attributes: scripts cannot reach underscore names, so
    the wrapped manifold is only reachable through the module functions
    below.
    """

    __slots__ = ("_manifold",)

    def __init__(self, manifold: m3d.Manifold):
        self._manifold = manifold

    def __repr__(self) -> str:
        return f"<Solid triangles={self._manifold.num_tri()}>"


class Profile:
    """Closed 2-D outline used as input to :func:`revolve`."""

    __slots__ = ("_section", "_points")

    def __init__(self, section: m3d.CrossSection, points: list[tuple[float, float]]):
        self._section = section
        self._points = points

    def __repr__(self) -> str:
        return f"<Profile points={len(self._points)}>"


def is_solid(value: Any) -> bool:
    return isinstance(value, Solid)


def manifold_of(solid: Solid) -> m3d.Manifold:
    return solid._manifold


def is_empty(solid: Solid) -> bool:
    return solid._manifold.is_empty()


def solid_polygons(solid: Solid) -> np.ndarray:
    """Boundary polygons as a ``(n, 3, 3)`` float array (one triangle per loop)."""
    mesh = solid._manifold.to_mesh()
    verts = np.asarray(mesh.vert_properties, dtype=np.float64)[:, :3]
    tris = np.asarray(mesh.tri_verts, dtype=np.int64)
    if len(tris) == 0:
        return np.zeros((0, 3, 3), dtype=np.float64)
    return verts[tris]


# ---------------------------------------------------------------------------
# Argument coercion
# ---------------------------------------------------------------------------

def _number(fn: str, name: str, value: Any, positive: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{fn}() {name} must be a number, got {type(value).__name__}")
    if not math.isfinite(value):
        raise GeometryError(f"{fn}() {name} must be finite")
    if positive and value <= 0:
        raise GeometryError(f"{fn}() {name} must be greater than 0, got {value}")
    return float(value)


def _vec3(fn: str, name: str, value: Any) -> tuple[float, float, float]:
    if not isinstance(value, (list, tuple)) or len(value) != 3:
        raise TypeError(f"{fn}() {name} must be a list of 3 numbers")
    x, y, z = (_number(fn, name, v) for v in value)
    return x, y, z


def _segments(fn: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{fn}() segments must be an integer")
    if value < 3:
        raise GeometryError(f"{fn}() segments must be at least 3, got {value}")
    if value > MAX_SEGMENTS:
        raise GeometryError(f"{fn}() segments must be at most {MAX_SEGMENTS}, got {value}")
    return value


def _solid(fn: str, value: Any) -> Solid:
    if not isinstance(value, Solid):
        raise TypeError(f"{fn}() expects a solid, got {type(value).__name__}")
    if is_empty(value):
        raise GeometryError(f"{fn}() received an empty solid")
    return value


def _solids(fn: str, values: Iterable[Any]) -> list[Solid]:
    flat: list[Any] = []
    for value in values:
        if isinstance(value, (list, tuple)):
            flat.extend(value)
        else:
            flat.append(value)
    if not flat:
        raise TypeError(f"{fn}() requires at least one solid")
    return [_solid(fn, v) for v in flat]


def _non_empty(fn: str, manifold: m3d.Manifold) -> Solid:
    if manifold.is_empty():
        raise GeometryError(f"{fn}() produced an empty solid")
    return Solid(manifold)


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------

def cuboid(size: Sequence[float] = (1, 1, 1)) -> Solid:
    """Box of ``size = [x, y, z]`` centred on the origin."""
    x, y, z = _vec3("cuboid", "size", size)
    for v in (x, y, z):
        if v <= 0:
            raise GeometryError(f"cuboid() size components must be greater than 0, got {list(size)}")
    return Solid(m3d.Manifold.cube((x, y, z), True))


def sphere(radius: float = 1, segments: int = DEFAULT_SEGMENTS) -> Solid:
    r = _number("sphere", "radius", radius, positive=True)
    return Solid(m3d.Manifold.sphere(r, _segments("sphere", segments)))


def cylinder(radius: float = 1, height: float = 1, segments: int = DEFAULT_SEGMENTS) -> Solid:
    """Cylinder along Z, centred on the origin."""
    r = _number("cylinder", "radius", radius, positive=True)
    h = _number("cylinder", "height", height, positive=True)
    n = _segments("cylinder", segments)
    return Solid(m3d.Manifold.cylinder(h, r, r, n, True))


def torus(
    inner_radius: float = 1,
    outer_radius: float = 4,
    inner_segments: int = DEFAULT_SEGMENTS,
    outer_segments: int = DEFAULT_SEGMENTS,
) -> Solid:
    """Ring in the XY plane: ``inner_radius`` is the tube, ``outer_radius`` the ring centre line."""
    tube = _number("torus", "inner_radius", inner_radius, positive=True)
    ring = _number("torus", "outer_radius", outer_radius, positive=True)
    if tube >= ring:
        raise GeometryError("torus() inner_radius must be smaller than outer_radius")
    circle = m3d.CrossSection.circle(tube, _segments("torus", inner_segments)).translate((ring, 0.0))
    return Solid(circle.revolve(_segments("torus", outer_segments)))


def polygon(points: Sequence[Sequence[float]]) -> Profile:
    """2-D outline from ``[[x, y], ...]``; ``x`` is the radius when revolved."""
    if not isinstance(points, (list, tuple)) or len(points) < 3:
        raise TypeError("polygon() points must be a list of at least 3 [x, y] pairs")
    outline: list[tuple[float, float]] = []
    for idx, point in enumerate(points):
        if not isinstance(point, (list, tuple)) or len(point) != 2:
            raise TypeError(f"polygon() point {idx} must be an [x, y] pair")
        outline.append((_number("polygon", "point", point[0]), _number("polygon", "point", point[1])))
    section = m3d.CrossSection([outline], m3d.FillRule.NonZero)
    if section.is_empty():
        raise GeometryError("polygon() outline encloses no area")
    return Profile(section, outline)


def revolve(profile: Profile, segments: int = DEFAULT_SEGMENTS, angle: float = 2 * math.pi) -> Solid:
    """Spin a polygon profile around the Z axis by ``angle`` radians."""
    if not isinstance(profile, Profile):
        raise TypeError(f"revolve() expects a polygon profile, got {type(profile).__name__}")
    if any(x < 0 for x, _ in profile._points):
        raise GeometryError("revolve() profile must lie at x >= 0")
    sweep = _number("revolve", "angle", angle, positive=True)
    degrees = min(math.degrees(sweep), 360.0)
    return _non_empty("revolve", profile._section.revolve(_segments("revolve", segments), degrees))


# ---------------------------------------------------------------------------
# Booleans
# ---------------------------------------------------------------------------

def union(*solids: Any) -> Solid:
    parts = _solids("union", solids)
    result = manifold_of(parts[0])
    for other in parts[1:]:
        result = result + manifold_of(other)
    return _non_empty("union", result)


def subtract(*solids: Any) -> Solid:
    """Cut every following solid from the first."""
    parts = _solids("subtract", solids)
    result = manifold_of(parts[0])
    for other in parts[1:]:
        result = result - manifold_of(other)
    return _non_empty("subtract", result)


def intersect(*solids: Any) -> Solid:
    parts = _solids("intersect", solids)
    result = manifold_of(parts[0])
    for other in parts[1:]:
        result = result ^ manifold_of(other)
    return _non_empty("intersect", result)


# ---------------------------------------------------------------------------
# Affine transforms
# ---------------------------------------------------------------------------

def translate(offset: Sequence[float], solid: Solid) -> Solid:
    return Solid(manifold_of(_solid("translate", solid)).translate(_vec3("translate", "offset", offset)))


def rotate(angles: Sequence[float], solid: Solid) -> Solid:
    """Rotate about X, then Y, then Z; angles in radians."""
    rx, ry, rz = _vec3("rotate", "angles", angles)
    degrees = (math.degrees(rx), math.degrees(ry), math.degrees(rz))
    return Solid(manifold_of(_solid("rotate", solid)).rotate(degrees))


def scale(factors: Sequence[float] | float, solid: Solid) -> Solid:
    if isinstance(factors, (int, float)) and not isinstance(factors, bool):
        factors = [factors, factors, factors]
    vec = _vec3("scale", "factors", factors)
    if any(v == 0 for v in vec):
        raise GeometryError("scale() factors must be non-zero")
    return Solid(manifold_of(_solid("scale", solid)).scale(vec))


def mirror(normal: Sequence[float], solid: Solid) -> Solid:
    """Reflect across the plane through the origin with the given normal."""
    vec = _vec3("mirror", "normal", normal)
    if not any(vec):
        raise GeometryError("mirror() normal must be non-zero")
    return Solid(manifold_of(_solid("mirror", solid)).mirror(vec))


# ---------------------------------------------------------------------------
# Registry, in the generated function's parameter order
# ---------------------------------------------------------------------------

PRIMITIVES: dict[str, Callable[..., Any]] = {
    "cuboid": cuboid,
    "sphere": sphere,
    "cylinder": cylinder,
    "torus": torus,
    "polygon": polygon,
    "revolve": revolve,
    "union": union,
    "subtract": subtract,
    "intersect": intersect,
    "translate": translate,
    "rotate": rotate,
    "scale": scale,
    "mirror": mirror,
}

PRIMITIVE_NAMES: tuple[str, ...] = tuple(PRIMITIVES)
