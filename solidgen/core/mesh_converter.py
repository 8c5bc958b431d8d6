"""
Geometry → render mesh conversion.

Takes the boundary polygons of a validated solid and produces flat,
unindexed float32 buffers ready for a viewport:

  1. fan-triangulate each polygon from its first vertex (k-2 triangles)
  2. drop triangles whose edge cross product is (near) zero
  3. flat face normals
  4. merge coincident vertices and average, per corner, only the face
     normals within the crease angle of the corner's own face, so hard
     edges stay hard and curved surfaces shade smoothly

Everything here is pure and numpy-vectorized except the per-vertex crease
grouping.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np

from .primitives import Solid, solid_polygons

DEGENERATE_EPSILON = 1e-12
MERGE_TOLERANCE = 1e-5
DEFAULT_CREASE_ANGLE = 30.0


@dataclass
class RenderMesh:
    positions: np.ndarray          # float32, 3 per vertex, unindexed
    normals: np.ndarray            # float32, 3 per vertex
    triangle_count: int
    color: str | None = None
    name: str | None = None
    watertight: bool = False

    @property
    def vertex_count(self) -> int:
        return self.triangle_count * 3

    def to_dict(self) -> dict[str, Any]:
        return {
            "positions": self.positions.tolist(),
            "normals": self.normals.tolist(),
            "triangle_count": self.triangle_count,
            "color": self.color,
            "name": self.name,
            "watertight": self.watertight,
        }


# ---------------------------------------------------------------------------
# Triangulation
# ---------------------------------------------------------------------------

def fan_triangulate(polygons: Sequence[Sequence[Sequence[float]]] | np.ndarray) -> np.ndarray:
    """``(m, 3, 3)`` triangles; a polygon of k vertices yields k-2 triangles."""
    if isinstance(polygons, np.ndarray) and polygons.ndim == 3 and polygons.shape[1:] == (3, 3):
        return polygons.astype(np.float64, copy=False)

    triangles: list[np.ndarray] = []
    for poly in polygons:
        verts = np.asarray(poly, dtype=np.float64).reshape(-1, 3)
        k = len(verts)
        if k < 3:
            continue
        hub = np.broadcast_to(verts[0], (k - 2, 3))
        triangles.append(np.stack([hub, verts[1:-1], verts[2:]], axis=1))
    if not triangles:
        return np.zeros((0, 3, 3), dtype=np.float64)
    return np.concatenate(triangles, axis=0)


def _face_normals(triangles: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    cross = np.cross(triangles[:, 1] - triangles[:, 0], triangles[:, 2] - triangles[:, 0])
    sq = np.einsum("ij,ij->i", cross, cross)
    return cross, sq


# ---------------------------------------------------------------------------
# Vertex merging + crease-aware normals
# ---------------------------------------------------------------------------

def merge_vertices(corners: np.ndarray, tolerance: float = MERGE_TOLERANCE) -> np.ndarray:
    """Merged vertex id per corner; corners within ``tolerance`` share an id."""
    if len(corners) == 0:
        return np.zeros(0, dtype=np.int64)
    keys = np.round(corners / tolerance).astype(np.int64)
    _, inverse = np.unique(keys, axis=0, return_inverse=True)
    return inverse.reshape(-1)


def crease_normals(face_normals: np.ndarray, vertex_ids: np.ndarray, crease_angle: float) -> np.ndarray:
    """Per-corner normals; ``face_normals`` are unit, one row per triangle."""
    corner_faces = np.repeat(face_normals, 3, axis=0)
    result = np.array(corner_faces, copy=True)
    if len(vertex_ids) == 0:
        return result

    cos_limit = math.cos(math.radians(crease_angle))
    order = np.argsort(vertex_ids, kind="stable")
    sorted_ids = vertex_ids[order]
    starts = np.concatenate(([0], np.flatnonzero(np.diff(sorted_ids)) + 1))
    ends = np.concatenate((starts[1:], [len(order)]))

    for start, end in zip(starts, ends):
        if end - start < 2:
            continue
        group = order[start:end]
        fn = corner_faces[group]
        # A face always passes against itself, so every row sums to non-zero.
        smooth = (fn @ fn.T) >= cos_limit - 1e-9
        result[group] = smooth.astype(np.float64) @ fn

    lengths = np.linalg.norm(result, axis=1, keepdims=True)
    np.divide(result, lengths, out=result, where=lengths > 0)
    return result


def is_watertight_ids(vertex_ids: np.ndarray) -> bool:
    """Every undirected edge is shared by exactly two triangles."""
    if len(vertex_ids) == 0:
        return False
    tri = vertex_ids.reshape(-1, 3)
    collapsed = (tri[:, 0] == tri[:, 1]) | (tri[:, 1] == tri[:, 2]) | (tri[:, 0] == tri[:, 2])
    tri = tri[~collapsed]
    if len(tri) == 0:
        return False
    edges = np.concatenate([tri[:, [0, 1]], tri[:, [1, 2]], tri[:, [2, 0]]], axis=0)
    edges.sort(axis=1)
    _, counts = np.unique(edges, axis=0, return_counts=True)
    return bool(np.all(counts == 2))


def is_watertight(polygons: Sequence[Sequence[Sequence[float]]] | np.ndarray) -> bool:
    triangles = fan_triangulate(polygons)
    _, sq = _face_normals(triangles)
    triangles = triangles[sq >= DEGENERATE_EPSILON]
    return is_watertight_ids(merge_vertices(triangles.reshape(-1, 3)))


# ---------------------------------------------------------------------------
# Public conversion API
# ---------------------------------------------------------------------------

def polygons_to_mesh(
    polygons: Sequence[Sequence[Sequence[float]]] | np.ndarray,
    crease_angle: float = DEFAULT_CREASE_ANGLE,
    color: str | None = None,
    name: str | None = None,
) -> RenderMesh:
    triangles = fan_triangulate(polygons)
    cross, sq = _face_normals(triangles)
    keep = sq >= DEGENERATE_EPSILON
    triangles, cross, sq = triangles[keep], cross[keep], sq[keep]

    face_normals = cross / np.sqrt(sq)[:, None] if len(sq) else cross
    corners = triangles.reshape(-1, 3)
    vertex_ids = merge_vertices(corners)
    normals = crease_normals(face_normals, vertex_ids, crease_angle)

    return RenderMesh(
        positions=corners.astype(np.float32).reshape(-1),
        normals=normals.astype(np.float32).reshape(-1),
        triangle_count=int(len(triangles)),
        color=color,
        name=name,
        watertight=is_watertight_ids(vertex_ids),
    )


def to_mesh(
    solid: Solid,
    crease_angle: float = DEFAULT_CREASE_ANGLE,
    color: str | None = None,
    name: str | None = None,
) -> RenderMesh:
    return polygons_to_mesh(solid_polygons(solid), crease_angle=crease_angle, color=color, name=name)


def parts_to_meshes(parts: Iterable[Any], crease_angle: float = DEFAULT_CREASE_ANGLE) -> list[RenderMesh]:
    """One mesh per validated part, keeping its color and name."""
    return [
        to_mesh(part.solid, crease_angle=crease_angle, color=part.color, name=part.name)
        for part in parts
    ]
