"""
Export serializers: binary STL and 3MF package bytes.

Both take validated parts. Multi-part models are merged into one solid
with ``union`` first so the exported file is a single closed body.
"""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
import trimesh

from .primitives import Solid, manifold_of, union

logger = logging.getLogger(__name__)

STL_MEDIA_TYPE = "model/stl"
THREEMF_MEDIA_TYPE = "application/vnd.ms-package.3dmanufacturing-3dmodel+xml"


def merge_parts(parts: Iterable) -> Solid:
    solids = [part.solid for part in parts]
    if not solids:
        raise ValueError("nothing to export")
    if len(solids) == 1:
        return solids[0]
    return union(*solids)


def to_trimesh(solid: Solid) -> trimesh.Trimesh:
    """Indexed mesh of a solid, in millimetres."""
    mesh = manifold_of(solid).to_mesh()
    verts = np.asarray(mesh.vert_properties, dtype=np.float64)[:, :3]
    faces = np.asarray(mesh.tri_verts, dtype=np.int64).reshape(-1, 3)
    return trimesh.Trimesh(vertices=verts, faces=faces, process=False)


def export_stl(parts: Iterable) -> bytes:
    mesh = to_trimesh(merge_parts(parts))
    logger.info("STL export: %d triangles", len(mesh.faces))
    return mesh.export(file_type="stl")


def export_3mf(parts: Iterable) -> bytes:
    mesh = to_trimesh(merge_parts(parts))
    logger.info("3MF export: %d vertices, %d triangles", len(mesh.vertices), len(mesh.faces))
    return mesh.export(file_type="3mf")


EXPORTERS = {
    "stl": (export_stl, STL_MEDIA_TYPE),
    "3mf": (export_3mf, THREEMF_MEDIA_TYPE),
}
