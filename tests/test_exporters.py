from __future__ import annotations

import io
import struct
import zipfile
from xml.etree import ElementTree

import numpy as np
import pytest

from solidgen.core.exporters import EXPORTERS, export_3mf, export_stl, merge_parts, to_trimesh
from solidgen.core.primitives import cuboid, translate
from solidgen.core.sandbox import Part


def _cube_parts():
    return [Part(solid=cuboid([10, 10, 10]))]


def _local_tags(xml: bytes, tag: str) -> int:
    root = ElementTree.fromstring(xml)
    return sum(1 for el in root.iter() if el.tag.rsplit("}", 1)[-1] == tag)


class TestStl:
    def test_binary_layout(self):
        data = export_stl(_cube_parts())
        (count,) = struct.unpack_from("<I", data, 80)
        assert count == 12
        assert len(data) == 84 + 50 * count

    def test_parts_are_merged(self):
        parts = [
            Part(solid=cuboid([1, 1, 1])),
            Part(solid=translate([5, 0, 0], cuboid([1, 1, 1]))),
        ]
        (count,) = struct.unpack_from("<I", export_stl(parts), 80)
        assert count == 24

    def test_nothing_to_export(self):
        with pytest.raises(ValueError):
            merge_parts([])


class TestThreeMf:
    def test_package_holds_the_cube(self):
        data = export_3mf(_cube_parts())
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            names = set(zf.namelist())
            model = zf.read("3D/3dmodel.model")
        assert {"[Content_Types].xml", "_rels/.rels", "3D/3dmodel.model"} <= names
        assert _local_tags(model, "triangle") == 12
        assert _local_tags(model, "vertex") == 8


def test_trimesh_view_is_closed_and_sized():
    mesh = to_trimesh(cuboid([10, 20, 30]))
    assert mesh.is_watertight
    assert np.allclose(mesh.extents, [10, 20, 30])


def test_registry_media_types():
    assert EXPORTERS["stl"][1] == "model/stl"
    assert set(EXPORTERS) == {"stl", "3mf"}
