"""
Shared pytest fixtures for asset-reducer tests.

Meshes are built procedurally so the suite needs no binary fixtures.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import pytest
import trimesh

from asset_reducer.logging_config import LOGGER_NAME
from asset_reducer.models import (
    Asset,
    ChannelType,
    Material,
    MeshPart,
    Model,
    Node,
    Texture,
)
from asset_reducer.store import AssetStore


# ============================================================================
# GEOMETRY HELPERS
# ============================================================================

def grid_part(cols: int, rows: int, name: str = "grid", with_attributes: bool = True) -> MeshPart:
    """Flat ``cols`` x ``rows`` quad grid in the XY plane (2 triangles per quad)."""
    xs, ys = np.meshgrid(np.linspace(0.0, 1.0, cols + 1), np.linspace(0.0, 0.5, rows + 1))
    positions = np.stack([xs.ravel(), ys.ravel(), np.zeros(xs.size)], axis=1)

    stride = cols + 1
    tris = []
    for r in range(rows):
        for c in range(cols):
            a = r * stride + c
            b = a + 1
            d = a + stride
            e = d + 1
            tris.append((a, b, e))
            tris.append((a, e, d))
    indices = np.asarray(tris, dtype=np.uint32).ravel()

    normals = uvs = None
    if with_attributes:
        normals = np.tile([0.0, 0.0, 1.0], (len(positions), 1))
        uvs = np.stack([xs.ravel(), ys.ravel() * 2.0], axis=1)
    return MeshPart(positions=positions, indices=indices, normals=normals, tex_coords=uvs, name=name)


def sphere_part(subdivisions: int = 5, name: str = "sphere") -> MeshPart:
    """Unit icosphere with smooth vertex normals; 20,480 triangles by default."""
    mesh = trimesh.creation.icosphere(subdivisions=subdivisions)
    return MeshPart(
        positions=mesh.vertices,
        indices=mesh.faces.ravel(),
        normals=mesh.vertex_normals,
        name=name,
    )


def make_asset(
    parts: list[MeshPart],
    name: str = "asset",
    materials: Optional[list[Material]] = None,
) -> Asset:
    """Wrap parts in a root -> mesh node tree."""
    mesh_node = Node(name="mesh", model=Model(parts=parts, materials=materials or [Material(name="default")]))
    return Asset(name=name, root=Node(name=name, children=[mesh_node]))


def textured_material(size: int = 256) -> Material:
    rng = np.random.default_rng(7)
    return Material(
        name="painted",
        textures={
            ChannelType.BASE_COLOR: Texture(rng.integers(0, 255, (size, size, 4), dtype=np.uint8)),
            ChannelType.NORMAL: Texture(np.full((size, size, 3), 128, dtype=np.uint8), semantic="normal"),
            ChannelType.ROUGHNESS: Texture(rng.random((size, size)).astype(np.float32), semantic="raw"),
        },
        factors={"metallicFactor": 0.0},
    )


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def dense_part() -> MeshPart:
    """10,000-triangle grid."""
    return grid_part(100, 50, name="dense")


@pytest.fixture
def small_part() -> MeshPart:
    """150-triangle grid."""
    return grid_part(15, 5, name="small")


@pytest.fixture(name="sphere_part")
def sphere_part_fixture() -> MeshPart:
    """Curved part whose normals vary from vertex to vertex."""
    return sphere_part()


@pytest.fixture
def dense_asset(dense_part: MeshPart) -> Asset:
    return make_asset([dense_part], name="dense", materials=[textured_material()])


@pytest.fixture
def store() -> AssetStore:
    return AssetStore()


@pytest.fixture
def write_source(tmp_path: Path, store: AssetStore) -> Callable[..., Path]:
    """Write a procedurally built source asset and return its path."""

    def _write(name: str, cols: int = 40, rows: int = 20, folder: Optional[Path] = None) -> Path:
        folder = folder or tmp_path / "sources"
        path = folder / f"{name}.lodz"
        store.write(make_asset([grid_part(cols, rows, name=name)], name=name), path)
        return path

    return _write


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo ``init_logging`` so caplog sees package records in every test."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
