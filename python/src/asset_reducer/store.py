"""Loading and writing assets.

Two kinds of files are handled:

- ``.lodz`` archives: a compressed ``npz`` bundle holding every
  buffer plus a JSON manifest of the node tree. This is the cache artifact
  format and round-trips exactly.
- Interchange meshes (``.glb``, ``.gltf``, ``.obj``, ``.ply``, ``.stl``,
  ``.off``) read through trimesh; ``.glb`` can also be written. glTF keeps
  roughness and metallic in one 8-bit texture, so those channels are packed
  on export and split again on load.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
import trimesh
from PIL import Image

from asset_reducer.errors import AssetLoadError, AssetWriteError
from asset_reducer.models import (
    Asset,
    ChannelType,
    Material,
    MeshPart,
    Model,
    Node,
    Texture,
)

logger = logging.getLogger(__name__)

ARCHIVE_EXT = ".lodz"
ARCHIVE_FORMAT = "asset-reducer"
ARCHIVE_VERSION = 1

MESH_EXTENSIONS = {".glb", ".gltf", ".obj", ".ply", ".stl", ".off"}
WRITE_EXTENSIONS = {ARCHIVE_EXT, ".glb"}

# trimesh PBRMaterial attribute -> channel
_PBR_TEXTURES = {
    "baseColorTexture": ChannelType.BASE_COLOR,
    "normalTexture": ChannelType.NORMAL,
    "emissiveTexture": ChannelType.EMISSIVE,
    "occlusionTexture": ChannelType.AMBIENT_OCCLUSION,
}
# glTF packs roughness in G and metallic in B of one texture
_METALLIC_ROUGHNESS = "metallicRoughnessTexture"
_PACKED_PLANES = {ChannelType.ROUGHNESS: 1, ChannelType.METALLIC: 2}
_PBR_FACTORS = ("baseColorFactor", "metallicFactor", "roughnessFactor", "emissiveFactor", "alphaMode")


def _atomic_write(path: Path, write) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            write(handle)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


# =============================================================================
# Archive encoding
# =============================================================================


class _ArchiveWriter:
    def __init__(self) -> None:
        self.arrays: dict[str, np.ndarray] = {}

    def add(self, array: Optional[np.ndarray]) -> Optional[str]:
        if array is None:
            return None
        key = f"a{len(self.arrays)}"
        self.arrays[key] = np.ascontiguousarray(array)
        return key

    def node(self, node: Node) -> dict[str, Any]:
        return {
            "name": node.name,
            "transform": node.transform.ravel().tolist(),
            "model": None if node.model is None else self.model(node.model),
            "children": [self.node(child) for child in node.children],
        }

    def model(self, model: Model) -> dict[str, Any]:
        return {
            "parts": [
                {
                    "name": part.name,
                    "material_index": part.material_index,
                    "positions": self.add(part.positions),
                    "indices": self.add(part.indices),
                    "normals": self.add(part.normals),
                    "tex_coords": self.add(part.tex_coords),
                }
                for part in model.parts
            ],
            "materials": [
                {
                    "name": material.name,
                    "factors": material.factors,
                    "textures": {
                        channel.value: {
                            "pixels": self.add(texture.pixels),
                            "semantic": texture.semantic.value,
                            "name": texture.name,
                        }
                        for channel, texture in material.textures.items()
                    },
                }
                for material in model.materials
            ],
        }


class _ArchiveReader:
    def __init__(self, arrays) -> None:
        self.arrays = arrays

    def get(self, key: Optional[str]) -> Optional[np.ndarray]:
        return None if key is None else self.arrays[key]

    def node(self, data: dict[str, Any]) -> Node:
        return Node(
            name=data["name"],
            transform=np.asarray(data["transform"], dtype=np.float64).reshape(4, 4),
            model=None if data["model"] is None else self.model(data["model"]),
            children=[self.node(child) for child in data["children"]],
        )

    def model(self, data: dict[str, Any]) -> Model:
        parts = [
            MeshPart(
                positions=self.get(part["positions"]),
                indices=self.get(part["indices"]),
                normals=self.get(part["normals"]),
                tex_coords=self.get(part["tex_coords"]),
                material_index=part["material_index"],
                name=part["name"],
            )
            for part in data["parts"]
        ]
        materials = [
            Material(
                name=material["name"],
                factors=material["factors"],
                textures={
                    ChannelType(channel): Texture(
                        self.get(texture["pixels"]),
                        semantic=texture["semantic"],
                        name=texture["name"],
                    )
                    for channel, texture in material["textures"].items()
                },
            )
            for material in data["materials"]
        ]
        return Model(parts=parts, materials=materials)


# =============================================================================
# trimesh conversion
# =============================================================================


def _material_from_visual(visual: Any) -> Material:
    material = getattr(visual, "material", None)
    if material is None:
        return Material()

    if isinstance(material, trimesh.visual.material.SimpleMaterial):
        material = material.to_pbr()

    textures = {}
    for attr, channel in _PBR_TEXTURES.items():
        image = getattr(material, attr, None)
        if image is not None:
            textures[channel] = Texture(np.asarray(image), semantic=channel.semantic, name=attr)

    packed = getattr(material, _METALLIC_ROUGHNESS, None)
    if packed is not None:
        pixels = np.asarray(packed)
        if pixels.ndim == 2:
            textures[ChannelType.ROUGHNESS] = Texture(pixels, semantic="raw", name=_METALLIC_ROUGHNESS)
        else:
            for channel, plane in _PACKED_PLANES.items():
                plane = min(plane, pixels.shape[2] - 1)
                textures[channel] = Texture(
                    np.ascontiguousarray(pixels[:, :, plane]), semantic="raw", name=_METALLIC_ROUGHNESS,
                )

    factors = {}
    for attr in _PBR_FACTORS:
        value = getattr(material, attr, None)
        if value is not None:
            factors[attr] = value.tolist() if isinstance(value, (np.ndarray, np.generic)) else value
    return Material(name=getattr(material, "name", None) or "", textures=textures, factors=factors)


def _part_from_trimesh(mesh: trimesh.Trimesh, name: str) -> MeshPart:
    uv = getattr(mesh.visual, "uv", None)
    if uv is not None and len(uv) != len(mesh.vertices):
        uv = None
    return MeshPart(
        positions=np.asarray(mesh.vertices),
        indices=np.asarray(mesh.faces).ravel(),
        normals=np.asarray(mesh.vertex_normals),
        tex_coords=None if uv is None else np.asarray(uv),
        name=name,
    )


def asset_from_scene(scene: trimesh.Scene, name: str, source_path: Optional[Path] = None) -> Asset:
    """Flatten a trimesh scene into one child node per geometry instance."""
    root = Node(name=name)
    for node_name in sorted(scene.graph.nodes_geometry):
        transform, geometry_name = scene.graph.get(node_name)
        geometry = scene.geometry.get(geometry_name)
        if not isinstance(geometry, trimesh.Trimesh):
            continue
        model = Model(
            parts=[_part_from_trimesh(geometry, geometry_name)],
            materials=[_material_from_visual(geometry.visual)],
        )
        root.children.append(Node(name=node_name, transform=transform, model=model))
    return Asset(name=name, root=root, source_path=source_path)


def _to_uint8(pixels: np.ndarray) -> Optional[np.ndarray]:
    """Rescale float (0..1) or wider integer pixels to 8 bits."""
    if pixels.dtype == np.uint8:
        return pixels
    if np.issubdtype(pixels.dtype, np.floating):
        return (np.clip(pixels, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)
    if np.issubdtype(pixels.dtype, np.integer):
        top = float(np.iinfo(pixels.dtype).max)
        return (np.clip(pixels, 0, None) / top * 255.0 + 0.5).astype(np.uint8)
    return None


def _pil_image(texture: Texture) -> Optional[Image.Image]:
    if texture.channels not in (1, 3, 4):
        return None
    pixels = _to_uint8(texture.pixels)
    if pixels is None:
        return None
    if pixels.ndim == 3 and texture.channels == 1:
        pixels = pixels[:, :, 0]
    return Image.fromarray(np.ascontiguousarray(pixels))


def _packed_plane(texture: Texture, plane: int, size: tuple[int, int]) -> Optional[np.ndarray]:
    pixels = texture.pixels
    if pixels.ndim == 3:
        pixels = pixels[:, :, plane] if texture.channels >= 3 else pixels[:, :, 0]
    pixels = _to_uint8(pixels)
    if pixels is None:
        return None
    if pixels.shape != size:
        image = Image.fromarray(np.ascontiguousarray(pixels)).resize((size[1], size[0]), Image.Resampling.LANCZOS)
        pixels = np.asarray(image)
    return pixels


def _metallic_roughness_image(material: Material) -> Optional[Image.Image]:
    """Pack roughness (G) and metallic (B) into one glTF texture.

    A missing plane is filled with 255 so its factor applies unchanged.
    """
    sources = {c: material.textures[c] for c in _PACKED_PLANES if c in material.textures}
    if not sources:
        return None
    reference = sources.get(ChannelType.ROUGHNESS) or sources[ChannelType.METALLIC]
    size = (reference.height, reference.width)

    packed = np.full(size + (3,), 255, dtype=np.uint8)
    packed[:, :, 0] = 0
    for channel, texture in sources.items():
        plane = _packed_plane(texture, _PACKED_PLANES[channel], size)
        if plane is None:
            logger.warning("Dropping %s texture with unsupported format on export", channel.value)
            continue
        packed[:, :, _PACKED_PLANES[channel]] = plane
    return Image.fromarray(packed)


def scene_from_asset(asset: Asset) -> trimesh.Scene:
    """Build a trimesh scene with world transforms baked per node."""
    scene = trimesh.Scene()

    def visit(node: Node, parent: np.ndarray) -> None:
        world = parent @ node.transform
        if node.model is not None:
            for i, part in enumerate(node.model.parts):
                if not part.has_triangles:
                    continue
                mesh = trimesh.Trimesh(
                    vertices=part.positions,
                    faces=part.indices.reshape(-1, 3),
                    vertex_normals=part.normals,
                    process=False,
                )
                materials = node.model.materials
                if part.tex_coords is not None and 0 <= part.material_index < len(materials):
                    material = materials[part.material_index]
                    kwargs = {}
                    for attr, channel in _PBR_TEXTURES.items():
                        texture = material.textures.get(channel)
                        image = _pil_image(texture) if texture is not None else None
                        if image is not None:
                            kwargs[attr] = image
                        elif texture is not None:
                            logger.warning("Dropping %s texture with unsupported format on export", channel.value)
                    packed = _metallic_roughness_image(material)
                    if packed is not None:
                        kwargs[_METALLIC_ROUGHNESS] = packed
                    for attr in _PBR_FACTORS:
                        if attr in material.factors:
                            kwargs[attr] = material.factors[attr]
                    mesh.visual = trimesh.visual.TextureVisuals(
                        uv=part.tex_coords,
                        material=trimesh.visual.material.PBRMaterial(name=material.name or None, **kwargs),
                    )
                scene.add_geometry(
                    mesh,
                    geom_name=f"{node.name}_{part.name or i}",
                    node_name=f"{node.name}_{i}",
                    transform=world,
                )
        for child in node.children:
            visit(child, world)

    visit(asset.root, np.eye(4))
    return scene


# =============================================================================
# Store
# =============================================================================


class AssetStore:
    """Reads and writes assets by file extension.

    Example:
        store = AssetStore()
        asset = store.load("chair.glb")
        store.write(asset, "cache/chair_standard.lodz")
    """

    def can_load(self, path: Union[str, Path]) -> bool:
        suffix = Path(path).suffix.lower()
        return suffix == ARCHIVE_EXT or suffix in MESH_EXTENSIONS

    def load(self, path: Union[str, Path]) -> Asset:
        """Load an asset; any failure raises :class:`AssetLoadError`."""
        path = Path(path)
        if not path.is_file():
            raise AssetLoadError(path, "file not found")

        suffix = path.suffix.lower()
        if suffix == ARCHIVE_EXT:
            return self._load_archive(path)
        if suffix in MESH_EXTENSIONS:
            return self._load_mesh(path)
        raise AssetLoadError(path, f"unsupported format {suffix or '(none)'}")

    def write(self, asset: Asset, path: Union[str, Path]) -> Path:
        """Write an asset atomically; any failure raises :class:`AssetWriteError`."""
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix not in WRITE_EXTENSIONS:
            raise AssetWriteError(path, f"unsupported format {suffix or '(none)'}")

        try:
            if suffix == ARCHIVE_EXT:
                self._write_archive(asset, path)
            else:
                data = scene_from_asset(asset).export(file_type="glb")
                _atomic_write(path, lambda handle: handle.write(data))
        except OSError as e:
            raise AssetWriteError(path, str(e), cause=e) from e
        except (ValueError, TypeError) as e:
            raise AssetWriteError(path, f"could not encode asset: {e}", cause=e) from e

        if not verify_file_saved(path):
            raise AssetWriteError(path, "file missing or empty after write")
        return path

    def _write_archive(self, asset: Asset, path: Path) -> None:
        writer = _ArchiveWriter()
        manifest = {
            "format": ARCHIVE_FORMAT,
            "version": ARCHIVE_VERSION,
            "name": asset.name,
            "source_path": str(asset.source_path) if asset.source_path else None,
            "root": writer.node(asset.root),
        }
        encoded = np.frombuffer(json.dumps(manifest).encode("utf-8"), dtype=np.uint8)
        _atomic_write(path, lambda handle: np.savez_compressed(handle, manifest=encoded, **writer.arrays))

    def _load_archive(self, path: Path) -> Asset:
        try:
            with np.load(path, allow_pickle=False) as archive:
                manifest = json.loads(archive["manifest"].tobytes().decode("utf-8"))
                if manifest.get("format") != ARCHIVE_FORMAT:
                    raise AssetLoadError(path, "not an asset-reducer archive")
                if manifest.get("version", 0) > ARCHIVE_VERSION:
                    raise AssetLoadError(path, f"unsupported archive version {manifest['version']}")
                arrays = {key: archive[key] for key in archive.files if key != "manifest"}
        except AssetLoadError:
            raise
        except (OSError, ValueError, KeyError, zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise AssetLoadError(path, f"corrupt archive: {e}", cause=e) from e

        try:
            root = _ArchiveReader(arrays).node(manifest["root"])
        except (KeyError, TypeError, ValueError) as e:
            raise AssetLoadError(path, f"corrupt archive: {e}", cause=e) from e

        source = manifest.get("source_path")
        return Asset(name=manifest.get("name") or path.stem, root=root, source_path=Path(source) if source else None)

    def _load_mesh(self, path: Path) -> Asset:
        try:
            scene = trimesh.load(str(path), force="scene", process=False)
        except Exception as e:
            raise AssetLoadError(path, str(e) or e.__class__.__name__, cause=e) from e

        asset = asset_from_scene(scene, path.stem, source_path=path)
        if not asset.root.children:
            raise AssetLoadError(path, "no triangle geometry found")
        return asset


def verify_file_saved(path: Union[str, Path]) -> bool:
    """True when ``path`` exists and is non-empty."""
    path = Path(path)
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False

