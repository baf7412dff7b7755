"""Data models for asset-reducer."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import total_ordering
from pathlib import Path
from typing import Any, Iterator, Optional

import numpy as np

from asset_reducer.errors import InvalidParameter, MissingRequiredParameter


# =============================================================================
# Options
# =============================================================================


@dataclass(frozen=True)
class SimplificationOptions:
    """Parameters for one simplification run.

    Defaults match the Standard preset; ``target_ratio`` has none.
    """

    target_ratio: float
    error_threshold: float = 0.01
    min_face_count: int = 200
    use_sloppy: bool = False
    lock_border: bool = True
    attribute_weight: float = 0.5
    ignore_attributes: bool = False
    enable_prune: bool = False

    def __post_init__(self) -> None:
        _check_unit("target_ratio", self.target_ratio)
        _check_unit("attribute_weight", self.attribute_weight)
        if not _is_number(self.error_threshold) or not math.isfinite(self.error_threshold) \
                or self.error_threshold < 0:
            raise InvalidParameter("error_threshold", self.error_threshold, "a finite number >= 0")
        if isinstance(self.min_face_count, bool) or not isinstance(self.min_face_count, int) \
                or self.min_face_count < 0:
            raise InvalidParameter("min_face_count", self.min_face_count, "an integer >= 0")

    def with_changes(self, **changes: Any) -> "SimplificationOptions":
        """Return a copy with some fields replaced (validated again)."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_ratio": self.target_ratio,
            "error_threshold": self.error_threshold,
            "min_face_count": self.min_face_count,
            "use_sloppy": self.use_sloppy,
            "lock_border": self.lock_border,
            "attribute_weight": self.attribute_weight,
            "ignore_attributes": self.ignore_attributes,
            "enable_prune": self.enable_prune,
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_unit(name: str, value: Any) -> None:
    if not _is_number(value) or not (0.0 <= value <= 1.0):
        raise InvalidParameter(name, value, "a number in [0, 1]")


ORIGINAL_OPTIONS = SimplificationOptions(
    target_ratio=1.0,
    error_threshold=0.0,
    min_face_count=0,
    use_sloppy=False,
    lock_border=True,
    attribute_weight=1.0,
    ignore_attributes=False,
    enable_prune=False,
)

STANDARD_OPTIONS = SimplificationOptions(
    target_ratio=0.3,
    error_threshold=0.01,
    min_face_count=200,
    use_sloppy=False,
    lock_border=True,
    attribute_weight=0.5,
    ignore_attributes=False,
    enable_prune=False,
)

MINIMAL_OPTIONS = SimplificationOptions(
    target_ratio=0.05,
    error_threshold=0.3,
    min_face_count=100,
    use_sloppy=True,
    lock_border=False,
    attribute_weight=0.0,
    ignore_attributes=True,
    enable_prune=True,
)


class QualityKind(str, Enum):
    ORIGINAL = "original"
    STANDARD = "standard"
    MINIMAL = "minimal"
    CUSTOM = "custom"


_PRESET_OPTIONS = {
    QualityKind.ORIGINAL: ORIGINAL_OPTIONS,
    QualityKind.STANDARD: STANDARD_OPTIONS,
    QualityKind.MINIMAL: MINIMAL_OPTIONS,
}

_DESCRIPTIONS = {
    QualityKind.ORIGINAL: "Original quality (100% detail)",
    QualityKind.STANDARD: "Balanced quality (30% detail)",
    QualityKind.MINIMAL: "Minimal quality (5% detail, maximum performance)",
}


@total_ordering
@dataclass(frozen=True, eq=False)
class QualityLevel:
    """A preset quality level or a custom one carrying its own options.

    Two levels compare equal when their resolved target ratios are equal,
    so ``QualityLevel.standard() == QualityLevel.custom(target_ratio=0.3)``.
    """

    kind: QualityKind
    custom_options: Optional[SimplificationOptions] = None

    def __post_init__(self) -> None:
        kind = QualityKind(self.kind)
        object.__setattr__(self, "kind", kind)
        if kind is QualityKind.CUSTOM and self.custom_options is None:
            raise MissingRequiredParameter("custom_options")
        if kind is not QualityKind.CUSTOM and self.custom_options is not None:
            raise InvalidParameter("custom_options", self.custom_options, "None for preset levels")

    @classmethod
    def original(cls) -> "QualityLevel":
        return cls(QualityKind.ORIGINAL)

    @classmethod
    def standard(cls) -> "QualityLevel":
        return cls(QualityKind.STANDARD)

    @classmethod
    def minimal(cls) -> "QualityLevel":
        return cls(QualityKind.MINIMAL)

    @classmethod
    def custom(cls, target_ratio: Optional[float] = None, **overrides: Any) -> "QualityLevel":
        """Build a custom level; omitted fields fall back to the Standard preset."""
        if target_ratio is None:
            raise MissingRequiredParameter("target_ratio")
        options = STANDARD_OPTIONS.with_changes(target_ratio=target_ratio, **overrides)
        return cls(QualityKind.CUSTOM, options)

    @classmethod
    def preset(cls, name: str) -> "QualityLevel":
        """Look up a preset by name (``original``, ``standard``, ``minimal``)."""
        try:
            kind = QualityKind(name.strip().lower())
        except ValueError:
            raise InvalidParameter("preset", name, "one of original, standard, minimal") from None
        if kind is QualityKind.CUSTOM:
            raise MissingRequiredParameter("target_ratio")
        return cls(kind)

    @property
    def options(self) -> SimplificationOptions:
        if self.kind is QualityKind.CUSTOM:
            return self.custom_options
        return _PRESET_OPTIONS[self.kind]

    @property
    def target_ratio(self) -> float:
        return self.options.target_ratio

    @property
    def is_custom(self) -> bool:
        return self.kind is QualityKind.CUSTOM

    @property
    def suffix(self) -> str:
        """Deterministic cache-key suffix."""
        if self.kind is QualityKind.CUSTOM:
            return f"custom_{int(round(self.target_ratio * 100))}"
        return self.kind.value

    @property
    def display_name(self) -> str:
        if self.kind is QualityKind.CUSTOM:
            return f"Custom ({self.target_ratio:.0%})"
        return self.kind.value.capitalize()

    @property
    def description(self) -> str:
        if self.kind is QualityKind.CUSTOM:
            return f"Custom quality ({self.target_ratio:.0%} detail)"
        return _DESCRIPTIONS[self.kind]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QualityLevel):
            return NotImplemented
        return self.target_ratio == other.target_ratio

    def __lt__(self, other: "QualityLevel") -> bool:
        if not isinstance(other, QualityLevel):
            return NotImplemented
        return self.target_ratio < other.target_ratio

    def __hash__(self) -> int:
        return hash(self.target_ratio)

    def __repr__(self) -> str:
        if self.kind is QualityKind.CUSTOM:
            return f"QualityLevel.custom(target_ratio={self.target_ratio})"
        return f"QualityLevel.{self.kind.value}()"


ORIGINAL = QualityLevel.original()
STANDARD = QualityLevel.standard()
MINIMAL = QualityLevel.minimal()


# =============================================================================
# Geometry
# =============================================================================


@dataclass
class MeshPart:
    """One drawable primitive: a triangle list over a vertex buffer."""

    positions: np.ndarray
    indices: Optional[np.ndarray]
    normals: Optional[np.ndarray] = None
    tex_coords: Optional[np.ndarray] = None
    material_index: int = 0
    name: str = ""

    def __post_init__(self) -> None:
        self.positions = np.ascontiguousarray(self.positions, dtype=np.float32).reshape(-1, 3)
        if self.indices is not None:
            self.indices = np.ascontiguousarray(self.indices, dtype=np.uint32).ravel()
        count = len(self.positions)
        if self.normals is not None:
            self.normals = np.ascontiguousarray(self.normals, dtype=np.float32).reshape(-1, 3)
            if len(self.normals) != count:
                raise InvalidParameter("normals", len(self.normals), f"{count} entries")
        if self.tex_coords is not None:
            self.tex_coords = np.ascontiguousarray(self.tex_coords, dtype=np.float32).reshape(-1, 2)
            if len(self.tex_coords) != count:
                raise InvalidParameter("tex_coords", len(self.tex_coords), f"{count} entries")

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def index_count(self) -> int:
        return 0 if self.indices is None else len(self.indices)

    @property
    def triangle_count(self) -> int:
        return self.index_count // 3

    @property
    def has_triangles(self) -> bool:
        """True when the part carries a non-empty triangle-list index buffer."""
        return self.index_count > 0 and self.index_count % 3 == 0

    def copy(self) -> "MeshPart":
        return MeshPart(
            positions=self.positions.copy(),
            indices=None if self.indices is None else self.indices.copy(),
            normals=None if self.normals is None else self.normals.copy(),
            tex_coords=None if self.tex_coords is None else self.tex_coords.copy(),
            material_index=self.material_index,
            name=self.name,
        )


# =============================================================================
# Materials
# =============================================================================


class TextureSemantic(str, Enum):
    COLOR = "color"
    NORMAL = "normal"
    RAW = "raw"


class ChannelType(str, Enum):
    """Material texture channels, each with a downsampling bias."""

    BASE_COLOR = "base_color"
    NORMAL = "normal"
    METALLIC = "metallic"
    ROUGHNESS = "roughness"
    AMBIENT_OCCLUSION = "ambient_occlusion"
    EMISSIVE = "emissive"
    SPECULAR = "specular"
    OPACITY = "opacity"
    CLEARCOAT = "clearcoat"
    CLEARCOAT_ROUGHNESS = "clearcoat_roughness"
    CLEARCOAT_NORMAL = "clearcoat_normal"
    ANISOTROPY_LEVEL = "anisotropy_level"
    ANISOTROPY_ANGLE = "anisotropy_angle"
    SHEEN_COLOR = "sheen_color"

    @property
    def multiplier(self) -> float:
        return CHANNEL_MULTIPLIERS[self]

    @property
    def semantic(self) -> TextureSemantic:
        if self in (ChannelType.BASE_COLOR, ChannelType.EMISSIVE):
            return TextureSemantic.COLOR
        if self is ChannelType.NORMAL:
            return TextureSemantic.NORMAL
        return TextureSemantic.RAW


CHANNEL_MULTIPLIERS = {
    ChannelType.BASE_COLOR: 1.0,
    ChannelType.NORMAL: 0.9,
    ChannelType.METALLIC: 0.8,
    ChannelType.ROUGHNESS: 0.8,
    ChannelType.AMBIENT_OCCLUSION: 0.7,
    ChannelType.EMISSIVE: 0.9,
    ChannelType.SPECULAR: 0.8,
    ChannelType.OPACITY: 0.9,
    ChannelType.CLEARCOAT: 0.8,
    ChannelType.CLEARCOAT_ROUGHNESS: 0.7,
    ChannelType.CLEARCOAT_NORMAL: 0.9,
    ChannelType.ANISOTROPY_LEVEL: 0.7,
    ChannelType.ANISOTROPY_ANGLE: 0.7,
    ChannelType.SHEEN_COLOR: 0.8,
}


@dataclass
class Texture:
    """CPU-side texture: ``pixels`` is ``(H, W)`` or ``(H, W, C)``."""

    pixels: np.ndarray
    semantic: TextureSemantic = TextureSemantic.COLOR
    name: str = ""

    def __post_init__(self) -> None:
        self.pixels = np.asarray(self.pixels)
        if self.pixels.ndim not in (2, 3) or self.pixels.shape[0] == 0 or self.pixels.shape[1] == 0:
            raise InvalidParameter("pixels", self.pixels.shape, "a non-empty (H, W) or (H, W, C) array")
        self.semantic = TextureSemantic(self.semantic)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    @property
    def max_dimension(self) -> int:
        return max(self.width, self.height)

    def copy(self) -> "Texture":
        return Texture(self.pixels.copy(), self.semantic, self.name)


@dataclass
class Material:
    name: str = ""
    textures: dict[ChannelType, Texture] = field(default_factory=dict)
    factors: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "Material":
        return Material(
            name=self.name,
            textures={channel: tex.copy() for channel, tex in self.textures.items()},
            factors=dict(self.factors),
        )


# =============================================================================
# Scene graph
# =============================================================================


@dataclass
class Model:
    """Geometry attached to a node: mesh parts plus the materials they index."""

    parts: list[MeshPart] = field(default_factory=list)
    materials: list[Material] = field(default_factory=list)

    def copy(self) -> "Model":
        return Model(
            parts=[part.copy() for part in self.parts],
            materials=[material.copy() for material in self.materials],
        )


@dataclass
class Node:
    name: str = "root"
    transform: np.ndarray = field(default_factory=lambda: np.eye(4))
    model: Optional[Model] = None
    children: list["Node"] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.transform = np.asarray(self.transform, dtype=np.float64).reshape(4, 4)

    def walk(self) -> Iterator["Node"]:
        """Depth-first iteration, parent before children."""
        yield self
        for child in self.children:
            yield from child.walk()

    def copy(self) -> "Node":
        return Node(
            name=self.name,
            transform=self.transform.copy(),
            model=None if self.model is None else self.model.copy(),
            children=[child.copy() for child in self.children],
        )


@dataclass
class Asset:
    """A loaded asset: a node tree plus where it came from."""

    name: str
    root: Node = field(default_factory=Node)
    source_path: Optional[Path] = None

    def clone(self) -> "Asset":
        """Deep structural copy; no buffer is shared with the original."""
        return Asset(name=self.name, root=self.root.copy(), source_path=self.source_path)

    def nodes(self) -> Iterator[Node]:
        return self.root.walk()

    def parts(self) -> Iterator[MeshPart]:
        for node in self.nodes():
            if node.model is not None:
                yield from node.model.parts

    def materials(self) -> Iterator[Material]:
        for node in self.nodes():
            if node.model is not None:
                yield from node.model.materials

    @property
    def triangle_count(self) -> int:
        return sum(part.triangle_count for part in self.parts())

    @property
    def vertex_count(self) -> int:
        return sum(part.vertex_count for part in self.parts())


# =============================================================================
# Reports
# =============================================================================


@dataclass
class TextureReport:
    optimized: int = 0
    skipped: int = 0
    failed: int = 0

    def __add__(self, other: "TextureReport") -> "TextureReport":
        return TextureReport(
            optimized=self.optimized + other.optimized,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
        )


@dataclass
class ProcessReport:
    """Per-subtree processing summary, composed bottom-up with ``+``."""

    processed_count: int = 0
    simplified_count: int = 0
    failures: list[str] = field(default_factory=list)
    textures: TextureReport = field(default_factory=TextureReport)
    original_triangles: int = 0
    final_triangles: int = 0

    def __add__(self, other: "ProcessReport") -> "ProcessReport":
        return ProcessReport(
            processed_count=self.processed_count + other.processed_count,
            simplified_count=self.simplified_count + other.simplified_count,
            failures=self.failures + other.failures,
            textures=self.textures + other.textures,
            original_triangles=self.original_triangles + other.original_triangles,
            final_triangles=self.final_triangles + other.final_triangles,
        )

    @property
    def reduction_ratio(self) -> float:
        """Actual triangle ratio achieved."""
        if self.original_triangles == 0:
            return 1.0
        return self.final_triangles / self.original_triangles


@dataclass
class ProcessedAsset:
    asset: Asset
    report: ProcessReport
    quality: Optional[QualityLevel] = None
    from_cache: bool = False


@dataclass
class AssetAnalysis:
    """Statistics for an asset."""

    # Counts
    triangle_count: int
    vertex_count: int
    part_count: int
    node_count: int
    material_count: int
    texture_count: int

    # Attributes
    has_normals: bool = False
    has_uvs: bool = False
    boundary_edge_count: int = 0

    # Bounds
    bounds_min: tuple[float, float, float] = (0.0, 0.0, 0.0)
    bounds_max: tuple[float, float, float] = (0.0, 0.0, 0.0)

    # "1024x1024x4 uint8" -> count
    texture_formats: dict[str, int] = field(default_factory=dict)

    # Suggestions
    suggested_levels: list[tuple[QualityLevel, int]] = field(default_factory=list)

    @property
    def bounds_size(self) -> tuple[float, float, float]:
        return (
            self.bounds_max[0] - self.bounds_min[0],
            self.bounds_max[1] - self.bounds_min[1],
            self.bounds_max[2] - self.bounds_min[2],
        )

    def compute_suggestions(self) -> None:
        """Estimate the triangle budget of each preset level."""
        self.suggested_levels = []
        for level in (ORIGINAL, STANDARD, MINIMAL):
            options = level.options
            target = int(self.triangle_count * options.target_ratio)
            if level.target_ratio < 1.0 and self.part_count:
                target = max(target, min(self.triangle_count, options.min_face_count))
            self.suggested_levels.append((level, target))


class UnitStatus(str, Enum):
    PROCESSED = "processed"
    CACHED = "cached"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


@dataclass
class UnitResult:
    """Outcome of one (source, quality level) unit of work."""

    source: Path
    quality: QualityLevel
    path: Optional[Path]
    status: UnitStatus
    triangle_count: int = 0
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (UnitStatus.PROCESSED, UnitStatus.CACHED)


@dataclass
class BatchResult:
    """Counts are per source asset; ``units`` holds per-quality detail."""

    success_count: int = 0
    failure_count: int = 0
    total_count: int = 0
    units: list[UnitResult] = field(default_factory=list)

    @property
    def failed_units(self) -> list[UnitResult]:
        return [unit for unit in self.units if not unit.success]

    @property
    def artifacts(self) -> list[Path]:
        return [unit.path for unit in self.units if unit.success and unit.path is not None]

    def summary(self) -> dict[str, int]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total_count": self.total_count,
        }
