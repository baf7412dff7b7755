"""Per-part geometry simplification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from asset_reducer import meshopt
from asset_reducer.errors import SimplificationError
from asset_reducer.models import MeshPart, SimplificationOptions

logger = logging.getLogger(__name__)

ACMR_THRESHOLD = 1.5
OVERDRAW_THRESHOLD = 1.5
OVERDRAW_CACHE_TOLERANCE = 1.05
MIN_FACE_MULTIPLIER = 1.5
VERTEX_CACHE_SIZE = 32


@dataclass
class SimplifyStats:
    """What happened to one mesh part."""
    original_indices: int
    final_indices: int
    original_vertices: int
    final_vertices: int
    algorithm: str = "none"
    acmr_before: float = 0.0
    acmr_after: float = 0.0
    overdraw_before: float = 0.0
    overdraw_after: float = 0.0
    skipped_reason: Optional[str] = None

    @property
    def simplified(self) -> bool:
        return self.skipped_reason is None


def compute_target_index_count(index_count: int, options: SimplificationOptions) -> Optional[int]:
    """Apply ratio, rounding and minimum-face protection.

    Returns ``None`` when the part should be left unchanged.
    """
    raw_target = int(index_count * options.target_ratio)
    target = max(3, (raw_target // 3) * 3)

    original_faces = index_count // 3
    target_faces = target // 3
    if target_faces <= options.min_face_count:
        if original_faces > options.min_face_count * MIN_FACE_MULTIPLIER:
            target = max(3, options.min_face_count * 3)
        else:
            return None

    if target >= index_count:
        return None
    return target


class GeometrySimplifier:
    """Decimates mesh parts and optimizes the resulting buffer layout.

    Example:
        simplifier = GeometrySimplifier()
        reduced = simplifier.simplify(part, STANDARD_OPTIONS)
    """

    def __init__(self, deduplicate_vertices: bool = False) -> None:
        """Initialize simplifier.

        Args:
            deduplicate_vertices: Merge bit-identical vertices before decimation
        """
        self.deduplicate_vertices = deduplicate_vertices

    def simplify(self, part: MeshPart, options: SimplificationOptions) -> MeshPart:
        """Return a simplified copy of ``part``; the input is never modified."""
        result, _ = self.simplify_with_stats(part, options)
        return result

    def simplify_with_stats(
        self,
        part: MeshPart,
        options: SimplificationOptions,
    ) -> tuple[MeshPart, SimplifyStats]:
        stats = SimplifyStats(
            original_indices=part.index_count,
            final_indices=part.index_count,
            original_vertices=part.vertex_count,
            final_vertices=part.vertex_count,
        )

        if not part.has_triangles:
            stats.skipped_reason = "no triangle list"
            return part, stats

        if int(part.indices.max()) >= part.vertex_count:
            raise SimplificationError(
                f"Index {int(part.indices.max())} out of range for {part.vertex_count} vertices"
            )

        target = compute_target_index_count(part.index_count, options)
        if target is None:
            stats.skipped_reason = "at or below minimum face count"
            return part, stats

        positions = part.positions
        normals = part.normals
        tex_coords = part.tex_coords
        indices = part.indices

        if self.deduplicate_vertices:
            unique_count, remap = meshopt.generate_vertex_remap(indices, [positions, normals, tex_coords])
            if unique_count < part.vertex_count:
                indices, (positions, normals, tex_coords) = meshopt.remap_buffers(
                    indices, [positions, normals, tex_coords], remap, unique_count,
                )
                logger.debug("Merged %d duplicate vertices", part.vertex_count - unique_count)

        try:
            if options.use_sloppy:
                stats.algorithm = "sloppy"
                new_indices = meshopt.simplify_sloppy(positions, indices, target, options.error_threshold)
            else:
                flags = 0
                if options.lock_border:
                    flags |= meshopt.SIMPLIFY_LOCK_BORDER
                if options.enable_prune:
                    flags |= meshopt.SIMPLIFY_PRUNE
                if options.ignore_attributes or normals is None or not meshopt.HAS_ATTRIBUTE_SIMPLIFY:
                    stats.algorithm = "position"
                    new_indices = meshopt.simplify(positions, indices, target, options.error_threshold, flags)
                else:
                    stats.algorithm = "attribute"
                    weight = options.attribute_weight
                    new_indices = meshopt.simplify(
                        positions, indices, target, options.error_threshold, flags,
                        attributes=normals,
                        attribute_weights=[weight, weight, weight],
                    )
        except (ValueError, TypeError, IndexError) as e:
            raise SimplificationError(f"Decimation failed: {e}", cause=e) from e

        if len(new_indices) == 0:
            stats.skipped_reason = "decimation produced no triangles"
            return part, stats

        vertex_count = len(positions)

        cache = meshopt.analyze_vertex_cache(new_indices, vertex_count, VERTEX_CACHE_SIZE)
        stats.acmr_before = cache.acmr
        if cache.acmr > ACMR_THRESHOLD:
            new_indices = meshopt.optimize_vertex_cache(new_indices, vertex_count)

        overdraw = meshopt.analyze_overdraw(new_indices, positions)
        stats.overdraw_before = overdraw.overdraw
        stats.overdraw_after = overdraw.overdraw
        if overdraw.overdraw > OVERDRAW_THRESHOLD:
            new_indices = meshopt.optimize_overdraw(new_indices, positions, OVERDRAW_CACHE_TOLERANCE)
            stats.overdraw_after = meshopt.analyze_overdraw(new_indices, positions).overdraw

        new_indices, (positions, normals, tex_coords) = meshopt.optimize_vertex_fetch(
            new_indices, [positions, normals, tex_coords],
        )
        stats.acmr_after = meshopt.analyze_vertex_cache(new_indices, len(positions), VERTEX_CACHE_SIZE).acmr

        simplified = MeshPart(
            positions=positions,
            indices=new_indices,
            normals=normals,
            tex_coords=tex_coords,
            material_index=part.material_index,
            name=part.name,
        )
        stats.final_indices = simplified.index_count
        stats.final_vertices = simplified.vertex_count
        logger.debug(
            "Simplified %s (%s): %d -> %d triangles, ACMR %.2f -> %.2f",
            part.name or "part", stats.algorithm,
            stats.original_indices // 3, stats.final_indices // 3,
            stats.acmr_before, stats.acmr_after,
        )
        return simplified, stats


def simplify(part: MeshPart, options: SimplificationOptions) -> MeshPart:
    """Simplify a single mesh part.

    Convenience function that creates a GeometrySimplifier instance.
    """
    return GeometrySimplifier().simplify(part, options)
