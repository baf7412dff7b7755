"""Asset-level reduction: walks the node tree and reduces every part."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np

from asset_reducer.models import (
    Asset,
    AssetAnalysis,
    Model,
    Node,
    ProcessedAsset,
    ProcessReport,
    QualityLevel,
    SimplificationOptions,
    TextureReport,
)
from asset_reducer.simplifier import GeometrySimplifier
from asset_reducer.store import AssetStore
from asset_reducer.textures import TextureResampler, skips_textures

logger = logging.getLogger(__name__)

# at or above this ratio an asset is only cloned
FAST_PATH_RATIO = 0.95


def _resolve(quality: Union[QualityLevel, SimplificationOptions]) -> tuple[SimplificationOptions, Optional[QualityLevel]]:
    if isinstance(quality, QualityLevel):
        return quality.options, quality
    return quality, None


class AssetReducer:
    """Reduces whole assets.

    Example:
        reducer = AssetReducer()
        processed = reducer.process(asset, QualityLevel.standard())
        print(processed.report.reduction_ratio)
    """

    def __init__(
        self,
        simplifier: Optional[GeometrySimplifier] = None,
        resampler: Optional[TextureResampler] = None,
        store: Optional[AssetStore] = None,
    ) -> None:
        self.simplifier = simplifier or GeometrySimplifier()
        self.resampler = resampler or TextureResampler()
        self.store = store or AssetStore()

    def process(
        self,
        asset: Asset,
        quality: Union[QualityLevel, SimplificationOptions],
    ) -> ProcessedAsset:
        """Return a reduced deep copy of ``asset``.

        One part failing to simplify keeps that part's original buffers and
        is listed in ``report.failures``; the rest of the asset still runs.
        """
        options, level = _resolve(quality)
        clone = asset.clone()

        if options.target_ratio >= FAST_PATH_RATIO:
            triangles = clone.triangle_count
            report = ProcessReport(
                processed_count=sum(1 for _ in clone.parts()),
                original_triangles=triangles,
                final_triangles=triangles,
            )
            logger.debug("Ratio %.2f: %s cloned without reduction", options.target_ratio, asset.name)
            return ProcessedAsset(clone, report, level)

        with_textures = not skips_textures(options.target_ratio)
        report = self._process_node(clone.root, options, with_textures, clone.name)
        logger.info(
            "Reduced %s: %d -> %d triangles (%d/%d parts simplified, %d failed, textures %d/%d/%d)",
            asset.name,
            report.original_triangles,
            report.final_triangles,
            report.simplified_count,
            report.processed_count,
            len(report.failures),
            report.textures.optimized,
            report.textures.skipped,
            report.textures.failed,
        )
        return ProcessedAsset(clone, report, level)

    def _process_node(
        self,
        node: Node,
        options: SimplificationOptions,
        with_textures: bool,
        path: str,
    ) -> ProcessReport:
        report = ProcessReport()
        for child in node.children:
            report = report + self._process_node(child, options, with_textures, f"{path}/{child.name}")

        if node.model is not None:
            model, model_report = self._process_model(node.model, options, with_textures, path)
            node.model = model
            report = report + model_report
        return report

    def _process_model(
        self,
        model: Model,
        options: SimplificationOptions,
        with_textures: bool,
        path: str,
    ) -> tuple[Model, ProcessReport]:
        report = ProcessReport()

        materials = model.materials
        if with_textures:
            materials = []
            textures = TextureReport()
            for material in model.materials:
                resampled, material_report = self.resampler.resample_material(material, options.target_ratio)
                materials.append(resampled)
                textures = textures + material_report
            report.textures = textures

        parts = []
        for i, part in enumerate(model.parts):
            part_id = f"{path}/{part.name or i}"
            report.processed_count += 1
            report.original_triangles += part.triangle_count
            try:
                reduced, stats = self.simplifier.simplify_with_stats(part, options)
            except Exception as e:
                logger.warning("Keeping original geometry for %s: %s", part_id, e)
                report.failures.append(part_id)
                reduced = part
            else:
                if stats.simplified:
                    report.simplified_count += 1
            report.final_triangles += reduced.triangle_count
            parts.append(reduced)

        return Model(parts=parts, materials=materials), report

    def analyze(self, asset: Asset) -> AssetAnalysis:
        """Collect geometry and texture statistics."""
        parts = list(asset.parts())
        materials = list(asset.materials())

        lo = np.full(3, np.inf)
        hi = np.full(3, -np.inf)
        boundary_edges = 0

        def visit(node: Node, parent: np.ndarray) -> None:
            nonlocal lo, hi, boundary_edges
            world = parent @ node.transform
            if node.model is not None:
                for part in node.model.parts:
                    if part.vertex_count:
                        points = part.positions.astype(np.float64) @ world[:3, :3].T + world[:3, 3]
                        lo = np.minimum(lo, points.min(axis=0))
                        hi = np.maximum(hi, points.max(axis=0))
                    if part.has_triangles:
                        boundary_edges += _count_boundary_edges(part.indices)
            for child in node.children:
                visit(child, world)

        visit(asset.root, np.eye(4))
        if not np.isfinite(lo).all():
            lo = hi = np.zeros(3)

        formats: dict[str, int] = {}
        texture_count = 0
        for material in materials:
            for texture in material.textures.values():
                texture_count += 1
                key = f"{texture.width}x{texture.height}x{texture.channels} {texture.pixels.dtype}"
                formats[key] = formats.get(key, 0) + 1

        analysis = AssetAnalysis(
            triangle_count=sum(part.triangle_count for part in parts),
            vertex_count=sum(part.vertex_count for part in parts),
            part_count=len(parts),
            node_count=sum(1 for _ in asset.nodes()),
            material_count=len(materials),
            texture_count=texture_count,
            has_normals=any(part.normals is not None for part in parts),
            has_uvs=any(part.tex_coords is not None for part in parts),
            boundary_edge_count=boundary_edges,
            bounds_min=tuple(float(x) for x in lo),
            bounds_max=tuple(float(x) for x in hi),
            texture_formats=formats,
        )
        analysis.compute_suggestions()
        return analysis


def _count_boundary_edges(indices: np.ndarray) -> int:
    tris = indices.astype(np.int64).reshape(-1, 3)
    edges = np.sort(tris[:, [0, 1, 1, 2, 2, 0]].reshape(-1, 2), axis=1)
    _, counts = np.unique(edges, axis=0, return_counts=True)
    return int((counts == 1).sum())


# Convenience functions
def reduce(
    source: Union[str, Path],
    quality: Union[QualityLevel, SimplificationOptions],
    output: Optional[Union[str, Path]] = None,
) -> ProcessedAsset:
    """Load, reduce and optionally write an asset.

    Convenience function that creates an AssetReducer instance.
    """
    reducer = AssetReducer()
    processed = reducer.process(reducer.store.load(source), quality)
    if output is not None:
        reducer.store.write(processed.asset, output)
    return processed


def analyze(source: Union[str, Path]) -> AssetAnalysis:
    """Analyze an asset file.

    Convenience function that creates an AssetReducer instance.
    """
    reducer = AssetReducer()
    return reducer.analyze(reducer.store.load(source))
