"""Tests for asset-level reduction."""

import numpy as np
import pytest

from asset_reducer import reducer as reducer_module
from asset_reducer.errors import SimplificationError
from asset_reducer.models import (
    MINIMAL,
    ORIGINAL,
    STANDARD,
    ChannelType,
    Node,
    QualityLevel,
    SimplificationOptions,
)
from asset_reducer.reducer import AssetReducer
from asset_reducer.simplifier import GeometrySimplifier

from conftest import grid_part, make_asset, sphere_part, textured_material


class FailingSimplifier(GeometrySimplifier):
    """Raises for parts with a given name."""

    def __init__(self, bad_name):
        super().__init__()
        self.bad_name = bad_name

    def simplify_with_stats(self, part, options):
        if part.name == self.bad_name:
            raise SimplificationError(f"cannot simplify {part.name}")
        return super().simplify_with_stats(part, options)


class TestProcess:
    def test_standard_reduces_geometry_and_textures(self, dense_asset):
        processed = AssetReducer().process(dense_asset, STANDARD)

        assert processed.quality == STANDARD
        assert 200 <= processed.asset.triangle_count <= 3000
        report = processed.report
        assert report.processed_count == 1
        assert report.simplified_count == 1
        assert report.failures == []
        assert report.original_triangles == 10000
        assert report.final_triangles == processed.asset.triangle_count
        assert report.reduction_ratio < 0.31
        assert report.textures.optimized == 3

        material = next(processed.asset.materials())
        assert material.textures[ChannelType.BASE_COLOR].width == 64

    def test_source_asset_is_untouched(self, dense_asset):
        AssetReducer().process(dense_asset, MINIMAL)
        assert dense_asset.triangle_count == 10000
        assert next(dense_asset.materials()).textures[ChannelType.BASE_COLOR].width == 256

    @pytest.mark.parametrize("quality", [ORIGINAL, QualityLevel.custom(0.95), QualityLevel.custom(0.99)])
    def test_fast_path_clones_without_reduction(self, dense_asset, quality):
        processed = AssetReducer().process(dense_asset, quality)

        assert processed.asset is not dense_asset
        assert processed.asset.triangle_count == dense_asset.triangle_count
        assert processed.report.simplified_count == 0
        assert processed.report.reduction_ratio == 1.0
        part = next(processed.asset.parts())
        assert np.array_equal(part.indices, next(dense_asset.parts()).indices)

    def test_textures_skipped_above_threshold(self, dense_asset):
        processed = AssetReducer().process(dense_asset, QualityLevel.custom(0.92, min_face_count=0))

        assert processed.asset.triangle_count < dense_asset.triangle_count
        assert processed.report.textures.optimized == 0
        assert next(processed.asset.materials()).textures[ChannelType.BASE_COLOR].width == 256

    def test_accepts_bare_options(self, dense_asset):
        options = SimplificationOptions(target_ratio=0.5, min_face_count=0)
        processed = AssetReducer().process(dense_asset, options)
        assert processed.quality is None
        assert processed.asset.triangle_count <= 5000

    def test_failing_part_keeps_original_geometry(self):
        good = grid_part(100, 50, name="good")
        bad = grid_part(40, 20, name="bad")
        asset = make_asset([good, bad])

        processed = AssetReducer(simplifier=FailingSimplifier("bad")).process(asset, STANDARD)

        reduced_good, kept_bad = list(processed.asset.parts())
        assert reduced_good.triangle_count <= 3000
        assert kept_bad.triangle_count == bad.triangle_count
        assert np.array_equal(kept_bad.indices, bad.indices)
        assert processed.report.processed_count == 2
        assert processed.report.simplified_count == 1
        assert processed.report.failures == ["asset/mesh/bad"]

    def test_nested_nodes_are_all_visited(self):
        asset = make_asset([grid_part(100, 50, name="outer")])
        inner = Node(name="inner", model=make_asset([grid_part(100, 50, name="inner")]).root.children[0].model)
        asset.root.children[0].children.append(inner)

        processed = AssetReducer().process(asset, STANDARD)

        assert processed.report.processed_count == 2
        assert all(part.triangle_count <= 3000 for part in processed.asset.parts())


class TestAnalyze:
    def test_counts_and_bounds(self, dense_asset):
        analysis = AssetReducer().analyze(dense_asset)

        assert analysis.triangle_count == 10000
        assert analysis.vertex_count == 101 * 51
        assert analysis.part_count == 1
        assert analysis.node_count == 2
        assert analysis.material_count == 1
        assert analysis.texture_count == 3
        assert analysis.has_normals and analysis.has_uvs
        assert analysis.boundary_edge_count == 2 * (100 + 50)
        assert analysis.bounds_min == pytest.approx((0.0, 0.0, 0.0))
        assert analysis.bounds_max == pytest.approx((1.0, 0.5, 0.0))
        assert analysis.texture_formats["256x256x4 uint8"] == 1

    def test_suggested_levels(self, dense_asset):
        suggestions = dict(AssetReducer().analyze(dense_asset).suggested_levels)
        assert suggestions[ORIGINAL] == 10000
        assert suggestions[STANDARD] == 3000
        assert suggestions[MINIMAL] == 500

    def test_node_transforms_apply_to_bounds(self):
        asset = make_asset([grid_part(4, 4)])
        asset.root.children[0].transform = np.diag([2.0, 2.0, 2.0, 1.0])
        analysis = AssetReducer().analyze(asset)
        assert analysis.bounds_max == pytest.approx((2.0, 1.0, 0.0))

    def test_empty_asset(self):
        analysis = AssetReducer().analyze(make_asset([]))
        assert analysis.triangle_count == 0
        assert analysis.bounds_size == (0.0, 0.0, 0.0)


def test_reduce_convenience_writes_output(tmp_path, write_source):
    source = write_source("crate", cols=100, rows=50)
    output = tmp_path / "out" / "crate_standard.lodz"

    processed = reducer_module.reduce(source, STANDARD, output)

    assert output.is_file()
    assert reducer_module.analyze(output).triangle_count == processed.asset.triangle_count


def test_material_textures_travel_with_model():
    asset = make_asset([grid_part(100, 50)], materials=[textured_material(128)])
    processed = AssetReducer().process(asset, STANDARD)
    assert next(processed.asset.materials()).textures[ChannelType.BASE_COLOR].width == 32


def test_standard_reduces_curved_asset_with_normals():
    asset = make_asset([sphere_part()], name="ball")
    processed = AssetReducer().process(asset, STANDARD)

    assert processed.report.simplified_count == 1
    assert processed.report.failures == []
    assert 200 <= processed.asset.triangle_count <= 0.3 * asset.triangle_count
