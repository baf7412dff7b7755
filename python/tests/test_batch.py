"""Tests for multi-quality batch generation."""

import pytest

from asset_reducer.batch import BatchOrchestrator, unique_levels
from asset_reducer.cache import CacheLayout, FolderLayout, QualityCache
from asset_reducer.errors import AssetLoadError
from asset_reducer.models import MINIMAL, ORIGINAL, STANDARD, QualityLevel, UnitStatus
from asset_reducer.reducer import AssetReducer
from asset_reducer.store import AssetStore


class CountingStore(AssetStore):
    """Records every load."""

    def __init__(self):
        self.loads = []

    def load(self, path):
        self.loads.append(path.name)
        return super().load(path)


class ExplodingReducer(AssetReducer):
    def __init__(self, bad_level):
        super().__init__()
        self.bad_level = bad_level

    def process(self, asset, quality):
        if quality == self.bad_level:
            raise RuntimeError("reduction exploded")
        return super().process(asset, quality)


@pytest.fixture
def sources(tmp_path, write_source):
    folder = tmp_path / "sources"
    paths = [write_source("alpha", cols=100, rows=50), write_source("bravo", cols=100, rows=50)]
    broken = folder / "charlie.lodz"
    broken.write_bytes(b"this is not an asset")
    (folder / "readme.txt").write_text("ignored")
    return folder, paths, broken


@pytest.fixture
def cache(tmp_path):
    with QualityCache(FolderLayout(tmp_path / "out")) as cache:
        yield cache


class TestRun:
    def test_unreadable_source_counts_once(self, sources, cache, tmp_path):
        folder, _, _ = sources

        result = BatchOrchestrator(cache).run_folder(folder, [STANDARD, MINIMAL])

        assert result.summary() == {"success_count": 2, "failure_count": 1, "total_count": 3}
        assert len(result.units) == 6
        assert sorted(p.name for p in (tmp_path / "out" / "standard").iterdir()) == ["alpha.lodz", "bravo.lodz"]
        assert sorted(p.name for p in (tmp_path / "out" / "minimal").iterdir()) == ["alpha.lodz", "bravo.lodz"]

        charlie = [unit for unit in result.units if unit.source.name == "charlie.lodz"]
        assert [unit.status for unit in charlie] == [UnitStatus.FAILED, UnitStatus.NOT_ATTEMPTED]
        assert all(unit.path is None and unit.error_message for unit in charlie)

    def test_artifacts_are_reduced(self, sources, cache):
        _, paths, _ = sources
        result = BatchOrchestrator(cache).run(paths, [STANDARD, MINIMAL])

        triangles = {(unit.source.name, unit.quality.suffix): unit.triangle_count for unit in result.units}
        assert 200 <= triangles[("alpha.lodz", "standard")] <= 3000
        assert triangles[("alpha.lodz", "minimal")] < triangles[("alpha.lodz", "standard")]
        assert cache.store.load(result.units[0].path).triangle_count == result.units[0].triangle_count

    def test_progress_order(self, sources, cache):
        _, paths, broken = sources
        calls = []

        BatchOrchestrator(cache).run(
            [broken, *reversed(paths)],
            [STANDARD, MINIMAL],
            progress=lambda i, n, label: calls.append((i, n, label)),
        )

        assert calls == [
            (1, 6, "alpha.lodz [Standard]"),
            (2, 6, "alpha.lodz [Minimal]"),
            (3, 6, "bravo.lodz [Standard]"),
            (4, 6, "bravo.lodz [Minimal]"),
            (5, 6, "charlie.lodz [Standard]"),
            (6, 6, "charlie.lodz [Minimal]"),
        ]

    def test_each_source_loaded_once(self, sources, tmp_path):
        _, paths, _ = sources
        store = CountingStore()
        cache = QualityCache(CacheLayout(tmp_path / "cache"), store=store)

        BatchOrchestrator(cache).run(paths, [QualityLevel.custom(0.5), STANDARD, MINIMAL])
        cache.close()

        assert store.loads == ["alpha.lodz", "bravo.lodz"]

    def test_second_run_hits_cache_without_loading(self, sources, tmp_path):
        _, paths, _ = sources
        store = CountingStore()
        with QualityCache(CacheLayout(tmp_path / "cache"), store=store) as cache:
            BatchOrchestrator(cache).run(paths, [STANDARD])
            store.loads.clear()
            second = BatchOrchestrator(cache).run(paths, [STANDARD])

        # only the artifacts are read back
        assert sorted(store.loads) == ["alpha_standard.lodz", "bravo_standard.lodz"]
        assert {unit.status for unit in second.units} == {UnitStatus.CACHED}

    def test_overwrite_regenerates(self, sources, tmp_path):
        _, paths, _ = sources
        with QualityCache(CacheLayout(tmp_path / "cache")) as cache:
            BatchOrchestrator(cache).run(paths, [STANDARD])
            again = BatchOrchestrator(cache).run(paths, [STANDARD], overwrite=True)
        assert {unit.status for unit in again.units} == {UnitStatus.PROCESSED}

    def test_failed_level_does_not_fail_source(self, sources, cache):
        _, paths, _ = sources
        orchestrator = BatchOrchestrator(cache, reducer=ExplodingReducer(MINIMAL))

        result = orchestrator.run(paths, [STANDARD, MINIMAL])

        assert result.success_count == 2
        failed = result.failed_units
        assert [unit.quality for unit in failed] == [MINIMAL, MINIMAL]
        assert all("exploded" in unit.error_message for unit in failed)

    def test_missing_folder_raises(self, cache, tmp_path):
        with pytest.raises(AssetLoadError):
            BatchOrchestrator(cache).run_folder(tmp_path / "nope", [STANDARD])

    def test_empty_folder(self, cache, tmp_path):
        (tmp_path / "empty").mkdir()
        result = BatchOrchestrator(cache).run_folder(tmp_path / "empty", [STANDARD])
        assert result.summary() == {"success_count": 0, "failure_count": 0, "total_count": 0}


class TestSingleSource:
    def test_export_to_explicit_paths(self, sources, tmp_path):
        _, (alpha, _), _ = sources
        plan = [(STANDARD, tmp_path / "x" / "a_std.lodz"), (MINIMAL, tmp_path / "x" / "a_min.glb")]

        with QualityCache(tmp_path / "x") as cache:
            units = BatchOrchestrator(cache).export(alpha, plan)

        assert [unit.status for unit in units] == [UnitStatus.PROCESSED, UnitStatus.PROCESSED]
        assert (tmp_path / "x" / "a_std.lodz").is_file()
        assert (tmp_path / "x" / "a_min.glb").is_file()

    def test_export_unreadable_source_raises(self, sources, tmp_path):
        _, _, broken = sources
        with QualityCache(tmp_path / "x") as cache:
            with pytest.raises(AssetLoadError):
                BatchOrchestrator(cache).export(broken, [(STANDARD, tmp_path / "x" / "c.lodz")])

    def test_load_with_multi_quality(self, sources, tmp_path):
        _, (alpha, _), _ = sources
        with QualityCache(CacheLayout(tmp_path / "cache")) as cache:
            asset = BatchOrchestrator(cache).load_with_multi_quality(alpha, STANDARD, [MINIMAL, ORIGINAL, STANDARD])

        assert 200 <= asset.triangle_count <= 3000
        names = sorted(p.name for p in (tmp_path / "cache").iterdir())
        assert names == ["alpha_minimal.lodz", "alpha_original.lodz", "alpha_standard.lodz"]

    def test_load_with_multi_quality_levels_run_high_to_low(self, sources, tmp_path):
        _, (alpha, _), _ = sources
        labels = []
        with QualityCache(CacheLayout(tmp_path / "cache")) as cache:
            BatchOrchestrator(cache).load_with_multi_quality(
                alpha, MINIMAL, [STANDARD, ORIGINAL], progress=lambda i, n, label: labels.append(label),
            )
        assert labels == ["Original", "Standard", "Minimal"]

    def test_load_with_multi_quality_tolerates_other_level_failure(self, sources, tmp_path):
        _, (alpha, _), _ = sources
        with QualityCache(CacheLayout(tmp_path / "cache")) as cache:
            orchestrator = BatchOrchestrator(cache, reducer=ExplodingReducer(MINIMAL))
            asset = orchestrator.load_with_multi_quality(alpha, STANDARD, [MINIMAL])
        assert asset.triangle_count <= 3000
        assert not (tmp_path / "cache" / "alpha_minimal.lodz").exists()

    def test_load_with_multi_quality_target_failure_raises(self, sources, tmp_path):
        _, (alpha, _), _ = sources
        with QualityCache(CacheLayout(tmp_path / "cache")) as cache:
            orchestrator = BatchOrchestrator(cache, reducer=ExplodingReducer(STANDARD))
            with pytest.raises(RuntimeError):
                orchestrator.load_with_multi_quality(alpha, STANDARD, [MINIMAL])

    def test_load_and_cache(self, sources, tmp_path):
        _, (alpha, _), _ = sources
        with QualityCache(CacheLayout(tmp_path / "cache")) as cache:
            orchestrator = BatchOrchestrator(cache)
            first = orchestrator.load_and_cache(alpha, STANDARD)
            cache.wait_for_writes()
            second = orchestrator.load_and_cache(alpha, STANDARD)
        assert first.triangle_count == second.triangle_count <= 3000

    def test_load_and_cache_falls_back_to_original(self, sources, tmp_path):
        _, (alpha, _), _ = sources
        with QualityCache(CacheLayout(tmp_path / "cache")) as cache:
            asset = BatchOrchestrator(cache, reducer=ExplodingReducer(STANDARD)).load_and_cache(alpha, STANDARD)
        assert asset.triangle_count == 10000
        assert not (tmp_path / "cache" / "alpha_standard.lodz").exists()


def test_unique_levels_keeps_first():
    custom = QualityLevel.custom(0.3, min_face_count=0)
    assert unique_levels([STANDARD, MINIMAL, custom, MINIMAL]) == [STANDARD, MINIMAL]
    assert unique_levels([STANDARD, MINIMAL, custom])[0] is STANDARD
