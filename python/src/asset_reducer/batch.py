"""Multi-quality generation over one or many source assets."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Union

from asset_reducer.cache import PersistHandle, QualityCache
from asset_reducer.errors import AssetLoadError
from asset_reducer.models import (
    Asset,
    BatchResult,
    QualityLevel,
    UnitResult,
    UnitStatus,
)
from asset_reducer.reducer import AssetReducer
from asset_reducer.store import ARCHIVE_EXT, MESH_EXTENSIONS

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

DEFAULT_SOURCE_EXTENSIONS = frozenset(MESH_EXTENSIONS | {ARCHIVE_EXT})


def unique_levels(levels: Iterable[QualityLevel]) -> list[QualityLevel]:
    """Drop levels whose ratio repeats an earlier one, keeping order."""
    result: list[QualityLevel] = []
    for level in levels:
        if level not in result:
            result.append(level)
    return result


class BatchOrchestrator:
    """Loads each source once and produces every requested quality level.

    Example:
        cache = QualityCache(FolderLayout("out"))
        result = BatchOrchestrator(cache).run(
            ["a.glb", "b.glb"],
            [QualityLevel.standard(), QualityLevel.minimal()],
        )
        print(result.summary())
    """

    def __init__(
        self,
        cache: QualityCache,
        reducer: Optional[AssetReducer] = None,
        wait_for_writes: bool = True,
    ) -> None:
        """Initialize orchestrator.

        Args:
            cache: Artifact cache (its store also loads sources)
            reducer: Asset reducer, defaults to one sharing the cache's store
            wait_for_writes: Join background writes before returning results
        """
        self.cache = cache
        self.store = cache.store
        self.reducer = reducer or AssetReducer(store=self.store)
        self.wait_for_writes = wait_for_writes

    def run(
        self,
        sources: Sequence[Union[str, Path]],
        qualities: Sequence[QualityLevel],
        overwrite: Optional[bool] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Process every (source, quality) unit.

        Sources are handled in name order and qualities in the given order.
        A source that fails to load counts as one failure and its remaining
        qualities are not attempted; any other unit failure is recorded in
        ``units`` without failing the source.
        """
        ordered = sorted((Path(source) for source in sources), key=lambda p: (p.name, str(p)))
        total_units = len(ordered) * len(qualities)
        result = BatchResult(total_count=len(ordered))
        writes: list[tuple[UnitResult, PersistHandle]] = []
        unit_index = 0

        for source in ordered:
            loaded: Optional[Asset] = None
            load_error: Optional[AssetLoadError] = None

            for quality in qualities:
                unit_index += 1
                if progress:
                    progress(unit_index, total_units, f"{source.name} [{quality.display_name}]")

                if load_error is not None:
                    result.units.append(UnitResult(
                        source=source,
                        quality=quality,
                        path=None,
                        status=UnitStatus.NOT_ATTEMPTED,
                        error_message=load_error.message,
                    ))
                    continue

                path = self.cache.resolve(source, quality)
                cached = self.cache.lookup(path, overwrite)
                if cached is not None:
                    result.units.append(UnitResult(
                        source=source,
                        quality=quality,
                        path=path,
                        status=UnitStatus.CACHED,
                        triangle_count=cached.triangle_count,
                    ))
                    continue

                if loaded is None:
                    try:
                        loaded = self._load(source)
                    except AssetLoadError as e:
                        logger.error("Skipping %s: %s", source.name, e)
                        load_error = e
                        result.units.append(UnitResult(
                            source=source,
                            quality=quality,
                            path=None,
                            status=UnitStatus.FAILED,
                            error_message=e.message,
                        ))
                        continue

                unit, handle = self._process_unit(loaded, source, quality, path)
                result.units.append(unit)
                if handle is not None:
                    writes.append((unit, handle))

            if load_error is None:
                result.success_count += 1
            else:
                result.failure_count += 1

        if self.wait_for_writes:
            self._join(writes)

        logger.info(
            "Batch finished: %d succeeded, %d failed, %d total",
            result.success_count, result.failure_count, result.total_count,
        )
        return result

    def run_folder(
        self,
        source_folder: Union[str, Path],
        qualities: Sequence[QualityLevel],
        overwrite: Optional[bool] = None,
        progress: Optional[ProgressCallback] = None,
        extensions: Iterable[str] = DEFAULT_SOURCE_EXTENSIONS,
    ) -> BatchResult:
        """Run over every loadable file directly inside ``source_folder``."""
        folder = Path(source_folder)
        if not folder.is_dir():
            raise AssetLoadError(folder, "source folder not found")
        suffixes = {ext.lower() for ext in extensions}
        sources = [p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in suffixes]
        logger.info("Found %d source files in %s", len(sources), folder)
        return self.run(sources, qualities, overwrite=overwrite, progress=progress)

    def export(
        self,
        source: Union[str, Path],
        plan: Sequence[tuple[QualityLevel, Union[str, Path]]],
        overwrite: Optional[bool] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> list[UnitResult]:
        """Produce one source at explicit output paths.

        Unlike :meth:`run`, a source that cannot be loaded raises.
        """
        source = Path(source)
        loaded: Optional[Asset] = None
        units: list[UnitResult] = []
        writes: list[tuple[UnitResult, PersistHandle]] = []

        for index, (quality, output) in enumerate(plan, start=1):
            if progress:
                progress(index, len(plan), f"{source.name} [{quality.display_name}]")
            path = Path(output)
            cached = self.cache.lookup(path, overwrite)
            if cached is not None:
                units.append(UnitResult(source, quality, path, UnitStatus.CACHED, cached.triangle_count))
                continue
            if loaded is None:
                loaded = self._load(source)
            unit, handle = self._process_unit(loaded, source, quality, path)
            units.append(unit)
            if handle is not None:
                writes.append((unit, handle))

        if self.wait_for_writes:
            self._join(writes)
        return units

    def load_with_multi_quality(
        self,
        source: Union[str, Path],
        target: QualityLevel,
        additional: Sequence[QualityLevel] = (),
        overwrite: Optional[bool] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Asset:
        """Make sure every level is cached and return the target-quality asset.

        Levels run from the highest ratio down. Failing to produce the target
        raises; failures of the other levels are only logged.
        """
        source = Path(source)
        levels = sorted(unique_levels([target, *additional]), reverse=True)
        loaded: Optional[Asset] = None
        result: Optional[Asset] = None

        for index, level in enumerate(levels, start=1):
            if progress:
                progress(index, len(levels), level.display_name)
            is_target = level == target
            path = self.cache.resolve(source, level)

            cached = self.cache.lookup(path, overwrite)
            if cached is not None:
                if is_target:
                    result = cached
                continue

            if loaded is None:
                loaded = self._load(source)
            try:
                processed = self.reducer.process(loaded, level)
            except Exception:
                if is_target:
                    raise
                logger.exception("Could not produce %s for %s", level.display_name, source.name)
                continue
            self.cache.persist(processed.asset, path)
            if is_target:
                result = processed.asset

        if self.wait_for_writes:
            self.cache.wait_for_writes()

        if result is None:
            logger.warning("Target quality for %s unavailable, loading the original", source.name)
            result = loaded if loaded is not None else self._load(source)
        return result

    def load_and_cache(
        self,
        source: Union[str, Path],
        quality: QualityLevel,
        overwrite: Optional[bool] = None,
    ) -> Asset:
        """Return ``source`` at ``quality`` through the cache.

        Any failure while reducing falls back to the unprocessed source.
        """
        source = Path(source)
        path = self.cache.resolve(source, quality)
        cached = self.cache.lookup(path, overwrite)
        if cached is not None:
            return cached

        loaded = self._load(source)
        try:
            processed = self.reducer.process(loaded, quality)
        except Exception:
            logger.exception("Reduction of %s failed, using the original", source.name)
            return loaded
        self.cache.persist(processed.asset, path)
        return processed.asset

    def _load(self, source: Path) -> Asset:
        start = time.time()
        asset = self.store.load(source)
        logger.info("Loaded %s in %.2fs (%d triangles)", source.name, time.time() - start, asset.triangle_count)
        return asset

    def _process_unit(
        self,
        loaded: Asset,
        source: Path,
        quality: QualityLevel,
        path: Path,
    ) -> tuple[UnitResult, Optional[PersistHandle]]:
        start = time.time()
        try:
            processed = self.reducer.process(loaded, quality)
        except Exception as e:
            logger.exception("Failed %s for %s", quality.display_name, source.name)
            return UnitResult(source, quality, None, UnitStatus.FAILED, error_message=str(e)), None

        handle = self.cache.persist(processed.asset, path)
        logger.info(
            "%s %s: %d -> %d triangles in %.2fs",
            source.name,
            quality.display_name,
            processed.report.original_triangles,
            processed.report.final_triangles,
            time.time() - start,
        )
        unit = UnitResult(
            source=source,
            quality=quality,
            path=path,
            status=UnitStatus.PROCESSED,
            triangle_count=processed.asset.triangle_count,
        )
        return unit, handle

    def _join(self, writes: list[tuple[UnitResult, PersistHandle]]) -> None:
        self.cache.wait_for_writes()
        for unit, handle in writes:
            if not handle.succeeded:
                error = handle.exception() if not handle.future.cancelled() else None
                unit.status = UnitStatus.FAILED
                unit.error_message = str(error) if error else "write cancelled"
