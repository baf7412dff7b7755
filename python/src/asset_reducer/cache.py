"""On-disk cache of quality-level artifacts.

An artifact's existence on disk is the only cache state; nothing is indexed
in memory across runs. Writes happen on a background thread pool and hand
back a :class:`PersistHandle` the caller may join.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from asset_reducer.config import DEFAULT_ARTIFACT_EXT
from asset_reducer.errors import AssetLoadError
from asset_reducer.models import Asset, QualityLevel
from asset_reducer.store import AssetStore, verify_file_saved

logger = logging.getLogger(__name__)

SourceRef = Union[str, Path]


def source_base_name(source: SourceRef) -> str:
    """Base name used in cache keys."""
    return Path(source).stem


class CacheLayout:
    """``<root>/<base>_<suffix><ext>``"""

    def __init__(self, root: Union[str, Path], ext: str = DEFAULT_ARTIFACT_EXT) -> None:
        self.root = Path(root)
        self.ext = ext

    def path_for(self, source: SourceRef, quality: QualityLevel) -> Path:
        return self.root / f"{source_base_name(source)}_{quality.suffix}{self.ext}"


class FolderLayout:
    """``<folder>/<base><ext>`` with one folder per quality level.

    Levels without an explicit folder use ``<root>/<suffix>``.
    """

    def __init__(
        self,
        root: Union[str, Path],
        ext: str = DEFAULT_ARTIFACT_EXT,
        folders: Optional[Mapping[QualityLevel, Union[str, Path]]] = None,
    ) -> None:
        self.root = Path(root)
        self.ext = ext
        self.folders = {level: Path(folder) for level, folder in (folders or {}).items()}

    def folder_for(self, quality: QualityLevel) -> Path:
        return self.folders.get(quality, self.root / quality.suffix)

    def path_for(self, source: SourceRef, quality: QualityLevel) -> Path:
        return self.folder_for(quality) / f"{source_base_name(source)}{self.ext}"


@dataclass(frozen=True)
class CacheEntry:
    """Where one (source, quality level) artifact lives."""

    source_id: str
    quality: QualityLevel
    path: Path

    @property
    def exists(self) -> bool:
        return verify_file_saved(self.path)


@dataclass
class PersistHandle:
    """Joinable handle for one background write."""

    path: Path
    future: Future

    def done(self) -> bool:
        return self.future.done()

    def cancel(self) -> bool:
        return self.future.cancel()

    def result(self, timeout: Optional[float] = None) -> Path:
        """Block until written; re-raises the write error if it failed."""
        return self.future.result(timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self.future.exception(timeout)

    @property
    def succeeded(self) -> bool:
        return self.future.done() and not self.future.cancelled() and self.future.exception() is None


class QualityCache:
    """Maps (source, quality level) to artifact paths and persists results.

    Example:
        cache = QualityCache(CacheLayout("cache"))
        path = cache.resolve("chair.glb", QualityLevel.standard())
        cached = cache.lookup(path)
        if cached is None:
            handle = cache.persist(processed.asset, path)
        cache.wait_for_writes()
    """

    def __init__(
        self,
        layout: Union[CacheLayout, FolderLayout, str, Path],
        store: Optional[AssetStore] = None,
        overwrite: bool = False,
        max_workers: int = 4,
    ) -> None:
        """Initialize cache.

        Args:
            layout: Path layout, or a directory for the default ``CacheLayout``
            store: Asset reader/writer
            overwrite: Delete existing artifacts instead of reusing them
            max_workers: Background writer threads
        """
        if isinstance(layout, (str, Path)):
            layout = CacheLayout(layout)
        self.layout = layout
        self.store = store or AssetStore()
        self.overwrite = overwrite
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="persist")
        self._lock = threading.Lock()
        self._pending: list[PersistHandle] = []

    def resolve(self, source: SourceRef, quality: QualityLevel) -> Path:
        return self.layout.path_for(source, quality)

    def entry(self, source: SourceRef, quality: QualityLevel) -> CacheEntry:
        return CacheEntry(source_base_name(source), quality, self.resolve(source, quality))

    def exists(self, path: Union[str, Path]) -> bool:
        return verify_file_saved(path)

    def invalidate(self, path: Union[str, Path]) -> bool:
        """Delete an artifact; returns whether one was there."""
        path = Path(path)
        existed = path.exists()
        path.unlink(missing_ok=True)
        if existed:
            logger.debug("Removed artifact %s", path)
        return existed

    def lookup(self, path: Union[str, Path], overwrite: Optional[bool] = None) -> Optional[Asset]:
        """Return the cached asset at ``path``, or ``None`` on a miss.

        In overwrite mode any existing artifact is deleted and this is always
        a miss. An artifact that fails to load is deleted as corrupt.
        """
        path = Path(path)
        overwrite = self.overwrite if overwrite is None else overwrite
        if overwrite:
            self.invalidate(path)
            return None
        if not self.exists(path):
            return None
        try:
            asset = self.store.load(path)
        except AssetLoadError as e:
            logger.warning("Discarding corrupt artifact %s: %s", path, e)
            self.invalidate(path)
            return None
        logger.debug("Cache hit %s", path)
        return asset

    def persist(self, asset: Asset, path: Union[str, Path]) -> PersistHandle:
        """Write ``asset`` in the background.

        The asset is owned by the write task from here on; callers must not
        modify it afterwards.
        """
        path = Path(path)
        future = self._executor.submit(self.store.write, asset, path)
        handle = PersistHandle(path, future)
        future.add_done_callback(lambda f: self._on_written(handle))
        with self._lock:
            self._pending.append(handle)
        return handle

    def _on_written(self, handle: PersistHandle) -> None:
        if handle.future.cancelled():
            logger.warning("Write of %s was cancelled", handle.path)
            return
        error = handle.future.exception()
        if error is not None:
            logger.error("Failed to persist %s: %s", handle.path, error)
        else:
            logger.debug("Persisted %s", handle.path)

    @property
    def pending(self) -> list[PersistHandle]:
        with self._lock:
            return [handle for handle in self._pending if not handle.done()]

    def wait_for_writes(self, timeout: Optional[float] = None) -> list[PersistHandle]:
        """Drain all outstanding writes; returns the handles that failed."""
        with self._lock:
            handles = list(self._pending)
            self._pending.clear()
        wait([handle.future for handle in handles], timeout=timeout)
        failed = [handle for handle in handles if handle.done() and not handle.succeeded]
        still_running = [handle for handle in handles if not handle.done()]
        if still_running:
            with self._lock:
                self._pending.extend(still_running)
        return failed

    def close(self) -> None:
        self.wait_for_writes()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "QualityCache":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
