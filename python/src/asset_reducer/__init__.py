"""Asset Reducer - Headless multi-quality polygon and texture reduction."""

__version__ = "0.1.0"

from asset_reducer.reducer import AssetReducer, reduce, analyze
from asset_reducer.models import (
    Asset,
    AssetAnalysis,
    BatchResult,
    MeshPart,
    ProcessedAsset,
    ProcessReport,
    QualityLevel,
    SimplificationOptions,
)
from asset_reducer.simplifier import GeometrySimplifier
from asset_reducer.textures import TextureResampler
from asset_reducer.cache import QualityCache, CacheLayout, FolderLayout
from asset_reducer.batch import BatchOrchestrator
from asset_reducer.store import AssetStore

__all__ = [
    "AssetReducer",
    "reduce",
    "analyze",
    "Asset",
    "AssetAnalysis",
    "BatchResult",
    "MeshPart",
    "ProcessedAsset",
    "ProcessReport",
    "QualityLevel",
    "SimplificationOptions",
    "GeometrySimplifier",
    "TextureResampler",
    "QualityCache",
    "CacheLayout",
    "FolderLayout",
    "BatchOrchestrator",
    "AssetStore",
]
