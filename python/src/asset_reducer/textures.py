"""Texture downsampling driven by the geometry reduction ratio."""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Optional

import numpy as np
from PIL import Image

from asset_reducer.errors import TextureResampleError
from asset_reducer.models import ChannelType, Material, Texture, TextureReport

logger = logging.getLogger(__name__)

MIN_TEXTURE_SIZE = 32
MAX_TEXTURE_SIZE = 4096

# above this ratio the texture pass is skipped for the whole asset
TEXTURE_SKIP_RATIO = 0.9


class ResampleStatus(str, Enum):
    OPTIMIZED = "optimized"
    SKIPPED = "skipped"
    FAILED = "failed"


def target_resolution(max_dimension: int, channel: ChannelType, ratio: float) -> int:
    """Power-of-two edge length for a channel, clamped to [32, 4096]."""
    raw = max_dimension * ratio * channel.multiplier
    size = 2 ** int(math.floor(math.log2(raw))) if raw >= 1 else 1
    return min(max(size, MIN_TEXTURE_SIZE), MAX_TEXTURE_SIZE)


def skips_textures(ratio: float) -> bool:
    return ratio > TEXTURE_SKIP_RATIO


def _resize_plane(plane: np.ndarray, size: tuple[int, int]) -> np.ndarray:
    image = Image.fromarray(np.ascontiguousarray(plane, dtype=np.float32))
    return np.asarray(image.resize(size, Image.Resampling.LANCZOS), dtype=np.float32)


def lanczos_resize(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize with a Lanczos filter, keeping channel count and dtype."""
    if pixels.dtype == np.bool_ or not (
        np.issubdtype(pixels.dtype, np.integer) or np.issubdtype(pixels.dtype, np.floating)
    ):
        raise TypeError(f"Unsupported pixel dtype {pixels.dtype}")

    planes = [pixels] if pixels.ndim == 2 else [pixels[:, :, c] for c in range(pixels.shape[2])]
    resized = [_resize_plane(plane, (width, height)) for plane in planes]
    out = resized[0] if pixels.ndim == 2 else np.stack(resized, axis=-1)

    if np.issubdtype(pixels.dtype, np.integer):
        info = np.iinfo(pixels.dtype)
        out = np.clip(np.rint(out), info.min, info.max)
    return out.astype(pixels.dtype)


class TextureResampler:
    """Downsamples material textures.

    Example:
        resampler = TextureResampler()
        smaller = resampler.resample(texture, ChannelType.BASE_COLOR, 0.3)
    """

    def __init__(self) -> None:
        self.failure_count = 0

    def target_resolution(self, texture: Texture, channel: ChannelType, ratio: float) -> int:
        return target_resolution(texture.max_dimension, channel, ratio)

    def resample(self, texture: Texture, channel: ChannelType, ratio: float) -> Optional[Texture]:
        """Return a downsampled texture, or ``None`` to keep the original."""
        result, _ = self.resample_with_status(texture, channel, ratio)
        return result

    def resample_with_status(
        self,
        texture: Texture,
        channel: ChannelType,
        ratio: float,
    ) -> tuple[Optional[Texture], ResampleStatus]:
        original = texture.max_dimension
        target = target_resolution(original, channel, ratio)
        if target >= original:
            return None, ResampleStatus.SKIPPED

        scale = target / original
        width = max(1, int(texture.width * scale))
        height = max(1, int(texture.height * scale))
        try:
            pixels = self._resize(texture, width, height)
        except TextureResampleError as e:
            self.failure_count += 1
            logger.warning("Keeping original %s texture %s: %s", channel.value, texture.name or "", e)
            return None, ResampleStatus.FAILED

        logger.debug(
            "Resampled %s texture %dx%d -> %dx%d",
            channel.value, texture.width, texture.height, width, height,
        )
        return Texture(pixels, semantic=channel.semantic, name=texture.name), ResampleStatus.OPTIMIZED

    def _resize(self, texture: Texture, width: int, height: int) -> np.ndarray:
        try:
            return lanczos_resize(texture.pixels, width, height)
        except (TypeError, ValueError, OSError, MemoryError) as e:
            raise TextureResampleError(f"Could not resample to {width}x{height}: {e}", cause=e) from e

    def resample_material(self, material: Material, ratio: float) -> tuple[Material, TextureReport]:
        """Resample every bound channel; failures keep that channel's original."""
        report = TextureReport()
        textures = {}
        for channel, texture in material.textures.items():
            resampled, status = self.resample_with_status(texture, channel, ratio)
            if status is ResampleStatus.OPTIMIZED:
                report.optimized += 1
            elif status is ResampleStatus.SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1
            textures[channel] = resampled if resampled is not None else texture
        return Material(name=material.name, textures=textures, factors=dict(material.factors)), report
