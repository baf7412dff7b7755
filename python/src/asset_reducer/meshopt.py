"""Adapters over the meshoptimizer binding.

The binding works on flat ``uint32`` index buffers and ``float32`` vertex
arrays and writes into caller-allocated destinations. These helpers do the
conversions, trim the destinations to the returned counts and apply the
vertex remaps it produces to every attribute stream of a part.

Vertex-cache and overdraw statistics are measured here; they gate whether
the optimizing passes run at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import meshoptimizer
import numpy as np

DEFAULT_CACHE_SIZE = 32
OVERDRAW_VIEWPORT = 256

# meshopt_simplify option bits
SIMPLIFY_LOCK_BORDER = 1
SIMPLIFY_PRUNE = 8

# Older binding releases only wrap the position-only simplifier
HAS_ATTRIBUTE_SIMPLIFY = hasattr(meshoptimizer, "simplify_with_attributes")

# meshopt marks unreferenced vertices with ~0u in remap tables
UNUSED = np.uint32(0xFFFFFFFF)

# Pixel sample offset inside a cell; keeps samples off shared grid-aligned edges.
_SAMPLE_OFFSET = (0.5 + 1.37e-4, 0.5 + 2.93e-4)


@dataclass
class VertexCacheStatistics:
    vertices_transformed: int
    acmr: float  # transformed vertices per triangle
    atvr: float  # transformed vertices per referenced vertex


@dataclass
class OverdrawStatistics:
    pixels_covered: int
    pixels_shaded: int
    overdraw: float


def _as_indices(indices) -> np.ndarray:
    return np.ascontiguousarray(indices, dtype=np.uint32).ravel()


def _as_positions(positions) -> np.ndarray:
    return np.ascontiguousarray(positions, dtype=np.float32).reshape(-1, 3)


def _interleave(attributes: Sequence[Optional[np.ndarray]], vertex_count: int) -> np.ndarray:
    streams = [np.asarray(a, dtype=np.float32).reshape(vertex_count, -1) for a in attributes if a is not None]
    return np.ascontiguousarray(np.hstack(streams))


# =============================================================================
# Simplification
# =============================================================================


def simplify(
    positions,
    indices,
    target_index_count: int,
    target_error: float,
    options: int = 0,
    attributes: Optional[np.ndarray] = None,
    attribute_weights: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """Quadric edge-collapse decimation; returns the reduced index buffer.

    With ``attributes`` the collapse cost includes the weighted
    interpolation error of those per-vertex channels. Vertices are never
    moved, so the result indexes into the input vertex buffer.
    """
    idx = _as_indices(indices)
    pos = _as_positions(positions)
    destination = np.zeros(len(idx), dtype=np.uint32)

    if attributes is not None:
        attrs = np.ascontiguousarray(attributes, dtype=np.float32).reshape(len(pos), -1)
        weights = np.ascontiguousarray(attribute_weights, dtype=np.float32)
        count = meshoptimizer.simplify_with_attributes(
            destination,
            idx,
            pos,
            vertex_attributes=attrs,
            attribute_weights=weights,
            target_index_count=target_index_count,
            target_error=target_error,
            options=options,
        )
    else:
        count = meshoptimizer.simplify(
            destination,
            idx,
            pos,
            target_index_count=target_index_count,
            target_error=target_error,
            options=options,
        )
    return destination[:count].copy()


def simplify_sloppy(positions, indices, target_index_count: int, target_error: float) -> np.ndarray:
    """Grid-clustering decimation that ignores topology and attributes."""
    idx = _as_indices(indices)
    pos = _as_positions(positions)
    destination = np.zeros(len(idx), dtype=np.uint32)
    count = meshoptimizer.simplify_sloppy(
        destination,
        idx,
        pos,
        target_index_count=target_index_count,
        target_error=target_error,
    )
    return destination[:count].copy()


# =============================================================================
# Vertex cache
# =============================================================================


def analyze_vertex_cache(
    indices,
    vertex_count: int,
    cache_size: int = DEFAULT_CACHE_SIZE,
) -> VertexCacheStatistics:
    """Simulate a FIFO post-transform cache over the index buffer."""
    idx = _as_indices(indices)
    if len(idx) < 3:
        return VertexCacheStatistics(0, 0.0, 0.0)

    stamps = [0] * vertex_count
    time = cache_size + 1
    misses = 0
    for v in idx.tolist():
        if time - stamps[v] > cache_size:
            stamps[v] = time
            time += 1
            misses += 1

    unique = len(np.unique(idx))
    return VertexCacheStatistics(
        vertices_transformed=misses,
        acmr=misses / (len(idx) // 3),
        atvr=misses / unique,
    )


def optimize_vertex_cache(indices, vertex_count: int) -> np.ndarray:
    """Reorder triangles for post-transform cache locality.

    Triangle winding is preserved; only the triangle order changes.
    """
    idx = _as_indices(indices)
    destination = np.zeros(len(idx), dtype=np.uint32)
    if len(idx) == 0:
        return destination
    meshoptimizer.optimize_vertex_cache(destination, idx, index_count=len(idx), vertex_count=vertex_count)
    return destination


# =============================================================================
# Overdraw
# =============================================================================


def _face_normals(positions: np.ndarray, tris: np.ndarray) -> np.ndarray:
    p0 = positions[tris[:, 0]]
    return np.cross(positions[tris[:, 1]] - p0, positions[tris[:, 2]] - p0)


def _rasterize_pass(
    xy: np.ndarray,
    depth: np.ndarray,
    resolution: int,
) -> tuple[int, int]:
    """Rasterize projected triangles in draw order with a less-than depth test.

    ``xy`` is ``(T, 3, 2)`` in pixel units, ``depth`` is ``(T, 3)``.
    Returns ``(pixels_covered, pixels_shaded)``.
    """
    if len(xy) == 0:
        return 0, 0

    lo = np.clip(np.floor(xy.min(axis=1)).astype(np.int64), 0, resolution - 1)
    hi = np.clip(np.floor(xy.max(axis=1)).astype(np.int64), 0, resolution - 1)
    widths = hi[:, 0] - lo[:, 0] + 1
    heights = hi[:, 1] - lo[:, 1] + 1
    counts = widths * heights

    tri_ids = np.repeat(np.arange(len(xy)), counts)
    starts = np.repeat(np.cumsum(counts) - counts, counts)
    local = np.arange(len(tri_ids)) - starts
    w = widths[tri_ids]
    px = lo[tri_ids, 0] + local % w
    py = lo[tri_ids, 1] + local // w
    sx = px + _SAMPLE_OFFSET[0]
    sy = py + _SAMPLE_OFFSET[1]

    a = xy[tri_ids, 0]
    b = xy[tri_ids, 1]
    c = xy[tri_ids, 2]

    def edge(p, q):
        return (q[:, 0] - p[:, 0]) * (sy - p[:, 1]) - (q[:, 1] - p[:, 1]) * (sx - p[:, 0])

    w0 = edge(b, c)
    w1 = edge(c, a)
    w2 = edge(a, b)
    area = w0 + w1 + w2
    sign = np.sign(area)
    inside = (sign != 0) & (w0 * sign >= 0) & (w1 * sign >= 0) & (w2 * sign >= 0)
    if not inside.any():
        return 0, 0

    tri_ids = tri_ids[inside]
    pixel = (py * resolution + px)[inside]
    area = area[inside]
    z = depth[tri_ids]
    frag_depth = (w0[inside] * z[:, 0] + w1[inside] * z[:, 1] + w2[inside] * z[:, 2]) / area

    # fragments grouped by pixel, in draw order within a pixel
    order = np.lexsort((tri_ids, pixel))
    pixel = pixel[order]
    frag_depth = frag_depth[order]
    group_start = np.ones(len(pixel), dtype=bool)
    group_start[1:] = pixel[1:] != pixel[:-1]
    group = np.cumsum(group_start) - 1

    # later groups shifted below earlier ones so the running minimum never leaks across pixels
    shifted = frag_depth - 4.0 * group
    running = np.minimum.accumulate(shifted)
    shaded = group_start.copy()
    shaded[1:] |= shifted[1:] < running[:-1]

    return int(group_start.sum()), int(shaded.sum())


def analyze_overdraw(
    indices,
    positions,
    resolution: int = OVERDRAW_VIEWPORT,
) -> OverdrawStatistics:
    """Estimate overdraw from six axis-aligned orthographic views.

    Only triangles facing each view are drawn; a fragment counts as shaded
    when it passes the depth test at the time its triangle is drawn.
    """
    idx = _as_indices(indices)
    pos = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    if len(idx) < 3:
        return OverdrawStatistics(0, 0, 0.0)

    tris = idx.reshape(-1, 3)
    lo = pos.min(axis=0)
    extent = float((pos.max(axis=0) - lo).max())
    scale = 1.0 / extent if extent > 0 else 1.0
    norm = (pos - lo) * scale
    normals = _face_normals(norm, tris)
    corners = norm[tris]

    covered = 0
    shaded = 0
    for axis in range(3):
        u, v = [k for k in range(3) if k != axis]
        for direction in (1.0, -1.0):
            facing = normals[:, axis] * direction < 0
            if not facing.any():
                continue
            sel = corners[facing]
            xy = np.stack([sel[:, :, u], sel[:, :, v]], axis=-1) * (resolution - 1)
            depth = sel[:, :, axis] * direction
            c, s = _rasterize_pass(xy, depth, resolution)
            covered += c
            shaded += s

    overdraw = shaded / covered if covered else 0.0
    return OverdrawStatistics(covered, shaded, overdraw)


def optimize_overdraw(indices, positions, threshold: float = 1.05) -> np.ndarray:
    """Reorder triangle clusters so outward-facing surfaces draw first.

    Expects an index buffer already optimized for the vertex cache; the
    cache hit ratio may degrade by at most ``threshold``.
    """
    idx = _as_indices(indices)
    pos = _as_positions(positions)
    destination = np.zeros(len(idx), dtype=np.uint32)
    if len(idx) == 0:
        return destination
    meshoptimizer.optimize_overdraw(
        destination,
        idx,
        pos,
        index_count=len(idx),
        vertex_count=len(pos),
        threshold=threshold,
    )
    return destination


# =============================================================================
# Vertex fetch / remap
# =============================================================================


def remap_buffers(
    indices,
    attributes: Sequence[Optional[np.ndarray]],
    remap: np.ndarray,
    unique_count: int,
) -> tuple[np.ndarray, list[Optional[np.ndarray]]]:
    """Apply a meshopt remap table to the index buffer and every stream.

    ``remap[old]`` is the new index of each vertex or ``UNUSED``; vertices
    mapped to the same slot keep the first one's data.
    """
    idx = _as_indices(indices)
    new_indices = remap[idx].astype(np.uint32)

    used = np.flatnonzero(remap != UNUSED)
    targets = remap[used].astype(np.int64)
    # first old vertex per new slot
    order = np.lexsort((used, targets))
    keep = np.ones(len(order), dtype=bool)
    keep[1:] = targets[order][1:] != targets[order][:-1]
    sources = np.empty(unique_count, dtype=np.int64)
    sources[targets[order][keep]] = used[order][keep]

    remapped = [None if a is None else np.ascontiguousarray(a[sources]) for a in attributes]
    return new_indices, remapped


def optimize_vertex_fetch(
    indices,
    attributes: Sequence[Optional[np.ndarray]],
) -> tuple[np.ndarray, list[Optional[np.ndarray]]]:
    """Renumber vertices in first-use order and drop unreferenced ones.

    The same renumbering is applied to every attribute array; ``None``
    entries pass through.
    """
    idx = _as_indices(indices)
    vertex_count = next(len(a) for a in attributes if a is not None)
    if len(idx) == 0:
        return idx, [None if a is None else a[:0] for a in attributes]

    remap = np.full(vertex_count, UNUSED, dtype=np.uint32)
    unique_count = meshoptimizer.optimize_vertex_fetch_remap(
        remap, idx, index_count=len(idx), vertex_count=vertex_count,
    )
    return remap_buffers(idx, attributes, remap, int(unique_count))


def generate_vertex_remap(indices, attributes: Sequence[Optional[np.ndarray]]) -> tuple[int, np.ndarray]:
    """Find bit-identical vertices across all attribute streams.

    Returns ``(unique_count, remap)`` for :func:`remap_buffers`; new indices
    follow first use in the index buffer.
    """
    idx = _as_indices(indices)
    vertex_count = next(len(a) for a in attributes if a is not None)
    vertices = _interleave(attributes, vertex_count)

    remap = np.full(vertex_count, UNUSED, dtype=np.uint32)
    unique_count = meshoptimizer.generate_vertex_remap(
        remap,
        idx,
        index_count=len(idx),
        vertices=vertices,
        vertex_count=vertex_count,
        vertex_size=vertices.itemsize * vertices.shape[1],
    )
    return int(unique_count), remap
