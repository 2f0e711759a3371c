"""
Global map merging

Pairwise estimates between all maps are reduced to one transform per map:
the largest confident component is kept, its maximum spanning tree is built
and transforms are chained outward from the tree center, which keeps the
longest chain of multiplications as short as possible.
"""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import open3d as o3d

from mapmerge3d.core.estimates import TransformEstimate, is_sentinel, number_of_nodes
from mapmerge3d.core.graph import (
    breadth_first_edges,
    find_max_spanning_tree,
    largest_connected_component,
)
from mapmerge3d.core.params import MapMergingParams
from mapmerge3d.registration.features import (
    MapFeatures,
    PointsLike,
    as_point_cloud,
    compute_map_features,
    downsample,
)
from mapmerge3d.registration.matching import estimate_pairwise_transform
from mapmerge3d.utils.memory_manager import MemoryManager, default_worker_count

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]
Pair = Tuple[int, int]


def get_transform(
    estimates: Sequence[TransformEstimate],
    from_idx: int,
    to_idx: int
) -> Optional[np.ndarray]:
    """
    Transform expressing map to_idx in the frame of map from_idx

    Estimates map source into target, so a query in stored order returns the
    inverse and a query in reverse order returns the stored transform.

    Returns:
        4x4 transform, or None if no valid estimate links the two maps
    """
    for est in estimates:
        if not est.is_valid:
            continue
        if est.source_idx == from_idx and est.target_idx == to_idx:
            return np.linalg.inv(est.transform)
        if est.source_idx == to_idx and est.target_idx == from_idx:
            return est.transform
    return None


def compute_global_transforms(
    estimates: Sequence[TransformEstimate],
    confidence_threshold: float,
    n_maps: Optional[int] = None
) -> List[Optional[np.ndarray]]:
    """
    Turn pairwise estimates into one transform per map

    Args:
        estimates: Pairwise estimates (failed ones included)
        confidence_threshold: Minimum confidence of an edge
        n_maps: Length of the result (default: highest map index + 1)

    Raises:
        ValueError: if n_maps is smaller than the highest map index + 1

    Returns:
        Transform per map into the reference frame. The reference map gets
        the identity; maps outside the selected component get None. When no
        estimate passes the threshold every entry is None.
    """
    required = number_of_nodes(estimates)
    if n_maps is None:
        n_maps = required
    elif n_maps < required:
        raise ValueError(
            f"n_maps={n_maps} is too small for estimates referencing map {required - 1}"
        )
    global_transforms: List[Optional[np.ndarray]] = [None] * n_maps

    component = largest_connected_component(estimates, confidence_threshold)
    if not component:
        return global_transforms

    tree = find_max_spanning_tree(component)
    reference_frame = tree.root
    global_transforms[reference_frame] = np.eye(4, dtype=np.float64)
    logger.info(f"Using map {reference_frame} as reference frame")

    for parent, child in breadth_first_edges(tree, reference_frame):
        local = get_transform(tree.edges, parent, child)
        global_transforms[child] = global_transforms[parent] @ local

    excluded = [i for i, t in enumerate(global_transforms) if t is None]
    if excluded:
        logger.warning(f"Maps {excluded} are not connected to the reference frame and will be skipped")
    return global_transforms


def _update_progress(callback: Optional[ProgressCallback], percentage: int, message: str):
    if callback:
        callback(percentage, message)


def _run_timed(started: Dict[Pair, float], pair: Pair, func, *args):
    # Deadline counts from here, not from submission
    started[pair] = time.monotonic()
    return func(*args)


def estimate_pairwise_transforms(
    features: Sequence[MapFeatures],
    params: MapMergingParams,
    progress_callback: Optional[ProgressCallback] = None
) -> List[TransformEstimate]:
    """
    Estimate transforms for all pairs of maps that have keypoints

    Pairs run concurrently on a bounded thread pool. A pair that raises or
    runs longer than params.pair_timeout once a worker has picked it up is
    recorded as failed. Pairs still queued behind a slow one are not charged
    for the wait.

    Returns:
        One estimate per registered pair, ordered by (source_idx, target_idx)
    """
    pairs = [
        (i, j)
        for i in range(len(features) - 1)
        for j in range(i + 1, len(features))
        if features[i].has_keypoints and features[j].has_keypoints
    ]
    if not pairs:
        logger.warning("No pair of maps has keypoints, nothing to register")
        return []

    max_workers = params.max_workers or default_worker_count()
    timeout = params.pair_timeout
    logger.info(f"Estimating {len(pairs)} pairwise transforms with {max_workers} workers")

    results: Dict[Pair, TransformEstimate] = {}
    started: Dict[Pair, float] = {}

    def record(pair: Pair, estimate: TransformEstimate):
        results[pair] = estimate
        _update_progress(
            progress_callback,
            20 + int(70 * len(results) / len(pairs)),
            f"Registered pair {pair} [{len(results)}/{len(pairs)}]"
        )

    executor = ThreadPoolExecutor(max_workers=max_workers)
    try:
        pending = {
            executor.submit(
                _run_timed, started, (i, j),
                estimate_pairwise_transform, i, j, features[i], features[j], params
            ): (i, j)
            for i, j in pairs
        }
        while pending:
            wait_for = None
            if timeout is not None:
                deadlines = [started[p] + timeout for p in pending.values() if p in started]
                # Nothing running yet: poll until a worker picks a pair up
                wait_for = max(0.0, min(deadlines) - time.monotonic()) if deadlines else timeout

            done, _ = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
            for future in done:
                pair = pending.pop(future)
                try:
                    estimate = future.result()
                except Exception as e:
                    logger.warning(f"Pair {pair} failed: {e}")
                    estimate = TransformEstimate.failed(*pair)
                record(pair, estimate)

            if timeout is None:
                continue
            now = time.monotonic()
            for future, pair in list(pending.items()):
                if pair in started and now - started[pair] >= timeout and not future.done():
                    logger.warning(f"Pair {pair} timed out after {timeout}s")
                    del pending[future]
                    record(pair, TransformEstimate.failed(*pair))
    finally:
        # Do not block on pairs that timed out
        executor.shutdown(wait=False, cancel_futures=True)

    estimates = [results[pair] for pair in pairs]
    succeeded = sum(1 for est in estimates if est.is_valid)
    logger.info(f"Pairwise registration: {succeeded}/{len(estimates)} pairs aligned")
    return estimates


def estimate_maps_transforms(
    maps: Sequence[PointsLike],
    params: Optional[MapMergingParams] = None,
    progress_callback: Optional[ProgressCallback] = None
) -> List[Optional[np.ndarray]]:
    """
    Estimate the transform of every map into a common reference frame

    Args:
        maps: Point clouds (Open3D clouds or (N, 3) arrays)
        params: Merging parameters (defaults if None)
        progress_callback: Optional callable(percentage, message)

    Returns:
        One 4x4 transform per input map, None for maps that could not be
        aligned with the reference frame
    """
    params = params or MapMergingParams()
    if len(maps) == 0:
        return []
    if len(maps) == 1:
        return [np.eye(4, dtype=np.float64)]

    memory_manager = MemoryManager()
    logger.info(
        f"Estimating transforms for {len(maps)} maps "
        f"({memory_manager.get_available_memory():.1f} GB available)"
    )

    _update_progress(progress_callback, 0, f"Computing features for {len(maps)} maps...")
    with memory_manager.track_operation("features"):
        features = [compute_map_features(cloud, params, index=i) for i, cloud in enumerate(maps)]

    _update_progress(progress_callback, 20, "Registering map pairs...")
    with memory_manager.track_operation("pairwise_estimation"):
        estimates = estimate_pairwise_transforms(features, params, progress_callback)

    _update_progress(progress_callback, 90, "Computing global transforms...")
    global_transforms = compute_global_transforms(
        estimates, params.confidence_threshold, n_maps=len(maps)
    )

    aligned = sum(1 for t in global_transforms if t is not None)
    logger.debug(f"Peak memory usage: {memory_manager.get_peak_usage():.2f} GB")
    _update_progress(progress_callback, 100, f"Aligned {aligned}/{len(maps)} maps")
    return global_transforms


def compose_maps(
    maps: Sequence[PointsLike],
    transforms: Sequence[Optional[np.ndarray]],
    resolution: float
) -> o3d.geometry.PointCloud:
    """
    Merge maps into one cloud using their global transforms

    Maps whose transform is None (or the zero matrix) are left out. The
    union of the transformed maps is downsampled to resolution.

    Raises:
        ValueError: if maps and transforms differ in length
    """
    if len(maps) != len(transforms):
        raise ValueError(
            f"compose_maps: got {len(maps)} maps but {len(transforms)} transforms"
        )

    result = o3d.geometry.PointCloud()
    for i, (cloud, transform) in enumerate(zip(maps, transforms)):
        if is_sentinel(transform):
            logger.debug(f"Map {i} has no transform, skipping")
            continue
        aligned = o3d.geometry.PointCloud(as_point_cloud(cloud))
        aligned.transform(np.asarray(transform, dtype=np.float64))
        result += aligned

    merged = downsample(result, resolution)
    logger.info(f"Merged map has {len(merged.points)} points")
    return merged
