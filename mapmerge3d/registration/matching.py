"""
Pairwise rigid registration between two preprocessed maps

Two estimation methods are available:
- MATCHING: reciprocal descriptor matching, RANSAC correspondence rejection
  and SVD fit of the inliers
- SAC_IA: sample-consensus initial alignment directly on descriptor sets
Either can be refined with point-to-point ICP on the full clouds.
"""

import logging
from enum import Enum
from typing import Optional, Tuple, Union

import numpy as np
import open3d as o3d
from scipy.spatial import KDTree

from mapmerge3d.core.estimates import TransformEstimate
from mapmerge3d.registration.features import MapFeatures, points_of

logger = logging.getLogger(__name__)

reg = o3d.pipelines.registration

RANSAC_SAMPLE_SIZE = 3
RANSAC_CONFIDENCE = 0.999
EDGE_LENGTH_SIMILARITY = 0.9


class EstimationMethod(Enum):
    MATCHING = "matching"
    SAC_IA = "sac_ia"


def estimation_method(name: Union[str, EstimationMethod]) -> EstimationMethod:
    """Parse an estimation method name ('matching' or 'sac_ia')"""
    if isinstance(name, EstimationMethod):
        return name
    normalized = str(name).strip().lower().replace("-", "_")
    try:
        return EstimationMethod(normalized)
    except ValueError:
        supported = ", ".join(m.value for m in EstimationMethod)
        raise ValueError(f"Unknown estimation method '{name}' (supported: {supported})") from None


def _knn(tree: KDTree, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    distances, indices = tree.query(queries, k=k)
    return distances.reshape(len(queries), k), indices.reshape(len(queries), k)


def find_feature_correspondences(
    source_descriptors: np.ndarray,
    target_descriptors: np.ndarray,
    k: int = 5
) -> np.ndarray:
    """
    Reciprocal matches among the k nearest neighbours in descriptor space.

    For every source descriptor its k nearest target descriptors are tried in
    order of distance; the first one that has the source descriptor among
    its own k nearest source descriptors is kept. Each source point gets at
    most one match.

    Returns:
        (M, 2) int array of (source_index, target_index) pairs
    """
    if len(source_descriptors) == 0 or len(target_descriptors) == 0:
        return np.zeros((0, 2), dtype=np.int64)
    if source_descriptors.shape[1] != target_descriptors.shape[1]:
        raise ValueError(
            f"Descriptor sizes differ: {source_descriptors.shape[1]} vs {target_descriptors.shape[1]}"
        )

    k_forward = max(1, min(k, len(target_descriptors)))
    k_backward = max(1, min(k, len(source_descriptors)))
    _, forward = _knn(KDTree(target_descriptors), source_descriptors, k_forward)
    _, backward = _knn(KDTree(source_descriptors), target_descriptors, k_backward)

    matches = []
    for i, candidates in enumerate(forward):
        for j in candidates:
            if i in backward[j]:
                matches.append((i, int(j)))
                break

    logger.debug(f"Cross-matched {len(matches)}/{len(source_descriptors)} descriptors")
    return np.array(matches, dtype=np.int64).reshape(-1, 2)


def _is_degenerate(transform: np.ndarray) -> bool:
    return not np.all(np.isfinite(transform))


def estimate_transform_from_correspondences(
    source_keypoints: o3d.geometry.PointCloud,
    target_keypoints: o3d.geometry.PointCloud,
    correspondences: np.ndarray,
    inlier_threshold: float,
    max_iterations: int = 100000
) -> Tuple[Optional[np.ndarray], np.ndarray]:
    """
    Fit a rigid transform to keypoint correspondences with RANSAC

    Returns:
        (transform, inliers). transform is None when no model was found;
        inliers is a (K, 2) array of the correspondences supporting it.
    """
    no_inliers = np.zeros((0, 2), dtype=np.int64)
    if len(correspondences) < RANSAC_SAMPLE_SIZE:
        logger.debug(f"Only {len(correspondences)} correspondences, cannot run RANSAC")
        return None, no_inliers

    result = reg.registration_ransac_based_on_correspondence(
        source_keypoints,
        target_keypoints,
        o3d.utility.Vector2iVector(correspondences.astype(np.int32)),
        inlier_threshold,
        reg.TransformationEstimationPointToPoint(False),
        RANSAC_SAMPLE_SIZE,
        [
            reg.CorrespondenceCheckerBasedOnEdgeLength(EDGE_LENGTH_SIMILARITY),
            reg.CorrespondenceCheckerBasedOnDistance(inlier_threshold),
        ],
        reg.RANSACConvergenceCriteria(max_iterations, RANSAC_CONFIDENCE)
    )

    transform = np.asarray(result.transformation, dtype=np.float64)
    inliers = np.asarray(result.correspondence_set, dtype=np.int64).reshape(-1, 2)
    if len(inliers) < RANSAC_SAMPLE_SIZE or _is_degenerate(transform):
        logger.debug("RANSAC failed to find a reasonable model")
        return None, no_inliers

    logger.debug(f"RANSAC model with {len(inliers)}/{len(correspondences)} inliers")
    return transform, inliers


def _as_feature(descriptors: np.ndarray):
    feature = reg.Feature()
    feature.data = np.ascontiguousarray(descriptors.T, dtype=np.float64)
    return feature


def estimate_transform_from_descriptors_sets(
    source_keypoints: o3d.geometry.PointCloud,
    source_descriptors: np.ndarray,
    target_keypoints: o3d.geometry.PointCloud,
    target_descriptors: np.ndarray,
    max_correspondence_distance: float,
    max_iterations: int
) -> Optional[np.ndarray]:
    """Sample-consensus initial alignment of two keypoint sets; None on failure"""
    if len(source_descriptors) < RANSAC_SAMPLE_SIZE or len(target_descriptors) < RANSAC_SAMPLE_SIZE:
        return None

    result = reg.registration_ransac_based_on_feature_matching(
        source_keypoints,
        target_keypoints,
        _as_feature(source_descriptors),
        _as_feature(target_descriptors),
        True,
        max_correspondence_distance,
        reg.TransformationEstimationPointToPoint(False),
        RANSAC_SAMPLE_SIZE,
        [
            reg.CorrespondenceCheckerBasedOnEdgeLength(EDGE_LENGTH_SIMILARITY),
            reg.CorrespondenceCheckerBasedOnDistance(max_correspondence_distance),
        ],
        reg.RANSACConvergenceCriteria(max_iterations, RANSAC_CONFIDENCE)
    )

    transform = np.asarray(result.transformation, dtype=np.float64)
    logger.debug(f"Initial alignment fitness: {result.fitness:.3f}")
    if result.fitness <= 0 or _is_degenerate(transform):
        return None
    return transform


def estimate_transform_icp(
    source_points: o3d.geometry.PointCloud,
    target_points: o3d.geometry.PointCloud,
    initial_guess: np.ndarray,
    max_correspondence_distance: float,
    max_iterations: int = 100,
    transformation_epsilon: float = 0.0
) -> np.ndarray:
    """
    Refine a transform with point-to-point ICP

    Returns:
        Refined transform (source frame -> target frame), including the
        initial guess
    """
    result = reg.registration_icp(
        source_points,
        target_points,
        max_correspondence_distance,
        np.asarray(initial_guess, dtype=np.float64),
        reg.TransformationEstimationPointToPoint(),
        reg.ICPConvergenceCriteria(
            relative_fitness=transformation_epsilon,
            relative_rmse=transformation_epsilon,
            max_iteration=max_iterations
        )
    )
    logger.debug(f"ICP fitness={result.fitness:.3f}, inlier_rmse={result.inlier_rmse:.4f}")
    return np.asarray(result.transformation, dtype=np.float64)


def estimate_transform(
    source: MapFeatures,
    target: MapFeatures,
    method: EstimationMethod,
    refine: bool,
    inlier_threshold: float,
    max_correspondence_distance: float,
    max_iterations: int,
    matching_k: int,
    transform_epsilon: float
) -> Optional[np.ndarray]:
    """Estimate the transform from source to target; None if registration failed"""
    if method is EstimationMethod.MATCHING:
        correspondences = find_feature_correspondences(
            source.descriptors, target.descriptors, matching_k
        )
        transform, _ = estimate_transform_from_correspondences(
            source.keypoints, target.keypoints, correspondences, inlier_threshold
        )
    elif method is EstimationMethod.SAC_IA:
        transform = estimate_transform_from_descriptors_sets(
            source.keypoints, source.descriptors,
            target.keypoints, target.descriptors,
            max_correspondence_distance, max_iterations
        )
    else:
        raise ValueError(f"Unsupported estimation method: {method}")

    if transform is None:
        return None

    if refine:
        transform = estimate_transform_icp(
            source.points, target.points, transform,
            max_correspondence_distance, max_iterations, transform_epsilon
        )
    return transform


def transform_score(
    source_points: o3d.geometry.PointCloud,
    target_points: o3d.geometry.PointCloud,
    transform: np.ndarray,
    max_distance: float
) -> float:
    """
    Mean distance from transformed source points to their nearest target point

    Only pairs closer than max_distance count. Returns inf if no source
    point has a target neighbour within max_distance.
    """
    source = points_of(source_points)
    target = points_of(target_points)
    if len(source) == 0 or len(target) == 0:
        return float("inf")

    transformed = source @ transform[:3, :3].T + transform[:3, 3]
    distances, _ = KDTree(target).query(transformed, distance_upper_bound=max_distance)
    close = distances[np.isfinite(distances)]
    if len(close) == 0:
        return float("inf")
    return float(np.mean(close))


def estimate_pairwise_transform(
    source_idx: int,
    target_idx: int,
    source: MapFeatures,
    target: MapFeatures,
    params
) -> TransformEstimate:
    """
    Register map source_idx onto map target_idx

    Registration problems never raise: any failure yields a failed estimate.
    """
    try:
        transform = estimate_transform(
            source, target,
            method=params.estimation_method,
            refine=params.refine_transform,
            inlier_threshold=params.inlier_threshold,
            max_correspondence_distance=params.max_correspondence_distance,
            max_iterations=params.max_iterations,
            matching_k=params.matching_k,
            transform_epsilon=params.transform_epsilon
        )
    except (RuntimeError, ValueError, np.linalg.LinAlgError) as e:
        logger.warning(f"Pair ({source_idx}, {target_idx}): registration error: {e}")
        return TransformEstimate.failed(source_idx, target_idx)

    if transform is None:
        logger.debug(f"Pair ({source_idx}, {target_idx}): no transform found")
        return TransformEstimate.failed(source_idx, target_idx)

    score = transform_score(source.points, target.points, transform, params.max_correspondence_distance)
    if not np.isfinite(score):
        logger.debug(f"Pair ({source_idx}, {target_idx}): clouds do not overlap after alignment")
        return TransformEstimate.failed(source_idx, target_idx)

    confidence = 1.0 / max(score, np.finfo(np.float64).eps)
    logger.debug(f"Pair ({source_idx}, {target_idx}): score={score:.4f}, confidence={confidence:.3f}")
    return TransformEstimate(source_idx, target_idx, transform, confidence)
