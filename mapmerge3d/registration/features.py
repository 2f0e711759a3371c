"""
Per-map preprocessing and local features for registration

Every function returns a new point cloud; inputs are never modified.
"""

import logging
from enum import Enum
from typing import Optional, Union

import numpy as np
import open3d as o3d
from scipy.spatial import KDTree

logger = logging.getLogger(__name__)

# Upper bound on neighbours used by normal and descriptor searches
NORMALS_MAX_NN = 30
DESCRIPTOR_MAX_NN = 100

PointsLike = Union[o3d.geometry.PointCloud, np.ndarray]


class KeypointType(Enum):
    """Keypoint detectors"""
    ISS = "iss"      # intrinsic shape signatures
    VOXEL = "voxel"  # regular subsampling at threshold * resolution spacing

    @classmethod
    def from_name(cls, name: Union[str, 'KeypointType']) -> 'KeypointType':
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            supported = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown keypoint type '{name}' (supported: {supported})") from None


class DescriptorType(Enum):
    """Local descriptors"""
    FPFH = "fpfh"    # fast point feature histograms, 33 bins

    @classmethod
    def from_name(cls, name: Union[str, 'DescriptorType']) -> 'DescriptorType':
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            supported = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown descriptor type '{name}' (supported: {supported})") from None


def as_point_cloud(points: PointsLike) -> o3d.geometry.PointCloud:
    """Wrap an (N, 3+) array as a point cloud; point clouds are returned as-is"""
    if isinstance(points, o3d.geometry.PointCloud):
        return points
    array = np.asarray(points, dtype=np.float64)
    if array.size == 0:
        return o3d.geometry.PointCloud()
    if array.ndim != 2 or array.shape[1] < 3:
        raise ValueError(f"Expected an (N, 3) point array, got shape {array.shape}")
    cloud = o3d.geometry.PointCloud()
    cloud.points = o3d.utility.Vector3dVector(array[:, :3])
    return cloud


def points_of(cloud: o3d.geometry.PointCloud) -> np.ndarray:
    """(N, 3) float64 copy of the cloud coordinates"""
    return np.asarray(cloud.points, dtype=np.float64).reshape(-1, 3).copy()


def downsample(cloud: PointsLike, resolution: float) -> o3d.geometry.PointCloud:
    """Voxel-grid downsampling. A non-positive resolution returns a copy."""
    cloud = as_point_cloud(cloud)
    if resolution <= 0 or not cloud.has_points():
        return o3d.geometry.PointCloud(cloud)
    return cloud.voxel_down_sample(voxel_size=resolution)


def remove_outliers(
    cloud: o3d.geometry.PointCloud,
    radius: float,
    min_neighbours: int
) -> o3d.geometry.PointCloud:
    """Drop points having fewer than min_neighbours other points within radius"""
    if not cloud.has_points() or min_neighbours <= 0:
        return o3d.geometry.PointCloud(cloud)
    filtered, kept = cloud.remove_radius_outlier(nb_points=int(min_neighbours), radius=radius)
    logger.debug(f"Outlier removal kept {len(kept)}/{len(cloud.points)} points")
    return filtered


def compute_surface_normals(cloud: o3d.geometry.PointCloud, radius: float) -> o3d.geometry.PointCloud:
    """Copy of cloud with normals estimated from neighbours within radius"""
    with_normals = o3d.geometry.PointCloud(cloud)
    if with_normals.has_points():
        with_normals.estimate_normals(
            search_param=o3d.geometry.KDTreeSearchParamHybrid(radius=radius, max_nn=NORMALS_MAX_NN)
        )
    return with_normals


def detect_keypoints(
    cloud: o3d.geometry.PointCloud,
    keypoint_type: KeypointType,
    threshold: float,
    normal_radius: float,
    resolution: float
) -> o3d.geometry.PointCloud:
    """
    Detect keypoints on a preprocessed cloud

    Args:
        cloud: Downsampled cloud (with normals)
        keypoint_type: Detector to use
        threshold: ISS: minimum neighbour count of a salient point.
            VOXEL: keypoint spacing as a multiple of resolution.
        normal_radius: Support radius of the saliency computation
        resolution: Cloud resolution, used for non-maximum suppression radius

    Returns:
        Keypoints as a point cloud (possibly empty)
    """
    if not cloud.has_points():
        return o3d.geometry.PointCloud()

    if keypoint_type is KeypointType.ISS:
        keypoints = o3d.geometry.keypoint.compute_iss_keypoints(
            cloud,
            salient_radius=normal_radius,
            non_max_radius=max(resolution * 2.0, normal_radius / 2.0),
            min_neighbors=max(1, int(threshold))
        )
    elif keypoint_type is KeypointType.VOXEL:
        keypoints = cloud.voxel_down_sample(voxel_size=max(threshold, 1.0) * resolution)
    else:
        raise ValueError(f"Unsupported keypoint type: {keypoint_type}")

    logger.debug(f"Detected {len(keypoints.points)} {keypoint_type.value} keypoints")
    return keypoints


def compute_local_descriptors(
    cloud: o3d.geometry.PointCloud,
    keypoints: o3d.geometry.PointCloud,
    descriptor_type: DescriptorType,
    radius: float
) -> np.ndarray:
    """
    Compute descriptors at keypoint locations

    Descriptors are computed over the full cloud (which must have normals) and
    sampled at the cloud point nearest to each keypoint.

    Returns:
        (K, D) float64 array, one row per keypoint
    """
    n_keypoints = len(keypoints.points)
    if n_keypoints == 0 or not cloud.has_points():
        return np.zeros((0, 0), dtype=np.float64)

    if descriptor_type is DescriptorType.FPFH:
        if not cloud.has_normals():
            raise ValueError("FPFH descriptors require a cloud with normals")
        feature = o3d.pipelines.registration.compute_fpfh_feature(
            cloud, o3d.geometry.KDTreeSearchParamHybrid(radius=radius, max_nn=DESCRIPTOR_MAX_NN)
        )
        dense = np.asarray(feature.data, dtype=np.float64).T
    else:
        raise ValueError(f"Unsupported descriptor type: {descriptor_type}")

    _, nearest = KDTree(points_of(cloud)).query(points_of(keypoints))
    return dense[np.atleast_1d(nearest)]


class MapFeatures:
    """Preprocessed map with keypoints and their descriptors"""

    def __init__(
        self,
        points: o3d.geometry.PointCloud,
        keypoints: o3d.geometry.PointCloud,
        descriptors: np.ndarray
    ):
        self.points = points
        self.keypoints = keypoints
        self.descriptors = descriptors

    @property
    def has_keypoints(self) -> bool:
        return len(self.keypoints.points) > 0 and self.descriptors.size > 0

    def __repr__(self):
        return (
            f"MapFeatures(points={len(self.points.points)}, "
            f"keypoints={len(self.keypoints.points)})"
        )


def compute_map_features(cloud: PointsLike, params, index: Optional[int] = None) -> MapFeatures:
    """
    Prepare one map for pairwise registration

    Downsample to params.resolution, remove outliers, estimate normals,
    detect keypoints and compute their descriptors.
    """
    resized = downsample(cloud, params.resolution)
    resized = remove_outliers(resized, params.descriptor_radius, params.outliers_min_neighbours)
    resized = compute_surface_normals(resized, params.normal_radius)
    keypoints = detect_keypoints(
        resized, params.keypoint_type, params.keypoint_threshold,
        params.normal_radius, params.resolution
    )
    descriptors = compute_local_descriptors(
        resized, keypoints, params.descriptor_type, params.descriptor_radius
    )

    features = MapFeatures(resized, keypoints, descriptors)
    label = f"Map {index}" if index is not None else "Map"
    logger.info(f"{label}: {features}")
    return features
