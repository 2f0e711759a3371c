"""
Integration tests running real Open3D registration on a synthetic room scene
"""

import numpy as np
import open3d as o3d
import pytest

from mapmerge3d.core.map_merging import estimate_maps_transforms
from mapmerge3d.core.params import MapMergingParams
from mapmerge3d.registration.features import compute_map_features
from mapmerge3d.registration.matching import (
    EstimationMethod,
    estimate_pairwise_transform,
    estimate_transform,
    estimate_transform_from_descriptors_sets,
)
from tests.helpers import apply_transform, rigid_transform, structured_scene


TRUTH = rigid_transform(25.0, axis=(0.2, 0.1, 1.0), translation=(0.4, -0.3, 0.2))


def scene_params(**overrides):
    options = dict(
        resolution=0.05,
        normal_radius=0.15,
        descriptor_radius=0.4,
        keypoint_type="voxel",
        keypoint_threshold=3.0,
        outliers_min_neighbours=5,
        inlier_threshold=0.1,
        max_correspondence_distance=0.2,
        max_iterations=100000,
        transform_epsilon=1e-6,
    )
    options.update(overrides)
    return MapMergingParams(**options)


@pytest.fixture(scope="module")
def scene():
    o3d.utility.random.seed(7)
    return structured_scene(seed=3)


@pytest.fixture(scope="module")
def scene_features(scene):
    params = scene_params()
    source = compute_map_features(scene, params)
    target = compute_map_features(apply_transform(scene, TRUTH), params)
    return source, target


class TestRealRegistration:
    """Test cases recovering a known rigid offset with Open3D"""

    def test_scene_has_keypoints(self, scene_features):
        source, target = scene_features
        assert source.has_keypoints and target.has_keypoints
        assert source.descriptors.shape[1] == 33

    @pytest.mark.parametrize("method", [EstimationMethod.MATCHING, EstimationMethod.SAC_IA])
    def test_methods_recover_known_offset(self, scene_features, method):
        source, target = scene_features
        params = scene_params()

        transform = estimate_transform(
            source, target,
            method=method,
            refine=True,
            inlier_threshold=params.inlier_threshold,
            max_correspondence_distance=params.max_correspondence_distance,
            max_iterations=params.max_iterations,
            matching_k=params.matching_k,
            transform_epsilon=params.transform_epsilon
        )

        assert transform is not None
        np.testing.assert_allclose(transform, TRUTH, atol=0.1)

    def test_initial_alignment_from_descriptor_sets(self, scene_features):
        source, target = scene_features

        transform = estimate_transform_from_descriptors_sets(
            source.keypoints, source.descriptors,
            target.keypoints, target.descriptors,
            max_correspondence_distance=0.2,
            max_iterations=100000
        )

        assert transform is not None
        assert np.linalg.norm(transform[:3, 3] - TRUTH[:3, 3]) < 0.3

    def test_pairwise_estimate_is_confident(self, scene_features):
        source, target = scene_features

        est = estimate_pairwise_transform(0, 1, source, target, scene_params())

        assert est.is_valid
        assert est.confidence > 0.0
        np.testing.assert_allclose(est.transform, TRUTH, atol=0.1)


class TestAlreadyAlignedMaps:
    """Maps sharing a frame register to the identity"""

    def test_identical_maps_merge_with_identity(self, scene):
        transforms = estimate_maps_transforms([scene, scene.copy()], scene_params(max_workers=1))

        assert len(transforms) == 2
        for transform in transforms:
            assert transform is not None
            np.testing.assert_allclose(transform, np.eye(4), atol=1e-3)
