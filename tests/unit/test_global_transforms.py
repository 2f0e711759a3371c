"""
Unit tests for transform lookup and global transform composition
"""

import numpy as np
import pytest

from mapmerge3d.core.estimates import TransformEstimate, is_sentinel, number_of_nodes
from mapmerge3d.core.map_merging import compute_global_transforms, get_transform
from tests.helpers import estimate_from_poses, random_poses, rigid_transform


class TestTransformEstimate:
    """Test cases for the estimate record"""

    def test_zero_matrix_is_stored_as_failure(self):
        est = TransformEstimate(0, 1, np.zeros((4, 4)), confidence=3.0)
        assert not est.is_valid
        assert est.transform is None
        assert est.confidence == 0.0

    def test_indices_must_be_ordered(self):
        with pytest.raises(ValueError):
            TransformEstimate(2, 1, np.eye(4), 1.0)
        with pytest.raises(ValueError):
            TransformEstimate(1, 1, np.eye(4), 1.0)

    def test_dict_round_trip_keeps_failure(self):
        est = TransformEstimate.from_dict(TransformEstimate.failed(0, 3).to_dict())
        assert est.nodes == (0, 3)
        assert not est.is_valid

    def test_is_sentinel(self):
        assert is_sentinel(None)
        assert is_sentinel(np.zeros((4, 4)))
        assert not is_sentinel(np.eye(4))

    def test_number_of_nodes(self):
        estimates = [TransformEstimate.failed(0, 4), TransformEstimate.failed(1, 2)]
        assert number_of_nodes(estimates) == 5
        assert number_of_nodes([]) == 0


class TestGetTransform:
    """Test cases for direction-aware transform lookup"""

    def test_stored_order_returns_inverse(self):
        transform = rigid_transform(30.0, translation=(1.0, 2.0, 3.0))
        estimates = [TransformEstimate(0, 1, transform, 1.0)]
        np.testing.assert_allclose(get_transform(estimates, 0, 1), np.linalg.inv(transform))

    def test_reverse_order_returns_stored(self):
        transform = rigid_transform(30.0, translation=(1.0, 2.0, 3.0))
        estimates = [TransformEstimate(0, 1, transform, 1.0)]
        np.testing.assert_allclose(get_transform(estimates, 1, 0), transform)

    def test_missing_pair(self):
        estimates = [TransformEstimate(0, 1, np.eye(4), 1.0), TransformEstimate.failed(1, 2)]
        assert get_transform(estimates, 0, 2) is None
        assert get_transform(estimates, 1, 2) is None


class TestComputeGlobalTransforms:
    """Test cases for chaining transforms from the reference frame"""

    def test_triangle_scenario(self):
        poses = random_poses(3, seed=1)
        estimates = [
            estimate_from_poses(poses, 0, 1, 5.0),
            estimate_from_poses(poses, 0, 2, 3.0),
            estimate_from_poses(poses, 1, 2, 9.0),
        ]

        result = compute_global_transforms(estimates, confidence_threshold=0.0)

        assert len(result) == 3
        # Node 1 is the center of the tree {(0, 1), (1, 2)}
        np.testing.assert_array_equal(result[1], np.eye(4))
        for i in range(3):
            expected = np.linalg.inv(poses[1]) @ poses[i]
            np.testing.assert_allclose(result[i], expected, atol=1e-9)

    def test_inconsistent_weak_edge_is_ignored(self):
        poses = random_poses(3, seed=2)
        bad = TransformEstimate(0, 2, rigid_transform(45.0, translation=(9.0, 9.0, 9.0)), 3.0)
        estimates = [estimate_from_poses(poses, 0, 1, 5.0), bad, estimate_from_poses(poses, 1, 2, 9.0)]

        result = compute_global_transforms(estimates, confidence_threshold=0.0)

        expected = np.linalg.inv(poses[1]) @ poses[2]
        np.testing.assert_allclose(result[2], expected, atol=1e-9)

    def test_connected_graph_has_no_missing_entries(self):
        poses = random_poses(6, seed=4)
        estimates = [estimate_from_poses(poses, i, i + 1, 1.0 + i) for i in range(5)]

        result = compute_global_transforms(estimates, confidence_threshold=0.0)

        assert all(t is not None for t in result)
        np.testing.assert_array_equal(result[2], np.eye(4))

    def test_relative_transforms_match_ground_truth(self):
        poses = random_poses(5, seed=5)
        estimates = [
            estimate_from_poses(poses, i, j, float(i + j))
            for i in range(5) for j in range(i + 1, 5)
        ]

        result = compute_global_transforms(estimates, confidence_threshold=0.0)

        for i in range(5):
            for j in range(5):
                i_to_j = np.linalg.inv(result[j]) @ result[i]
                expected = np.linalg.inv(poses[j]) @ poses[i]
                np.testing.assert_allclose(i_to_j, expected, atol=1e-9)

    def test_disconnected_maps_are_missing(self):
        poses = random_poses(5, seed=6)
        estimates = [
            estimate_from_poses(poses, 0, 1, 8.0),
            TransformEstimate.failed(1, 2),
            estimate_from_poses(poses, 2, 3, 1.0),
            estimate_from_poses(poses, 3, 4, 1.0),
        ]

        result = compute_global_transforms(estimates, confidence_threshold=0.0)

        assert result[0] is None
        assert result[1] is None
        np.testing.assert_array_equal(result[3], np.eye(4))
        np.testing.assert_allclose(result[4], np.linalg.inv(poses[3]) @ poses[4], atol=1e-9)

    def test_low_confidence_split(self):
        poses = random_poses(4, seed=7)
        estimates = [
            estimate_from_poses(poses, 0, 1, 5.0),
            estimate_from_poses(poses, 1, 2, 0.1),
            estimate_from_poses(poses, 2, 3, 5.0),
        ]

        result = compute_global_transforms(estimates, confidence_threshold=1.0)

        # Components {0, 1} and {2, 3} tie; the one with map 0 wins
        np.testing.assert_array_equal(result[0], np.eye(4))
        assert result[1] is not None
        assert result[2] is None
        assert result[3] is None

    def test_two_maps_without_surviving_edge(self):
        estimates = [TransformEstimate(0, 1, rigid_transform(5.0), 0.5)]
        result = compute_global_transforms(estimates, confidence_threshold=1.0)
        assert result == [None, None]

    def test_total_estimation_failure(self):
        estimates = [TransformEstimate.failed(i, j) for i in range(4) for j in range(i + 1, 4)]
        result = compute_global_transforms(estimates, confidence_threshold=0.0)
        assert result == [None, None, None, None]

    def test_length_follows_map_count(self):
        poses = random_poses(2, seed=8)
        estimates = [estimate_from_poses(poses, 0, 1, 1.0)]
        result = compute_global_transforms(estimates, confidence_threshold=0.0, n_maps=4)
        assert len(result) == 4
        assert result[2] is None and result[3] is None

    def test_map_count_smaller_than_estimates(self):
        poses = random_poses(4, seed=9)
        estimates = [estimate_from_poses(poses, 0, 3, 1.0)]
        with pytest.raises(ValueError):
            compute_global_transforms(estimates, confidence_threshold=0.0, n_maps=3)
