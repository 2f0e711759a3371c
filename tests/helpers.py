"""Shared helpers for building synthetic transforms, estimates and clouds"""

import numpy as np

from mapmerge3d.core.estimates import TransformEstimate


def rigid_transform(angle_deg: float = 0.0, axis=(0.0, 0.0, 1.0), translation=(0.0, 0.0, 0.0)) -> np.ndarray:
    """4x4 rotation about axis followed by translation"""
    axis = np.asarray(axis, dtype=np.float64)
    axis = axis / np.linalg.norm(axis)
    angle = np.radians(angle_deg)
    k = np.array([
        [0.0, -axis[2], axis[1]],
        [axis[2], 0.0, -axis[0]],
        [-axis[1], axis[0], 0.0],
    ])
    rotation = np.eye(3) + np.sin(angle) * k + (1.0 - np.cos(angle)) * (k @ k)
    transform = np.eye(4)
    transform[:3, :3] = rotation
    transform[:3, 3] = translation
    return transform


def random_poses(n: int, seed: int = 0):
    """n random map poses (map frame -> world frame)"""
    rng = np.random.default_rng(seed)
    return [
        rigid_transform(rng.uniform(-90, 90), rng.normal(size=3), rng.uniform(-5, 5, size=3))
        for _ in range(n)
    ]


def estimate_from_poses(poses, source_idx: int, target_idx: int, confidence: float) -> TransformEstimate:
    """Exact estimate mapping source frame into target frame"""
    transform = np.linalg.inv(poses[target_idx]) @ poses[source_idx]
    return TransformEstimate(source_idx, target_idx, transform, confidence)


def sorted_rows(points: np.ndarray) -> np.ndarray:
    """Rows sorted lexicographically, for order-independent comparison"""
    points = np.asarray(points)
    if len(points) == 0:
        return points.reshape(0, 3)
    return points[np.lexsort(points.T[::-1])]


def sample_rectangle(rng, origin, u, v, density: float) -> np.ndarray:
    """Uniform samples on the parallelogram origin + a*u + b*v, a, b in [0, 1]"""
    origin, u, v = (np.asarray(x, dtype=np.float64) for x in (origin, u, v))
    count = max(1, int(np.linalg.norm(np.cross(u, v)) * density))
    a, b = rng.uniform(size=(2, count, 1))
    return origin + a * u + b * v


def structured_scene(seed: int = 0, density: float = 600.0) -> np.ndarray:
    """Room corner: a 4x4 m floor, two 2 m walls and three boxes of different sizes"""
    rng = np.random.default_rng(seed)
    faces = [
        ((0, 0, 0), (4, 0, 0), (0, 4, 0)),
        ((0, 0, 0), (4, 0, 0), (0, 0, 2)),
        ((0, 0, 0), (0, 4, 0), (0, 0, 2)),
    ]
    for x, y, sx, sy, sz in [(1.0, 1.0, 0.6, 0.4, 0.5), (2.5, 1.5, 0.3, 0.8, 0.3), (1.5, 3.0, 0.5, 0.5, 0.9)]:
        faces += [
            ((x, y, sz), (sx, 0, 0), (0, sy, 0)),
            ((x, y, 0), (sx, 0, 0), (0, 0, sz)),
            ((x, y + sy, 0), (sx, 0, 0), (0, 0, sz)),
            ((x, y, 0), (0, sy, 0), (0, 0, sz)),
            ((x + sx, y, 0), (0, sy, 0), (0, 0, sz)),
        ]
    return np.vstack([sample_rectangle(rng, *face, density) for face in faces])


def apply_transform(points: np.ndarray, transform: np.ndarray) -> np.ndarray:
    return points @ transform[:3, :3].T + transform[:3, 3]
