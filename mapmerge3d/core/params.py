"""
Map merging parameters
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from mapmerge3d.registration.features import DescriptorType, KeypointType
from mapmerge3d.registration.matching import EstimationMethod, estimation_method as parse_estimation_method

logger = logging.getLogger(__name__)


DEFAULTS: Dict[str, Any] = {
    'resolution': 0.1,
    'normal_radius': 0.3,
    'descriptor_radius': 1.0,
    'descriptor_type': 'fpfh',
    'keypoint_type': 'iss',
    'keypoint_threshold': 5.0,
    'outliers_min_neighbours': 50,
    'estimation_method': 'matching',
    'refine_transform': True,
    'inlier_threshold': 5.0,
    'max_correspondence_distance': 5.0,
    'max_iterations': 100,
    'matching_k': 5,
    'transform_epsilon': 1e-2,
    'confidence_threshold': 0.0,
    'max_workers': None,
    'pair_timeout': None,
}


class MapMergingParams:
    """
    Options for map merging

    Type names (descriptor_type, keypoint_type, estimation_method) are
    resolved to enums here, so an unsupported name fails before any map
    is processed.
    """

    def __init__(
        self,
        resolution: float = DEFAULTS['resolution'],
        normal_radius: float = DEFAULTS['normal_radius'],
        descriptor_radius: float = DEFAULTS['descriptor_radius'],
        descriptor_type: Union[str, DescriptorType] = DEFAULTS['descriptor_type'],
        keypoint_type: Union[str, KeypointType] = DEFAULTS['keypoint_type'],
        keypoint_threshold: float = DEFAULTS['keypoint_threshold'],
        outliers_min_neighbours: int = DEFAULTS['outliers_min_neighbours'],
        estimation_method: Union[str, EstimationMethod] = DEFAULTS['estimation_method'],
        refine_transform: bool = DEFAULTS['refine_transform'],
        inlier_threshold: float = DEFAULTS['inlier_threshold'],
        max_correspondence_distance: float = DEFAULTS['max_correspondence_distance'],
        max_iterations: int = DEFAULTS['max_iterations'],
        matching_k: int = DEFAULTS['matching_k'],
        transform_epsilon: float = DEFAULTS['transform_epsilon'],
        confidence_threshold: float = DEFAULTS['confidence_threshold'],
        max_workers: Optional[int] = DEFAULTS['max_workers'],
        pair_timeout: Optional[float] = DEFAULTS['pair_timeout']
    ):
        """
        Args:
            resolution: Voxel size for preprocessing and for the merged map
            normal_radius: Neighbourhood radius for normals and keypoint saliency
            descriptor_radius: Support radius of local descriptors and outlier search
            descriptor_type: Local descriptor name ('fpfh')
            keypoint_type: Keypoint detector name ('iss', 'voxel')
            keypoint_threshold: Detector specific threshold
            outliers_min_neighbours: Minimum neighbours within descriptor_radius to keep a point
            estimation_method: 'matching' or 'sac_ia'
            refine_transform: Run ICP after the initial estimate
            inlier_threshold: RANSAC inlier distance
            max_correspondence_distance: Max point distance for SAC-IA, ICP and scoring
            max_iterations: Iterations for SAC-IA and ICP
            matching_k: Neighbours considered per descriptor when matching
            transform_epsilon: ICP convergence threshold
            confidence_threshold: Minimum confidence of an estimate used for merging
            max_workers: Parallel pairwise estimations (None = physical cores)
            pair_timeout: Seconds to wait for one pair before treating it as failed
                (None = wait indefinitely)
        """
        self.resolution = float(resolution)
        self.normal_radius = float(normal_radius)
        self.descriptor_radius = float(descriptor_radius)
        self.descriptor_type = DescriptorType.from_name(descriptor_type)
        self.keypoint_type = KeypointType.from_name(keypoint_type)
        self.keypoint_threshold = float(keypoint_threshold)
        self.outliers_min_neighbours = int(outliers_min_neighbours)
        self.estimation_method = parse_estimation_method(estimation_method)
        self.refine_transform = bool(refine_transform)
        self.inlier_threshold = float(inlier_threshold)
        self.max_correspondence_distance = float(max_correspondence_distance)
        self.max_iterations = int(max_iterations)
        self.matching_k = int(matching_k)
        self.transform_epsilon = float(transform_epsilon)
        self.confidence_threshold = float(confidence_threshold)
        self.max_workers = int(max_workers) if max_workers is not None else None
        self.pair_timeout = float(pair_timeout) if pair_timeout is not None else None

        self._validate()

    def _validate(self):
        for name in ('resolution', 'normal_radius', 'descriptor_radius',
                     'inlier_threshold', 'max_correspondence_distance'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {self.max_iterations}")
        if self.matching_k < 1:
            raise ValueError(f"matching_k must be at least 1, got {self.matching_k}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.pair_timeout is not None and self.pair_timeout <= 0:
            raise ValueError(f"pair_timeout must be positive, got {self.pair_timeout}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary of plain values"""
        data = {name: getattr(self, name) for name in DEFAULTS}
        data['descriptor_type'] = self.descriptor_type.value
        data['keypoint_type'] = self.keypoint_type.value
        data['estimation_method'] = self.estimation_method.value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MapMergingParams':
        """Create from dictionary; unknown keys are ignored with a warning"""
        data = dict(data or {})
        unknown = sorted(set(data) - set(DEFAULTS))
        if unknown:
            logger.warning(f"Ignoring unknown map merging options: {unknown}")
        return cls(**{key: value for key, value in data.items() if key in DEFAULTS})

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'MapMergingParams':
        """
        Load parameters from a YAML file

        Options may be at the top level or under a 'map_merge' section.
        """
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping in {path}, got {type(data).__name__}")
        if isinstance(data.get('map_merge'), dict):
            data = data['map_merge']
        return cls.from_dict(data)

    @classmethod
    def from_args(cls, args, base: Optional['MapMergingParams'] = None) -> 'MapMergingParams':
        """
        Override parameters with values from an argparse namespace

        Attributes that are missing or None on args keep the base value.
        """
        data = base.to_dict() if base is not None else dict(DEFAULTS)
        for name in DEFAULTS:
            value = getattr(args, name, None)
            if value is not None:
                data[name] = value
        return cls.from_dict(data)

    def __repr__(self):
        options = ", ".join(f"{key}={value!r}" for key, value in self.to_dict().items())
        return f"MapMergingParams({options})"
