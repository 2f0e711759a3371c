"""
mapmerge3d - merge overlapping 3D point-cloud maps into one global map
"""

from mapmerge3d.core.estimates import TransformEstimate, is_sentinel
from mapmerge3d.core.map_merging import (
    compose_maps,
    compute_global_transforms,
    estimate_maps_transforms,
)
from mapmerge3d.core.params import MapMergingParams

__version__ = "0.1.0"

__all__ = [
    "MapMergingParams",
    "TransformEstimate",
    "compose_maps",
    "compute_global_transforms",
    "estimate_maps_transforms",
    "is_sentinel",
]
