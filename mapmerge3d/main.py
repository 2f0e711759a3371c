#!/usr/bin/env python3
"""
mapmerge3d - merge overlapping 3D point-cloud maps
Command-line entry point
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import numpy as np
import open3d as o3d
import yaml
from tqdm import tqdm

from mapmerge3d.core.map_merging import compose_maps, estimate_maps_transforms
from mapmerge3d.core.params import MapMergingParams
from mapmerge3d.utils.logger import get_log_file_path, setup_logger
from mapmerge3d.utils.platform_utils import get_platform_name

logger = logging.getLogger("mapmerge3d.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="mapmerge3d - merge overlapping 3D point-cloud maps"
    )
    parser.add_argument(
        "inputs",
        nargs="+",
        type=Path,
        help="Input point cloud files (.pcd, .ply, ...)"
    )
    parser.add_argument(
        "-o", "--output",
        type=Path,
        default=Path("merged.pcd"),
        help="Output file for the merged map (default: merged.pcd)"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML file with merging parameters (command-line flags take precedence)"
    )
    parser.add_argument(
        "--save-transforms",
        type=Path,
        help="Write the estimated global transforms to this YAML file"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log debug messages to the console"
    )

    # Merging parameters; None means "use config file or default"
    options = parser.add_argument_group("merging parameters")
    options.add_argument("--resolution", type=float, help="Voxel size for preprocessing and output")
    options.add_argument("--normal-radius", dest="normal_radius", type=float)
    options.add_argument("--descriptor-radius", dest="descriptor_radius", type=float)
    options.add_argument("--descriptor-type", dest="descriptor_type", type=str, help="fpfh")
    options.add_argument("--keypoint-type", dest="keypoint_type", type=str, help="iss or voxel")
    options.add_argument("--keypoint-threshold", dest="keypoint_threshold", type=float)
    options.add_argument("--outliers-min-neighbours", dest="outliers_min_neighbours", type=int)
    options.add_argument(
        "--estimation-method",
        dest="estimation_method",
        type=str,
        choices=["matching", "sac_ia"]
    )
    options.add_argument(
        "--refine-transform",
        dest="refine_transform",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Refine each pairwise estimate with ICP"
    )
    options.add_argument("--inlier-threshold", dest="inlier_threshold", type=float)
    options.add_argument("--max-correspondence-distance", dest="max_correspondence_distance", type=float)
    options.add_argument("--max-iterations", dest="max_iterations", type=int)
    options.add_argument("--matching-k", dest="matching_k", type=int)
    options.add_argument("--transform-epsilon", dest="transform_epsilon", type=float)
    options.add_argument("--confidence-threshold", dest="confidence_threshold", type=float)
    options.add_argument("--max-workers", dest="max_workers", type=int)
    options.add_argument("--pair-timeout", dest="pair_timeout", type=float, help="Seconds per pair")
    return parser


def load_maps(paths: List[Path]) -> List[o3d.geometry.PointCloud]:
    """Read point clouds, raising FileNotFoundError/ValueError on bad input"""
    maps = []
    for path in paths:
        if not path.exists():
            raise FileNotFoundError(f"Input file does not exist: {path}")
        cloud = o3d.io.read_point_cloud(str(path))
        if not cloud.has_points():
            raise ValueError(f"No points could be read from {path}")
        logger.info(f"Loaded {path} ({len(cloud.points)} points)")
        maps.append(cloud)
    return maps


def save_transforms(path: Path, inputs: List[Path], transforms: List[Optional[np.ndarray]]):
    """Write transforms as YAML (null for maps that were not aligned)"""
    data = {
        'transforms': [
            {
                'file': str(source),
                'transform': transform.tolist() if transform is not None else None,
            }
            for source, transform in zip(inputs, transforms)
        ]
    }
    with open(path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(data, f, sort_keys=False)
    logger.info(f"Transforms written to {path}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if len(args.inputs) < 2:
        parser.error("at least two input maps are required")

    setup_logger("mapmerge3d", level=logging.DEBUG if args.verbose else logging.INFO)
    logger.info(f"mapmerge3d starting on {get_platform_name()}")
    log_path = get_log_file_path()
    if log_path:
        logger.info(f"Logging to: {log_path.absolute()}")

    try:
        base = MapMergingParams.from_yaml(args.config) if args.config else None
        params = MapMergingParams.from_args(args, base=base)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    logger.info(f"Parameters: {params}")

    try:
        maps = load_maps(args.inputs)
    except (OSError, ValueError) as e:
        logger.error(str(e))
        return 1

    with tqdm(total=100, desc="Merging", unit="%", disable=args.verbose) as progress:
        def report(percentage: int, message: str):
            progress.update(max(0, percentage - progress.n))
            progress.set_postfix_str(message)

        transforms = estimate_maps_transforms(maps, params, progress_callback=report)

    excluded = [str(path) for path, t in zip(args.inputs, transforms) if t is None]
    if len(excluded) == len(transforms):
        logger.error("No map could be aligned, nothing to merge")
        return 1
    if excluded:
        logger.warning(f"Maps left out of the merge: {excluded}")

    if args.save_transforms:
        save_transforms(args.save_transforms, args.inputs, transforms)

    merged = compose_maps(maps, transforms, params.resolution)
    if not o3d.io.write_point_cloud(str(args.output), merged):
        logger.error(f"Could not write merged map to {args.output}")
        return 1

    logger.info(f"Merged map written to {args.output} ({len(merged.points)} points)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
