"""
Hierarchical PatchMatch MVS - Command Line Driver
=================================================

Estimates depth and normal maps for every problem listed in a dense folder's
pair.txt:

1. Read the problem list
2. Per problem: load images and cameras, run the (hierarchical) engine
3. Write depths/normals/costs/confidence dmb files (and optionally a PLY)

Usage:
    python run_patchmatch.py ./scan1
    python run_patchmatch.py ./scan1 --hierarchy --planar-prior
    python run_patchmatch.py ./scan1 --geom-consistency --multi-geometry
    python run_patchmatch.py ./scan1 --resume
"""

import argparse
import sys

from HierarchicalMVS import FatalError, PatchMatchConfig, PatchMatchPipeline
from HierarchicalMVS.logger import configure_root_logger, get_logger


def build_config(args: argparse.Namespace) -> PatchMatchConfig:
    """Configuration from an optional JSON file overridden by command-line flags"""
    config = PatchMatchConfig.load_json(args.config) if args.config else PatchMatchConfig()

    overrides = {
        "max_image_size": args.max_image_size,
        "num_iterations": args.iterations,
        "geom_iterations": args.geom_iterations,
        "num_downscale_levels": args.levels,
        "result_dir_name": args.result_dir,
        "seed": args.seed,
        "device": args.device,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)

    if args.geom_consistency:
        config.set_geom_consistency(multi_geometry=args.multi_geometry)
    if args.hierarchy:
        config.set_hierarchy()
    if args.planar_prior:
        config.set_planar_prior()
    if args.mand_consistency:
        config.set_mand_consistency(True)
    config.resume = config.resume or args.resume
    config.export_ply = config.export_ply or args.export_ply
    config.verbose = config.verbose or args.verbose
    if args.log_file:
        config.log_file = args.log_file
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hierarchical PatchMatch Multi-View Stereo")

    # Input
    parser.add_argument('dense_folder', type=str,
                       help='Dense folder with images/, cams/ and pair.txt')
    parser.add_argument('--config', type=str, default=None,
                       help='JSON configuration file (flags override it)')

    # Modes
    parser.add_argument('--geom-consistency', action='store_true',
                       help='Refine stored depth maps with geometric consistency')
    parser.add_argument('--multi-geometry', action='store_true',
                       help='Use depths_geom.dmb from a previous geometric pass')
    parser.add_argument('--geom-iterations', type=int, default=None,
                       help='Iterations of the geometric pass (default: 2)')
    parser.add_argument('--hierarchy', action='store_true',
                       help='Coarse-to-fine processing with joint bilateral upsampling')
    parser.add_argument('--planar-prior', action='store_true',
                       help='Re-run propagation regularized by a triangulated planar prior')
    parser.add_argument('--mand-consistency', action='store_true',
                       help='Reject views whose reprojection error reaches the maximum')
    parser.add_argument('--resume', action='store_true',
                       help='Warm-start from stored results; high-cost pixels are re-randomized')

    # Engine
    parser.add_argument('--max-image-size', type=int, default=None,
                       help='Maximum working image dimension (default: 3200)')
    parser.add_argument('--iterations', type=int, default=None,
                       help='Photometric iterations (default: 3)')
    parser.add_argument('--levels', type=int, default=None,
                       help='Number of downscaled pyramid levels with --hierarchy (default: 2)')
    parser.add_argument('--device', type=str, default=None,
                       help='torch device (default: cuda if available, else cpu)')
    parser.add_argument('--seed', type=int, default=None,
                       help='Seed of the per-pixel random streams (default: 0)')

    # Output
    parser.add_argument('--result-dir', type=str, default=None,
                       help='Result folder name inside the dense folder (default: HierarchicalMVS)')
    parser.add_argument('--export-ply', action='store_true',
                       help='Also write a per-view point cloud')

    # Logging
    parser.add_argument('--verbose', action='store_true',
                       help='Enable verbose logging')
    parser.add_argument('--log-file', type=str, default=None,
                       help='Log to file')

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    config = build_config(args)
    configure_root_logger(level='DEBUG' if config.verbose else 'INFO', log_file=config.log_file)
    logger = get_logger("driver")

    pipeline = PatchMatchPipeline(args.dense_folder, config)
    try:
        stats = pipeline.run()
    except FatalError as e:
        logger.critical(f"Fatal error: {e}")
        return 1

    if stats['processed'] == 0:
        logger.error("No problem was processed")
        return 1
    logger.info(f"✓ Done: {stats['processed']} processed, {stats['failed']} failed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
