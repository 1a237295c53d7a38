import argparse
import logging
from pathlib import Path

from config import RenderConfig, REMAINDER_POLICIES, IMAGE_FORMATS
from parallel_render import main_parallel

logger = logging.getLogger(__name__)


def positive_int(value: str) -> int:
    """argparse type for strictly positive integers."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {number}")
    return number


def positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a number, got {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    """
    Build the command line parser.

    Returns:
        argparse.ArgumentParser
    """
    parser = argparse.ArgumentParser(
        description="Ray trace one image split into vertical strips across MPI ranks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Render the built-in scene at 600x600 on 4 ranks
  mpirun -np 4 python main.py

  # 800x600, 4 samples per pixel, scene from file
  mpirun -np 8 python main.py 800 600 4 scenes/spheres.json

  # Fail instead of hanging when a rank goes missing
  mpirun -np 4 python main.py --timeout 120

  # Create default configuration file
  python main.py --create-config
        """
    )

    # Positional invocation parameters
    parser.add_argument('width', nargs='?', type=positive_int, default=600,
                        help="Output width in pixels (default: 600)")
    parser.add_argument('height', nargs='?', type=positive_int, default=600,
                        help="Output height in pixels (default: 600)")
    parser.add_argument('samples', nargs='?', type=positive_int, default=1,
                        help="Samples per pixel (default: 1)")
    parser.add_argument('scene_file', nargs='?', default='',
                        help="Scene file (default: built-in scene)")

    # Configuration file
    parser.add_argument('--config', type=str,
                        help="Path to JSON configuration file")
    parser.add_argument('--create-config', action='store_true',
                        help="Create default config file and exit")

    # Partition and exchange options
    par_group = parser.add_argument_group('parallel options')
    par_group.add_argument('--remainder-policy', choices=REMAINDER_POLICIES, default='last',
                           help="How leftover columns are assigned when width is not "
                                "divisible by the number of ranks")
    par_group.add_argument('--timeout', type=positive_float, default=None,
                           help="Seconds the root waits for each tile before aborting")

    # Output options
    output_group = parser.add_argument_group('output options')
    output_group.add_argument('--fig-name', type=str, default='raytracing',
                              help="Output filename prefix, the rank count is appended")
    output_group.add_argument('--format', choices=IMAGE_FORMATS, default='jpg',
                              help="Output image format")
    output_group.add_argument('--output-dir', type=str, default='.',
                              help="Output directory")
    output_group.add_argument('--save-raw', action='store_true',
                              help="Also save the float image buffer as HDF5")

    # Logging options
    log_group = parser.add_argument_group('logging options')
    log_group.add_argument('--verbose', '-v', action='store_true',
                           help="Enable verbose (DEBUG) logging")
    log_group.add_argument('--quiet', '-q', action='store_true',
                           help="Quiet mode (WARNING level logging)")

    return parser


def parse_args(argv=None):
    """
    Parse command line arguments.

    Returns:
        argparse.Namespace with parsed arguments
    """
    args = build_parser().parse_args(argv)
    if args.config and not Path(args.config).exists():
        build_parser().error(f"Configuration file not found: {args.config}")
    return args


def create_default_config(filepath: str = 'default_config.json') -> RenderConfig:
    """
    Create a default configuration and save to JSON.

    Returns:
        Default RenderConfig instance
    """
    config = RenderConfig()
    config.to_json(filepath)
    logger.info(f"Created {filepath}")
    return config


def main(argv=None):
    args = parse_args(argv)

    if args.create_config:
        logging.basicConfig(level=logging.INFO,
                            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        create_default_config()
        logger.info("Edit this file to customize your rendering, then run:")
        logger.info("  mpirun -np 4 python main.py --config default_config.json")
        return

    main_parallel(args)


if __name__ == "__main__":
    main()
