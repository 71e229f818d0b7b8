"""
Image build entry point

Builds a Hyperstack image from a config file: creates a temporary VM,
provisions it over SSH, snapshots it, turns the snapshot into an image and
deletes the VM. A missing config file can be authored interactively.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

import dotenv

from . import authoring, config as build_config
from .client import HyperstackClient
from .errors import BuildError
from .orchestrator import BuildOrchestrator
from .provisioning import ProvisioningPipeline

logger = logging.getLogger(__name__)

API_KEY_ENV = "HYPERSTACK_API_KEY"
LOG_FILE = "build_image.log"


def configure_logging(log_file: Optional[str] = LOG_FILE) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Build a Hyperstack GPU image from a temporary VM'
    )

    parser.add_argument(
        'config',
        type=str,
        help='Path to the build config JSON file (created interactively if missing)'
    )

    return parser.parse_args(argv)


def _log_cause_chain(error: BaseException) -> None:
    cause = error.__cause__ or error.__context__
    while cause is not None:
        logger.error(f"  caused by: {type(cause).__name__}: {cause}")
        cause = cause.__cause__ or cause.__context__


def create_config_interactively(config_path: str) -> int:
    """Offer to author a missing config file."""
    print(f"Config file '{config_path}' not found.")
    answer = input("Would you like to create it interactively? (y/n): ")
    if answer.strip().lower() not in ['y', 'yes']:
        logger.error("Config file is required")
        return 1

    api_key = os.environ.get(API_KEY_ENV)
    if api_key:
        config = authoring.generate_with_api(HyperstackClient(api_key))
    else:
        print(f"{API_KEY_ENV} not set, using defaults...")
        config = authoring.generate()

    try:
        build_config.save(config, config_path)
    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        return 1

    print(f"Config saved to {config_path}")
    print("Please review the configuration and run the command again.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the image build."""
    args = parse_arguments(argv)
    configure_logging()
    dotenv.load_dotenv()

    if not os.path.exists(args.config):
        return create_config_interactively(args.config)

    logger.info("=" * 80)
    logger.info("Starting Image Build Process")
    logger.info("=" * 80)
    logger.info(f"Config: {args.config}")

    try:
        config = build_config.load(args.config)
        spec = config.to_build_spec()
        plan = config.provisioning.to_plan(os.path.dirname(os.path.abspath(args.config)))
    except BuildError as e:
        logger.error(f"Invalid config: {e}")
        return 1

    api_key = os.environ.get(API_KEY_ENV)
    if not api_key:
        logger.error(f"{API_KEY_ENV} environment variable is required")
        return 1

    logger.info(f"Region: {spec.region or '-'}")
    logger.info(f"VM Name: {spec.vm_name}")
    logger.info(f"Flavor: {spec.flavor_name}")
    logger.info(f"Output Image: {spec.output_image_name}")

    orchestrator = BuildOrchestrator(
        HyperstackClient(api_key),
        ProvisioningPipeline(plan)
    )

    try:
        result = orchestrator.build(spec)
    except BuildError as e:
        logger.error("")
        logger.error("=" * 80)
        logger.error("IMAGE BUILD FAILED")
        logger.error("=" * 80)
        logger.error(f"Error: {e}")
        _log_cause_chain(e)
        logger.error("=" * 80)
        return 1
    except KeyboardInterrupt:
        logger.error("Build interrupted")
        return 130

    logger.info("")
    logger.info("=" * 80)
    logger.info("IMAGE BUILD COMPLETED SUCCESSFULLY")
    logger.info("=" * 80)
    logger.info(f"Image ID: {result.image.id}")
    logger.info(f"Image Name: {result.image.name}")
    if not result.instance_deleted:
        logger.warning(f"VM {result.instance_id} was not deleted, remove it manually")
    logger.info("=" * 80)

    return 0


if __name__ == '__main__':
    sys.exit(main())
