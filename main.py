"""
Main entry point for the cron-driven portal notifier.
Runs one change detection cycle and exits with a code describing the outcome.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from monitor.models import DetectionResult
from monitor.service import PortalContext, PortalService
from portal.errors import (
    ConfigError,
    FailureClass,
    PortalError,
    classify_failure,
    exit_code_for,
)
from portal.http_fetcher import HttpPortalFetcher, resolve_parser
from storage.files import state_lock
from utilities.config import PortalConfig, load_config
from utilities.logger import get_logger, setup_logging


async def run(config: PortalConfig) -> Dict:
    """Run one notify cycle against the live portal."""
    parser = resolve_parser(config.parser)

    async with HttpPortalFetcher(config, parser) as fetcher:
        context = PortalContext.build(config, fetcher)
        service = PortalService(context)
        return await service.run_cycle()


def exit_code_for_results(results: Dict[object, DetectionResult]) -> int:
    """Non-zero (temporary failure) if any tracked kind could not be checked."""
    if any(not result.success for result in results.values()):
        return exit_code_for(FailureClass.NETWORK_TRANSIENT)
    return 0


def main() -> int:
    """Main function to run one cycle."""
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return exit_code_for(FailureClass.CONFIG)

    # Set up logging
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.get_log_file_path(),
        debug=config.debug
    )

    logger = get_logger(__name__)
    logger.info("Starting portal notifier", state_dir=str(config.state_dir))

    try:
        with state_lock(config.lock_file):
            results = asyncio.run(run(config))
    except PortalError as e:
        failure = classify_failure(e)
        logger.error("Notifier run failed", failure=failure.value, error=str(e))
        return exit_code_for(failure)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        return 130

    for kind, result in results.items():
        logger.info(
            "Detection result",
            kind=kind.value,
            success=result.success,
            baseline_created=result.baseline_created,
            changes_detected=result.changes_detected,
            errors=result.errors
        )

    return exit_code_for_results(results)


if __name__ == "__main__":
    sys.exit(main())
