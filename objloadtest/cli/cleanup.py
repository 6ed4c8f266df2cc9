"""Cleanup command — Delete the objects and container a run created.

Exit codes:
    0  Cleanup successful
    1  Invalid configuration
    2  Unable to clean up test objects
    3  Unable to clean up the container
"""

from __future__ import annotations

from objloadtest.cli.common import prepare


def cmd_cleanup(args: object) -> int:
    """Remove manifest objects, then the container if it was created.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code.
    """
    scheduler, logger = prepare(args, "cleanup")
    if scheduler is None:
        return 1

    if not scheduler.cleanup_objects():
        logger.error("Unable to clean up objects")
        return 2
    logger.info("Objects cleaned up successfully")

    if not scheduler.cleanup_container():
        logger.error(
            f"Unable to clean up container {scheduler.container}"
        )
        return 3
    return 0
