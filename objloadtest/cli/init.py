"""Init command — Validate parameters and prime the container and objects.

Exit codes:
    0  Initialization successful
    1  Invalid configuration or validation failure
    2  Unable to initialize the container
    3  Unable to initialize test objects
"""

from __future__ import annotations

from objloadtest.cli.common import prepare


def cmd_init(args: object) -> int:
    """Create the test container and pull test objects where needed.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code.
    """
    scheduler, logger = prepare(args, "init")
    if scheduler is None or not scheduler.validate():
        logger.error("Validation failed")
        return 1

    logger.info(f"Initializing container {scheduler.container}")
    if not scheduler.init_container():
        logger.error(
            f"Unable to initialize container {scheduler.container}"
        )
        return 2

    if not scheduler.init_objects():
        logger.error("Unable to initialize test objects")
        return 3

    logger.info("Test objects initialized successfully")
    return 0
