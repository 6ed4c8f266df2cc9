"""Shared command setup — logging, configuration and scheduler."""

from __future__ import annotations

from objloadtest.config import ConfigError, RunConfig, load_run_config
from objloadtest.logging_setup import ContextLogger, get_logger, setup_logging
from objloadtest.providers import create_provider
from objloadtest.scheduler import TestScheduler


def prepare(
    args: object, phase: str,
) -> tuple[TestScheduler | None, ContextLogger]:
    """Configure logging and build the scheduler for a command.

    Args:
        args: Parsed CLI arguments with ``log_level`` and ``log_file``.
        phase: Tag added to every log line of the command.

    Returns:
        ``(scheduler, logger)``; the scheduler is None when the
        configuration or provider could not be loaded (already logged).
    """
    log_level = getattr(args, "log_level", None)
    log_file = getattr(args, "log_file", None)
    setup_logging(level=log_level, log_file=log_file)
    logger = get_logger(phase=phase)

    try:
        config: RunConfig = load_run_config()
    except ConfigError as exc:
        logger.error(f"Invalid configuration: {exc}")
        return None, logger

    setup_logging(
        level=log_level,
        log_file=log_file,
        secrets=[config.api_key, config.api_secret],
    )
    logger = get_logger(
        api=config.api, container=config.container, phase=phase,
    )
    try:
        provider = create_provider(config)
    except ValueError as exc:
        logger.error(str(exc))
        return None, logger
    return TestScheduler(config, provider), logger
