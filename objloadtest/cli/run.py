"""Run command — Execute the rampup and steady-state test loop.

Prints a ``[results]`` header followed by one ``key=value`` line per
metric on stdout once testing is complete.
"""

from __future__ import annotations

from objloadtest.cli.common import prepare
from objloadtest.scheduler import SchedulerState
from objloadtest.stats import format_report
from objloadtest.utils import format_bytes, format_duration


def cmd_run(args: object) -> int:
    """Run the configured test.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code (0 when testing completed, 1 when it aborted).
    """
    scheduler, logger = prepare(args, "run")
    if scheduler is None or not scheduler.validate():
        logger.error("Validation failed")
        return 1

    if not scheduler.init_objects():
        logger.error("Unable to initiate test objects")
        return 1

    logger.info(
        f"Starting {scheduler.config.type} test of "
        f"{len(scheduler.queue)} queue entries for "
        f"{format_duration(scheduler.config.duration)}"
    )
    report = scheduler.run()
    if report is None:
        logger.error("Testing aborted before any measurement")
        return 1

    print("\n\n[results]")
    print(format_report(report))

    logger.info(
        f"FINAL: ops={report['ops']:,}, "
        f"transfer={format_bytes(report['transfer'])}, "
        f"status codes={report['status_codes'] or '-'}, "
        f"elapsed={format_duration(scheduler.elapsed())}"
    )
    return 0 if scheduler.state is SchedulerState.DONE else 1
