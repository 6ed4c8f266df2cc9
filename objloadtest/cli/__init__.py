"""CLI commands for objloadtest."""

from __future__ import annotations

from objloadtest.cli.cleanup import cmd_cleanup
from objloadtest.cli.init import cmd_init
from objloadtest.cli.run import cmd_run

__all__ = [
    "cmd_cleanup",
    "cmd_init",
    "cmd_run",
]
