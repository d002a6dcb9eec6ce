"""Command-line interface adapters.

Provides commands for managing tracked errors:
- list, search, details: inspect issue groups
- resolve, unresolve, ignore: change a group's status
- chart: occurrence counts over time
- create_issue: open a ticket for a group
- cleanup, stats: retention and store statistics
- performance: APM summary and slowest endpoints
"""

from .commands import CLICommandHandler, run_command

__all__ = ["CLICommandHandler", "run_command"]
