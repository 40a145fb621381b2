"""CLI package for workloop.

Modules:
    app.py      - Main Typer app, version callback, sub-app registration
    session.py  - Session commands (classify, budget, start, build, resume, cancel, status, ...)
    hooks.py    - Host hook commands (stop, tool, context, compact, end)
    leases.py   - Lease recovery commands (list, sweep, release, supervise)
    display.py  - Rich formatting utilities
    common.py   - Shared helpers (get_console, load_config_or_exit, build_controller)

Usage:
    from workloop.cli import app, cli_main
"""
from workloop.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
