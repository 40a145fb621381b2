"""
Entry point for running workloop as a module.

Allows running as: python -m workloop
"""

from workloop.cli import cli_main

if __name__ == "__main__":
    cli_main()
