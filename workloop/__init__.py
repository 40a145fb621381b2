"""
workloop - iterative agentic-workflow session controller.

Drives a long-running worker through planning and building iterations
against a dependency-aware issue tracker, with bounded retries, iteration
budgets and isolated git worktrees that are always cleaned up.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
