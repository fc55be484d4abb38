"""
paraflow: dependency analysis and git worktree isolation for parallel tasks.
"""

__version__ = "0.1.0"
