"""cli-engineer: an autonomous plan, execute, review coding agent."""

__version__ = "1.2.0"
