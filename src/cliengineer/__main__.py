"""Main entry point for running cli-engineer as a module.

Usage:
    python -m cliengineer --help
    python -m cliengineer code "create a word counter"
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
