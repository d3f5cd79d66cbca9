"""
replisim command line interface.

Runs simulator scripts, computes replication expectations and generates
scripts from fixtures.
"""

from .main import cli, main

__all__ = ["main", "cli"]
