"""
Lifeworld CLI - terminal commands for metrics, convergence runs,
forecasting and the merge ledger.
"""

from .main import cli, main

__all__ = ["cli", "main"]
