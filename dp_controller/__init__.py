"""
DP Controller module.

Reconciliation loop that picks up pending submissions and builds them on a
bounded pool of concurrent workers. Runs as its own process.
"""

from .controller import BuildController

__all__ = ["BuildController"]
