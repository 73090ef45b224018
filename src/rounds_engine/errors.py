"""
Exception types raised by the match-group engine.

Per-item problems (one pair that cannot be scored, one group that cannot be
written) are caught and counted by the engine.  The exceptions below are the
ones that cross module boundaries.
"""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for engine failures."""


class ConfigError(EngineError):
    """Missing or invalid configuration.  Raised before any read happens."""


class PersistenceError(EngineError):
    """A DynamoDB read or write failed for a reason other than a condition check."""


class ScoringError(EngineError):
    """The compatibility oracle failed or returned something that is not a score."""


class RunTimeout(EngineError):
    """The run exceeded its wall-clock budget."""
