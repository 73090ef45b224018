"""Weekly match-group formation engine."""

from .config import EngineConfig, SizePolicy, TableNames
from .engine import MatchEngine, RunSummary
from .errors import ConfigError, EngineError, PersistenceError, RunTimeout, ScoringError

__version__ = "0.1.0"
