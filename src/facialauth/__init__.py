"""
facialauth - Face recognition as one factor in a login chain.

Trains per-user face models, persists them in a versioned container, and
decides within a bounded time window whether a live camera sample matches
an enrolled identity.
"""

__version__ = "0.1.0"

from facialauth.config import Settings
from facialauth.engine import Decision, DecisionEngine, Outcome, decide
from facialauth.model_store import Model, read_model, write_model

__all__ = [
    "__version__",
    "Settings",
    "Decision",
    "DecisionEngine",
    "Outcome",
    "decide",
    "Model",
    "read_model",
    "write_model",
]
