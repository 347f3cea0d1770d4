"""Modifier aggregation and durable job scheduling for empire simulations."""

from .errors import (
    ConfigurationError,
    EmpireError,
    HandlerError,
    JobStateError,
    LockTimeoutRecovered,
    TransientStoreError,
)
from .modifiers import compute_multiplier
from .service import EmpireService

__all__ = [
    "ConfigurationError",
    "EmpireError",
    "EmpireService",
    "HandlerError",
    "JobStateError",
    "LockTimeoutRecovered",
    "TransientStoreError",
    "compute_multiplier",
]
