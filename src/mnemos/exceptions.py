"""Error taxonomy for the memory engine.

Only ConfigurationError is allowed to escape to callers; the other classes are
raised inside a component and translated into a degraded result at its seam.
"""


class MnemosError(Exception):
    """Base exception for all memory engine errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(MnemosError):
    """Raised at startup when the engine cannot be configured (e.g. no data store)."""


class TransientIOError(MnemosError):
    """Raised when an embedding or classification call times out or fails."""


class DataIntegrityError(MnemosError):
    """Raised when a write would break the one-current-fact invariant."""


class BudgetExceededError(MnemosError):
    """Raised when required context cannot fit the configured ceiling."""


class RepairAmbiguousError(MnemosError):
    """Raised when a repair primitive cannot compute a single confident answer."""


class OperationTimeoutError(TransientIOError):
    """Raised when a provider call exceeds its time budget."""
