"""
errors.py

Failure kinds raised by the segmentation engine.

Business "exceptions" (units that could not be placed in a segment) are
regular output records, see models.SegmentException. The classes below are
for runs that cannot complete.
"""

from typing import Any, Dict


class SegmentationError(Exception):
    """Base class. Keyword arguments are kept as diagnostic context."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self):
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class PreconditionError(SegmentationError):
    """Input does not allow a run: empty scope, zero units, unknown node."""


class GeometryComputationError(SegmentationError):
    """Degenerate hull, unmapped unit, invalid tiling parameters."""


class ValidationError(GeometryComputationError):
    """Run output breaks a partition or geometry invariant."""


class PersistenceError(SegmentationError):
    """Transactional read/write or commit failed."""


class ScopeLockedError(SegmentationError):
    """Another run holds the claim for this election/node scope."""
