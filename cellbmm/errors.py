from typing import Optional


class CellBmmError(Exception):
    """Base class for all errors raised by cellbmm."""


class DegenerateInputError(CellBmmError):
    """Input cannot support the computation: too few points for a triangulation,
    or a spatial frame without any prior cell center."""

    def __init__(self, message: str, frame_id: Optional[int] = None):
        self.message = message
        self.frame_id = frame_id
        super().__init__(message if frame_id is None else f"Frame {frame_id}: {message}")

    def __reduce__(self):
        # keeps frame_id when raised inside a worker process
        return (type(self), (self.message, self.frame_id))


class InconsistencyError(CellBmmError):
    """Internal invariant violated (e.g. assignment counts vs component sample counts)."""


class InvalidConfigurationError(CellBmmError, ValueError):
    """Unsupported option value or degenerate configuration input."""
