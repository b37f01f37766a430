"""
Exception taxonomy for the layer grading engine.

Raster-level outcomes (not-found, upstream failure, timeout, insufficient
data) are raised by the sampler and converted into per-layer error entries
by the orchestrator.  Configuration errors are raised while the policy
table is constructed, before any grading task runs.
"""


class GradingError(Exception):
    """Base class for all grading engine errors."""

    pass


class RasterNotFoundError(GradingError):
    """Valid query, but the raster has no data at this coordinate."""

    pass


class RasterUpstreamError(GradingError):
    """The remote raster service failed (HTTP error, bad body, transport)."""

    pass


class RasterTimeoutError(RasterUpstreamError):
    """The remote raster service did not answer within the cell timeout."""

    pass


class InsufficientDataError(GradingError):
    """An area sample ended with zero usable grid cells."""

    def __init__(self, message: str, cells_total: int = 0, cells_not_found: int = 0,
                 cells_timed_out: int = 0, cells_failed: int = 0):
        super().__init__(message)
        self.cells_total = cells_total
        self.cells_not_found = cells_not_found
        self.cells_timed_out = cells_timed_out
        self.cells_failed = cells_failed


class InvalidConfigurationError(GradingError, ValueError):
    """The layer catalog or grading policy table is inconsistent."""

    pass


class LayerNotFoundError(GradingError, KeyError):
    """A layer id was requested that the policy table does not know."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead.
        return self.args[0] if self.args else ""


class GradingCancelledError(GradingError):
    """The grading run was cancelled before this task could complete."""

    pass
