"""
Error taxonomy for the exposure models.

All errors are deterministic numerical or data failures. Each carries an
optional ``context`` mapping (exposure, feature pair, stratum) that is
rendered into the message so the caller can tell which unit of work failed.
"""


class ExposureModelError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, **context):
        self.message = message
        self.context = dict(context)
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
        return f"{self.message} [{ctx}]"

    def with_context(self, **context) -> "ExposureModelError":
        """Return a copy of this error with extra context merged in."""
        merged = {**self.context, **context}
        return type(self)(self.message, **merged)


class DataError(ExposureModelError):
    """Missing or invalid columns, non-positive weights, out-of-level values."""


class DesignError(DataError):
    """Degenerate survey design (missing linkage field, lonely PSU, bad weights)."""


class ConvergenceError(ExposureModelError):
    """IRLS exceeded its iteration or step-halving budget."""


class SingularMatrixError(ExposureModelError):
    """Information or design matrix is not invertible."""


class EmptyDatasetError(ExposureModelError):
    """Too few rows for the requested tree or forest parameters."""
