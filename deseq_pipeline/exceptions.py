"""
Exception types raised by the pipeline.

Per-gene numerical problems never raise; they are reported through the
``status`` column of the results table instead.
"""


class PipelineError(Exception):
    """Base class for fatal pipeline errors."""


class ReconciliationError(PipelineError, ValueError):
    """Counts and sample metadata cannot be aligned."""


class DesignError(PipelineError, ValueError):
    """The condition design cannot be analysed (e.g. too few samples in a group)."""


class FittingError(PipelineError, RuntimeError):
    """A global fitting step (size factors, dispersion trend) failed."""
