# ncaggregator/exceptions.py

"""
Errors raised by the aggregation engine.

Configuration errors are raised before any file is opened, input integrity
errors abort the run without writing anything, and a WriteFailure still hands
the audit rows computed so far back to the caller.
"""


class AggregationError(Exception):
    """Base class for every error raised by the aggregation engine."""


# --- Configuration errors ---

class ConfigurationError(AggregationError, ValueError):
    """The run configuration is invalid. Detected before any I/O."""


class UnknownReducer(ConfigurationError):
    pass


class InvalidAggregationLength(ConfigurationError):
    pass


class InvalidGeopotentialConfig(ConfigurationError):
    pass


# --- Input integrity errors ---

class InputIntegrityError(AggregationError):
    """The source data cannot be aggregated safely. Fatal to the run."""


class MalformedFilename(InputIntegrityError):
    pass


class DuplicateTimestamp(InputIntegrityError):
    pass


class NonMonotonicTime(InputIntegrityError):
    pass


class InconsistentGrid(InputIntegrityError):
    pass


class UnexpectedStepCount(InputIntegrityError):
    pass


class VariableNotFound(InputIntegrityError):
    pass


class ShapeMismatch(InputIntegrityError):
    pass


# --- Resource errors ---

class WriteFailure(AggregationError, OSError):
    """
    The output file could not be produced.

    Attributes:
        audit_rows (list): Audit rows computed before the failure, for diagnostics.
    """

    def __init__(self, message, audit_rows=None):
        super().__init__(message)
        self.audit_rows = list(audit_rows or [])
