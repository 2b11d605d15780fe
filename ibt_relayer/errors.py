"""
Error taxonomy for the bridge relayer.
"""


class RelayerError(Exception):
    """Base class for relayer errors."""


class QueryError(RelayerError):
    """A read from a chain failed. Transient; the cycle is skipped."""


class DeadlineExceededError(QueryError):
    """A read did not complete before its deadline."""


class SubmissionError(RelayerError):
    """A mint transaction could not be submitted or was rejected by the chain."""

    def __init__(self, message: str, tx_id: str | None = None):
        self.tx_id = tx_id
        super().__init__(message)


class SubmissionTimeoutError(SubmissionError):
    """
    A mint submission did not complete before its deadline.

    The transaction may still land; the outcome is unknown.
    """


class StartupConfigError(RelayerError):
    """Missing or invalid configuration. Fatal at startup."""
