"""
Exceptions raised by retrievectl.

Item-level errors are recovered by the retriever and aggregated; operation-level
errors end the job as failed. None of them cross the background thread boundary.
"""

from typing import Any, Dict, Optional


class RetrievectlError(Exception):
    """Base exception for all retrievectl operations."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class DuplicateJobIdError(RetrievectlError):
    """Raised when a caller-supplied job id is already registered."""

    def __init__(self, job_id: str):
        super().__init__(f"Job with ID '{job_id}' already exists.", {"job_id": job_id})
        self.job_id = job_id


class JobNotFoundError(RetrievectlError):
    pass


class RegistryError(RetrievectlError):
    """Raised when the job database cannot be read or written."""

    pass


class ConfigurationError(RetrievectlError):
    pass


class RetrievalItemFailure(RetrievectlError):
    """A single item could not be fetched. The rest of the batch continues."""

    pass


class TransientRetrievalError(RetrievalItemFailure):
    """An item failure worth retrying (connection reset, 5xx, per-request timeout)."""

    pass


class RetrievalOperationFailure(RetrievectlError):
    """The whole operation failed: every item failed, or a fatal error occurred."""

    pass


class FatalRetrievalError(RetrievalOperationFailure):
    """Raised by an executor when no further item can succeed."""

    pass


class RetrievalTimeout(RetrievectlError):
    """The operation deadline passed before the work finished."""

    pass


class RetrievalCancelled(RetrievectlError):
    pass
