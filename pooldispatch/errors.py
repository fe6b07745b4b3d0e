"""
Error taxonomy for the dispatch core.
Services raise these; the HTTP layer maps status_code onto the response.
"""

from typing import Optional


class DispatchError(Exception):
    """Base class for errors surfaced to the caller."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DispatchError):
    """Referenced job, carer, pool or plan does not exist in the caller's org."""
    status_code = 404


class ForbiddenError(DispatchError):
    """Role or ownership guard failed."""
    status_code = 403


class InvalidRequestError(DispatchError):
    """Malformed input."""
    status_code = 400


class PreconditionFailedError(DispatchError):
    """State-machine guard violation."""
    status_code = 412


class DuplicateJobError(PreconditionFailedError):
    """A job for the same pool and start time already exists."""

    def __init__(self, message: str, existing_job_id: Optional[int] = None):
        super().__init__(message)
        self.existing_job_id = existing_job_id


class StaleOptimizationError(PreconditionFailedError):
    """Jobs changed between optimize and apply."""


class ProviderUnavailableError(DispatchError):
    """Mapping API misconfigured or failing."""
    status_code = 503
