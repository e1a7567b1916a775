"""
forrent/core/errors.py
Exception types shared across the service.
  • BackendError      → PostgREST / storage answered with a non-2xx status
  • RequestCancelled  → a CancelToken aborted the request (not a failure)
"""

from typing import Optional


class ForRentError(Exception):
    """Base class for every error raised by this package."""


class BackendError(ForRentError):
    def __init__(self, status: int, message: str = "", details: Optional[dict] = None):
        self.status  = status
        self.message = message
        self.details = details or {}
        super().__init__(f"backend error {status}: {message}" if message else f"backend error {status}")


class RequestCancelled(ForRentError):
    """Raised when a cancellation token aborts an in-flight request."""
