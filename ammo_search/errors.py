"""Classified errors raised across the search core boundary."""

from typing import Iterable, Optional

from sqlalchemy import exc as sa_exc


class SearchError(Exception):
    """Base exception for classified search errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidLensError(SearchError):
    """Raised when a personalization lens id is malformed or unknown.

    Never retried internally; surfaced to the caller as a client error.
    """

    status_code = 400

    def __init__(self, lens_id: str, valid_lenses: Iterable[str] = ()):
        self.lens_id = lens_id
        self.valid_lenses = list(valid_lenses)
        super().__init__(
            f"Invalid lens '{lens_id}'",
            details={"lens_id": lens_id, "valid_lenses": self.valid_lenses},
        )


class SearchInfrastructureError(SearchError):
    """Raised when the data store itself is unreachable or failing."""

    status_code = 503


class ConsumerSafetyViolation(SearchError):
    """Raised when a response would expose an internal-only field."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Forbidden field in consumer output at {path}", details={"path": path})


def is_infrastructure_error(exc: BaseException) -> bool:
    """Check whether an exception means the data store itself is failing."""
    if isinstance(exc, SearchInfrastructureError):
        return True
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(
        exc,
        (
            sa_exc.OperationalError,
            sa_exc.InterfaceError,
            sa_exc.DisconnectionError,
            sa_exc.TimeoutError,
            ConnectionError,
        ),
    )
