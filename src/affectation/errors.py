"""Error taxonomy shared by the geocoding, routing and matching services."""

from __future__ import annotations

from enum import Enum


class AffectationError(Exception):
    """Base class for every error raised by the affectation services."""


class ValidationError(AffectationError, ValueError):
    """Input that cannot be processed (empty or unparseable address, bad coordinates)."""


class ProviderError(AffectationError):
    """Network failure, timeout or non-success status from a geocode/route backend."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class NotFoundError(AffectationError):
    """The backend answered but found nothing for the query."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ConstraintViolation(AffectationError):
    """A hard constraint rejected one teacher/stage pair.

    This is an eligibility signal: the solver drops the candidate and keeps going.
    """

    def __init__(self, constraint: str, reason: str) -> None:
        super().__init__(reason)
        self.constraint = constraint
        self.reason = reason


class ConfigurationError(AffectationError):
    """A backend cannot be used as configured (missing credentials, unknown provider)."""


class ErrorKind(str, Enum):
    """Failure category carried by structured geocode/route results."""

    VALIDATION = "validation"
    PROVIDER = "provider"
    NOT_FOUND = "not_found"

    @classmethod
    def of(cls, error: AffectationError) -> "ErrorKind":
        if isinstance(error, ValidationError):
            return cls.VALIDATION
        if isinstance(error, NotFoundError):
            return cls.NOT_FOUND
        return cls.PROVIDER
