"""Error taxonomy shared by the session store, referral service and pages."""

from __future__ import annotations

from typing import Optional


INVALID_CREDENTIALS_MESSAGE = (
    "Invalid email or password. Please check your credentials and try again."
)
DUPLICATE_ACCOUNT_MESSAGE = (
    "This email is already registered. Please use a different email or try logging in."
)
SUBMISSION_FAILED_MESSAGE = "Failed to submit referral. Please try again."


class PortalError(Exception):
    """Base class for every user-facing failure raised by the portal."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PortalError):
    """Raised before any remote call when a form field is missing or malformed."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class InvalidCredentials(PortalError):
    def __init__(self, message: str = INVALID_CREDENTIALS_MESSAGE) -> None:
        super().__init__(message)


class DuplicateAccount(PortalError):
    def __init__(self, message: str = DUPLICATE_ACCOUNT_MESSAGE) -> None:
        super().__init__(message)


class ProviderError(PortalError):
    """Opaque failure reported by the hosted provider.

    ``message`` is passed through verbatim so pages can show it as is;
    ``code`` carries the provider's machine readable error code when present.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class SubmissionFailed(PortalError):
    def __init__(self, message: str = SUBMISSION_FAILED_MESSAGE) -> None:
        super().__init__(message)


class LoadFailed(PortalError):
    pass


__all__ = [
    "DUPLICATE_ACCOUNT_MESSAGE",
    "INVALID_CREDENTIALS_MESSAGE",
    "SUBMISSION_FAILED_MESSAGE",
    "DuplicateAccount",
    "InvalidCredentials",
    "LoadFailed",
    "PortalError",
    "ProviderError",
    "SubmissionFailed",
    "ValidationError",
]
