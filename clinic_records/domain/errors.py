"""Error taxonomy raised by the domain services and the repository."""

from __future__ import annotations


class ClinicError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "clinic_error"
    default_message = "request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidCredentials(ClinicError):
    code = "invalid_credentials"
    default_message = "invalid credentials"


class AccountBlocked(ClinicError):
    code = "account_blocked"
    default_message = "your account is blocked because of pending payments; please settle them to regain access"


class AccountSuspended(ClinicError):
    code = "account_suspended"
    default_message = "your account has been suspended"


class NotFound(ClinicError):
    code = "not_found"
    default_message = "not found"


class AlreadySettled(ClinicError):
    code = "already_settled"
    default_message = "payment obligation is already paid"


class Conflict(ClinicError):
    code = "conflict"
    default_message = "resource already exists"


class ValidationFailed(ClinicError):
    code = "validation_failed"
    default_message = "invalid request"


class StoreError(ClinicError):
    code = "store_error"
    default_message = "data store unavailable"


class Forbidden(ClinicError):
    code = "forbidden"
    default_message = "not allowed"
