"""Billing error taxonomy.

Every error carries a machine-readable ``kind`` and the HTTP status the API
layer maps it to, so callers branch on the type (or ``kind``), never on the
message text.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all errors raised by the billing core."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(BillingError):
    """Malformed or missing input."""

    kind = "validation_error"
    status_code = 400


class InvalidPlanError(ValidationError):
    """The requested plan is not available for purchase."""

    kind = "invalid_plan"


class CouponInvalidError(ValidationError):
    """The coupon cannot be applied."""

    kind = "coupon_invalid"

    def __init__(self, message: str = "", reason: str = "invalid"):
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class PermissionDeniedError(BillingError):
    """The caller may not perform this operation."""

    kind = "permission_denied"
    status_code = 403


class NotFoundError(BillingError):
    """A referenced entity does not exist."""

    kind = "not_found"
    status_code = 404


class StateConflictError(BillingError):
    """The operation conflicts with the current state; re-read and retry."""

    kind = "state_conflict"
    status_code = 409


class IllegalTransitionError(StateConflictError):
    """The requested state transition is not permitted."""

    kind = "illegal_transition"


class CouponExhaustedError(CouponInvalidError, StateConflictError):
    """The coupon has no remaining uses."""

    kind = "coupon_exhausted"
    status_code = 409

    def __init__(self, message: str = ""):
        super().__init__(message, reason="exhausted")


class InvariantViolationError(BillingError):
    """The request would break a ledger invariant."""

    kind = "invariant_violation"
    status_code = 400


class ExternalDependencyError(BillingError):
    """A collaborator (e.g. the payment gateway) could not be reached."""

    kind = "external_dependency"
    status_code = 502
