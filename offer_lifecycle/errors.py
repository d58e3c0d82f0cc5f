"""Typed, user-facing failures of the request/offer lifecycle.

Every error carries a stable `code` (shown to API clients) and a `kind`
from the small taxonomy below; the HTTP layer maps kinds to status codes.
"""

NOT_FOUND = "not_found"
INVALID_STATE = "invalid_state"
VALIDATION = "validation"
DUPLICATE = "duplicate"
RACE_LOST = "race_lost"
FORBIDDEN = "forbidden"
UPSTREAM = "upstream"


class LifecycleError(Exception):
    code = "lifecycle_error"
    kind = INVALID_STATE

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class RequestNotFound(LifecycleError):
    code = "request_not_found"
    kind = NOT_FOUND


class OfferNotFound(LifecycleError):
    code = "offer_not_found"
    kind = NOT_FOUND


class PriceEntryNotFound(LifecycleError):
    code = "price_entry_not_found"
    kind = NOT_FOUND


class RequestNotOpen(LifecycleError):
    """Request is already offered or expired."""
    code = "request_not_open"
    kind = INVALID_STATE


class SlaExpired(LifecycleError):
    """Deadline passed, whether or not the sweep has persisted it yet."""
    code = "sla_expired"
    kind = INVALID_STATE


class OfferNotPending(LifecycleError):
    code = "offer_not_pending"
    kind = INVALID_STATE


class OfferExpired(LifecycleError):
    code = "offer_expired"
    kind = INVALID_STATE


class PriceSpreadExceeded(LifecycleError):
    code = "price_spread_exceeded"
    kind = VALIDATION


class InvalidPrice(LifecycleError):
    code = "invalid_price"
    kind = VALIDATION


class MissingRequiredField(LifecycleError):
    code = "missing_required_field"
    kind = VALIDATION


class InvalidField(LifecycleError):
    code = "invalid_field"
    kind = VALIDATION


class UnknownProcedure(LifecycleError):
    code = "unknown_procedure"
    kind = VALIDATION


class DuplicateOffer(LifecycleError):
    code = "duplicate_offer"
    kind = DUPLICATE


class DuplicatePriceEntry(LifecycleError):
    code = "duplicate_price_entry"
    kind = DUPLICATE


class RaceLost(LifecycleError):
    """A conditional write found its precondition gone at commit time."""
    code = "race_lost"
    kind = RACE_LOST


class Forbidden(LifecycleError):
    code = "forbidden"
    kind = FORBIDDEN


class StoreError(LifecycleError):
    """Row-store transport failure; not something the caller can fix."""
    code = "store_unavailable"
    kind = UPSTREAM
