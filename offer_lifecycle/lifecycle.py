"""Pure lifecycle rules: deadlines, expiry evaluation, transitions and offer parsing.

Nothing here touches the store or the clock; callers pass `now` explicitly so the
same functions back lazy reads, the sweep and the write path.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .catalog import DURATION_LABELS, HOSPITALIZATION_LABELS
from .config import MAX_PRICE_CENTS, MAX_PRICE_SPREAD_CENTS, OFFER_RESPONSE_WINDOW, SLA_WINDOW
from .errors import (
    InvalidField,
    InvalidPrice,
    MissingRequiredField,
    PriceSpreadExceeded,
    RequestNotOpen,
    SlaExpired,
)
from .models import Offer, OfferDraft, Request

_CENT = Decimal("0.01")
_MAX_AMOUNT = Decimal(MAX_PRICE_CENTS) / 100

# (current, target) pairs the request status may take; everything else is refused
REQUEST_TRANSITIONS = {
    ("new", "offered"),
    ("new", "expired"),
}

_MANUAL_REQUIRED = ("doctor_name", "procedure_address", "duration_label", "hospitalization_label")
_SERVICES = ("accommodation", "transport", "consultation")


def sla_deadline_for(created_at: datetime) -> datetime:
    return created_at + SLA_WINDOW


def offer_expiry_for(submitted_at: datetime) -> datetime:
    return submitted_at + OFFER_RESPONSE_WINDOW


def evaluate_expiry(request: Request, now: datetime) -> Request:
    """Return the request as it reads at `now`: a `new` request past its deadline is `expired`."""
    if request.status == "new" and now >= request.sla_deadline_at:
        return request.model_copy(update={"status": "expired"})
    return request


def evaluate_offer_expiry(offer: Offer, now: datetime) -> Offer:
    if offer.status == "pending" and now >= offer.expires_at:
        return offer.model_copy(update={"status": "expired"})
    return offer


def check_request_transition(current: str, target: str) -> None:
    if (current, target) not in REQUEST_TRANSITIONS:
        raise RequestNotOpen(f"Request cannot move from {current} to {target}", current=current, target=target)


def ensure_open_for_offers(request: Request, now: datetime) -> None:
    """Raise unless an offer may still be attached to `request` at `now`."""
    if request.status == "new" and now >= request.sla_deadline_at:
        raise SlaExpired("The 24-hour response window for this request has closed", request_id=request.id)
    if request.status != "new":
        raise RequestNotOpen(f"Request is already {request.status}", request_id=request.id, status=request.status)


def to_cents(value: Any, field: str = "amount") -> int:
    """Convert a decimal amount (str, int or float) to integer cents without rounding."""
    if value is None or value == "":
        raise MissingRequiredField(f"{field} is required", field=field)
    if isinstance(value, bool):
        raise InvalidPrice(f"{field} must be a number", field=field)
    try:
        # str() first so floats convert by their shortest repr, not their binary expansion
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidPrice(f"{field} must be a number", field=field) from None
    if not amount.is_finite():
        raise InvalidPrice(f"{field} must be a finite number", field=field)
    if amount <= 0:
        raise InvalidPrice(f"{field} must be greater than zero", field=field)
    # bound first: quantize needs the result to fit the context precision
    if amount > _MAX_AMOUNT:
        raise InvalidPrice(f"{field} may not exceed {_MAX_AMOUNT:,.0f} USD", field=field)
    if amount != amount.quantize(_CENT):
        raise InvalidPrice(f"{field} has more precision than one cent", field=field)
    return int(amount * 100)


def check_price_spread(min_price_cents: int, max_price_cents: int) -> None:
    spread = max_price_cents - min_price_cents
    if spread < 0:
        raise InvalidPrice("max_price must not be below min_price", field="max_price")
    if spread > MAX_PRICE_SPREAD_CENTS:
        raise PriceSpreadExceeded(
            f"Price range may not exceed 200 USD (current spread: {spread / 100:.2f} USD)",
            spread_cents=spread,
        )


def _text(payload: Mapping[str, Any], field: str) -> str | None:
    value = payload.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidField(f"{field} must be text", field=field)
    return value.strip() or None


def parse_offer_fields(payload: Mapping[str, Any], offer_type: str = "manual") -> OfferDraft:
    """Parse untrusted offer fields into an OfferDraft, raising the first typed validation error."""
    min_price = to_cents(payload.get("min_price"), "min_price")
    max_price = to_cents(payload.get("max_price"), "max_price")
    check_price_spread(min_price, max_price)

    fields = {name: _text(payload, name) for name in (*_MANUAL_REQUIRED, "notes")}
    if offer_type == "manual":
        for name in _MANUAL_REQUIRED:
            if not fields[name]:
                raise MissingRequiredField(f"{name} is required", field=name)

    if fields["duration_label"] and fields["duration_label"] not in DURATION_LABELS:
        raise InvalidField(f"Unknown duration: {fields['duration_label']}", field="duration_label")
    if fields["hospitalization_label"] and fields["hospitalization_label"] not in HOSPITALIZATION_LABELS:
        raise InvalidField(
            f"Unknown hospitalization: {fields['hospitalization_label']}", field="hospitalization_label"
        )

    services = payload.get("included_services") or []
    if not isinstance(services, (list, tuple, set)) or not all(s in _SERVICES for s in services):
        raise InvalidField("included_services must be a list of accommodation/transport/consultation",
                           field="included_services")

    return OfferDraft(
        min_price_cents=min_price,
        max_price_cents=max_price,
        included_services=set(services),
        **fields,
    )
