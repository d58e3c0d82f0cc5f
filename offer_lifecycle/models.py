from typing import Literal

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

from .config import CURRENCY, MAX_PRICE_CENTS, MAX_PRICE_SPREAD_CENTS, OFFER_RESPONSE_WINDOW, SLA_WINDOW

RequestStatus = Literal["new", "offered", "expired"]
OfferStatus = Literal["pending", "accepted", "rejected", "expired"]
OfferType = Literal["auto", "manual", "sla_default"]
IncludedService = Literal["accommodation", "transport", "consultation"]
Role = Literal["patient", "clinic", "admin"]


class Request(BaseModel):
    """A patient's procedure inquiry. Status only moves through the lifecycle manager."""
    model_config = ConfigDict(frozen=True)

    id: str
    patient_id: str
    procedure_key: str
    countries: list[str]
    cities: list[str] = Field(default_factory=list)
    photos: list[str] = Field(default_factory=list)
    notes: str | None = None
    status: RequestStatus = "new"
    created_at: AwareDatetime
    sla_deadline_at: AwareDatetime
    # display fields copied from the offer that moved the request out of "new"
    offer_type: OfferType | None = None
    offer_min_price_cents: int | None = None
    offer_max_price_cents: int | None = None
    accepted_offer_id: str | None = None

    @model_validator(mode="after")
    def _deadline_is_fixed(self):
        if self.sla_deadline_at - self.created_at != SLA_WINDOW:
            raise ValueError("sla_deadline_at must be exactly 24h after created_at")
        return self


class Offer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    request_id: str
    clinic_id: str
    min_price_cents: int = Field(gt=0, le=MAX_PRICE_CENTS)
    max_price_cents: int = Field(gt=0, le=MAX_PRICE_CENTS)
    currency: Literal["USD"] = CURRENCY
    offer_type: OfferType = "manual"
    duration_label: str | None = None
    hospitalization_label: str | None = None
    doctor_name: str | None = None
    procedure_address: str | None = None
    included_services: set[IncludedService] = Field(default_factory=set)
    notes: str | None = None
    submitted_at: AwareDatetime
    expires_at: AwareDatetime
    status: OfferStatus = "pending"

    @model_validator(mode="after")
    def _window_and_spread(self):
        if self.expires_at - self.submitted_at != OFFER_RESPONSE_WINDOW:
            raise ValueError("expires_at must be exactly 7 days after submitted_at")
        if not 0 <= self.max_price_cents - self.min_price_cents <= MAX_PRICE_SPREAD_CENTS:
            raise ValueError("price spread out of bounds")
        return self


class OfferDraft(BaseModel):
    """Offer fields after boundary parsing; prices already in cents."""
    min_price_cents: int
    max_price_cents: int
    duration_label: str | None = None
    hospitalization_label: str | None = None
    doctor_name: str | None = None
    procedure_address: str | None = None
    included_services: set[IncludedService] = Field(default_factory=set)
    notes: str | None = None


class ClinicPriceListEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    clinic_id: str
    procedure_key: str
    amount_cents: int = Field(gt=0, le=MAX_PRICE_CENTS)
    currency: Literal["USD"] = CURRENCY
    created_at: AwareDatetime
    updated_at: AwareDatetime
    # soft removal keeps the row for billing history
    removed_at: AwareDatetime | None = None


class Identity(BaseModel):
    user_id: str
    role: Role
    clinic_id: str | None = None


class RequestCreate(BaseModel):
    procedure_key: str
    countries: list[str] = Field(min_length=1)
    cities: list[str] = Field(default_factory=list)
    photos: list[str] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=4000)


class PriceListEntryIn(BaseModel):
    procedure_key: str
    amount: str | int | float
