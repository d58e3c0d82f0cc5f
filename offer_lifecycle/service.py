"""Request/offer lifecycle manager.

The only component that changes request status. Patients and clinics reach it
through the API; the periodic sweep calls `sweep_expired`.
"""
from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

import structlog

from .catalog import is_known_procedure
from .errors import (
    DuplicateOffer,
    Forbidden,
    InvalidField,
    LifecycleError,
    OfferExpired,
    OfferNotFound,
    OfferNotPending,
    PriceEntryNotFound,
    RaceLost,
    RequestNotFound,
    RequestNotOpen,
    SlaExpired,
    UnknownProcedure,
)
from .lifecycle import (
    check_request_transition,
    ensure_open_for_offers,
    evaluate_expiry,
    evaluate_offer_expiry,
    offer_expiry_for,
    parse_offer_fields,
    sla_deadline_for,
    to_cents,
)
from .models import ClinicPriceListEntry, Offer, OfferDraft, Request, RequestCreate
from .store import LifecycleStore

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class LifecycleManager:
    def __init__(self, store: LifecycleStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    # requests ---------------------------------------------------------------

    async def create_request(self, patient_id: str, fields: RequestCreate) -> Request:
        if not is_known_procedure(fields.procedure_key):
            raise UnknownProcedure(f"Unknown procedure: {fields.procedure_key}", procedure_key=fields.procedure_key)
        countries = [c.strip() for c in fields.countries if c.strip()]
        if not countries:
            raise InvalidField("At least one country is required", field="countries")

        now = self.clock()
        request = Request(
            id=_new_id(),
            patient_id=patient_id,
            procedure_key=fields.procedure_key,
            countries=countries,
            cities=[c.strip() for c in fields.cities if c.strip()],
            photos=fields.photos,
            notes=(fields.notes or "").strip() or None,
            status="new",
            created_at=now,
            sla_deadline_at=sla_deadline_for(now),
        )
        request = await self.store.insert_request(request)
        logger.info("request.created", request_id=request.id, procedure_key=request.procedure_key,
                    sla_deadline_at=request.sla_deadline_at.isoformat())
        return request

    async def get_request(self, request_id: str) -> Request:
        request = await self.store.get_request(request_id)
        if request is None:
            raise RequestNotFound("Request not found", request_id=request_id)
        return evaluate_expiry(request, self.clock())

    async def list_requests(self, status: str | None = None, patient_id: str | None = None) -> list[Request]:
        now = self.clock()
        requests = [evaluate_expiry(r, now) for r in await self.store.list_requests(patient_id)]
        if status is not None:
            requests = [r for r in requests if r.status == status]
        return requests

    async def sweep_expired(self) -> list[Request]:
        """Persist new -> expired for every request past its deadline."""
        expired = await self.store.expire_due_requests(self.clock())
        for request in expired:
            logger.info("request.expired", request_id=request.id,
                        sla_deadline_at=request.sla_deadline_at.isoformat())
        logger.info("sweep.completed", expired=len(expired))
        return expired

    # offers -----------------------------------------------------------------

    async def submit_offer(self, request_id: str, clinic_id: str, fields: Mapping[str, Any],
                           offer_type: str = "manual") -> Offer:
        log = logger.bind(request_id=request_id, clinic_id=clinic_id, offer_type=offer_type)
        try:
            draft = parse_offer_fields(fields, offer_type)
        except LifecycleError as exc:
            log.info("offer.rejected", error=exc.code, detail=exc.message)
            raise
        return await self._commit(request_id, clinic_id, draft, offer_type, log)

    async def submit_catalog_offer(self, request_id: str, clinic_id: str) -> Offer:
        """Auto offer priced from the clinic's price-list entry for the request's procedure."""
        log = logger.bind(request_id=request_id, clinic_id=clinic_id, offer_type="auto")
        request = await self._open_request(request_id, clinic_id, log)
        entry = await self.store.find_price_entry(clinic_id, request.procedure_key)
        if entry is None:
            log.info("offer.rejected", error=PriceEntryNotFound.code)
            raise PriceEntryNotFound("No price-list entry for this procedure",
                                     clinic_id=clinic_id, procedure_key=request.procedure_key)
        draft = OfferDraft(min_price_cents=entry.amount_cents, max_price_cents=entry.amount_cents)
        return await self._commit(request_id, clinic_id, draft, "auto", log)

    async def _open_request(self, request_id: str, clinic_id: str, log) -> Request:
        """Stored request, checked for existence, duplicates and an open window in that order."""
        request = await self.store.get_request(request_id)
        if request is None:
            raise RequestNotFound("Request not found", request_id=request_id)
        if await self.store.find_offer(request_id, clinic_id) is not None:
            log.info("offer.rejected", error=DuplicateOffer.code)
            raise DuplicateOffer("This clinic already sent an offer for the request",
                                 request_id=request_id, clinic_id=clinic_id)
        try:
            ensure_open_for_offers(request, self.clock())
        except (SlaExpired, RequestNotOpen) as exc:
            log.info("offer.rejected", error=exc.code, status=request.status)
            raise
        return request

    async def _commit(self, request_id: str, clinic_id: str, draft: OfferDraft, offer_type: str, log) -> Offer:
        request = await self._open_request(request_id, clinic_id, log)
        now = self.clock()
        check_request_transition(request.status, "offered")

        offer = Offer(
            id=_new_id(),
            request_id=request_id,
            clinic_id=clinic_id,
            offer_type=offer_type,
            submitted_at=now,
            expires_at=offer_expiry_for(now),
            status="pending",
            **draft.model_dump(),
        )
        # the store re-checks status and deadline at write time
        updated = await self.store.commit_offer(offer, now)
        if updated is None:
            current = await self.store.get_request(request_id)
            if current is not None and current.status == "new" and now >= current.sla_deadline_at:
                log.info("offer.rejected", error=SlaExpired.code, race=True)
                raise SlaExpired("The 24-hour response window for this request has closed", request_id=request_id)
            log.info("offer.rejected", error=RequestNotOpen.code, race=True)
            raise RequestNotOpen("Another offer was accepted for this request first", request_id=request_id)

        log.info("offer.submitted", offer_id=offer.id, min_price_cents=offer.min_price_cents,
                 max_price_cents=offer.max_price_cents, expires_at=offer.expires_at.isoformat())
        return offer

    async def list_offers(self, request_id: str) -> list[Offer]:
        await self.get_request(request_id)
        now = self.clock()
        return [evaluate_offer_expiry(o, now) for o in await self.store.list_offers(request_id)]

    async def get_offer(self, offer_id: str) -> Offer:
        offer = await self.store.get_offer(offer_id)
        if offer is None:
            raise OfferNotFound("Offer not found", offer_id=offer_id)
        return evaluate_offer_expiry(offer, self.clock())

    async def respond_to_offer(self, offer_id: str, patient_id: str, accept: bool) -> Offer:
        offer = await self.get_offer(offer_id)
        request = await self.get_request(offer.request_id)
        if request.patient_id != patient_id:
            raise Forbidden("Only the patient who created the request can answer its offers", offer_id=offer_id)
        if offer.status == "expired":
            raise OfferExpired("The 7-day window to answer this offer has closed", offer_id=offer_id)
        if offer.status != "pending":
            raise OfferNotPending(f"Offer is already {offer.status}", offer_id=offer_id, status=offer.status)

        target = "accepted" if accept else "rejected"
        now = self.clock()
        updated = await self.store.set_offer_status(offer_id, "pending", target, now)
        if updated is None:
            current = await self.get_offer(offer_id)
            if current.status == "expired":
                raise OfferExpired("The 7-day window to answer this offer has closed", offer_id=offer_id)
            if current.status != "pending":
                raise OfferNotPending(f"Offer is already {current.status}", offer_id=offer_id, status=current.status)
            raise RaceLost("Offer changed while answering it, please retry", offer_id=offer_id)
        if accept:
            await self.store.record_accepted_offer(request.id, offer_id)
        logger.info(f"offer.{target}", offer_id=offer_id, request_id=request.id)
        return updated

    # price list -------------------------------------------------------------

    async def save_price_list_entry(self, clinic_id: str, procedure_key: str, amount: Any,
                                    entry_id: str | None = None) -> ClinicPriceListEntry:
        if not is_known_procedure(procedure_key):
            raise UnknownProcedure(f"Unknown procedure: {procedure_key}", procedure_key=procedure_key)
        amount_cents = to_cents(amount, "amount")
        now = self.clock()

        if entry_id is None:
            entry = ClinicPriceListEntry(
                id=_new_id(),
                clinic_id=clinic_id,
                procedure_key=procedure_key,
                amount_cents=amount_cents,
                created_at=now,
                updated_at=now,
            )
            entry = await self.store.insert_price_entry(entry)
            logger.info("price_entry.created", entry_id=entry.id, clinic_id=clinic_id, procedure_key=procedure_key)
            return entry

        current = await self.store.get_price_entry(entry_id)
        if current is None or current.removed_at is not None:
            raise PriceEntryNotFound("Price-list entry not found", entry_id=entry_id)
        if current.clinic_id != clinic_id:
            raise Forbidden("Price-list entry belongs to another clinic", entry_id=entry_id)
        entry = current.model_copy(update={
            "procedure_key": procedure_key,
            "amount_cents": amount_cents,
            "updated_at": now,
        })
        entry = await self.store.update_price_entry(entry)
        logger.info("price_entry.updated", entry_id=entry.id, clinic_id=clinic_id, procedure_key=procedure_key)
        return entry

    async def remove_price_list_entry(self, clinic_id: str, entry_id: str) -> ClinicPriceListEntry:
        current = await self.store.get_price_entry(entry_id)
        if current is None or current.removed_at is not None:
            raise PriceEntryNotFound("Price-list entry not found", entry_id=entry_id)
        if current.clinic_id != clinic_id:
            raise Forbidden("Price-list entry belongs to another clinic", entry_id=entry_id)
        removed = await self.store.remove_price_entry(entry_id, self.clock())
        if removed is None:
            raise PriceEntryNotFound("Price-list entry not found", entry_id=entry_id)
        logger.info("price_entry.removed", entry_id=entry_id, clinic_id=clinic_id)
        return removed

    async def list_price_list(self, clinic_id: str) -> list[ClinicPriceListEntry]:
        return await self.store.list_price_entries(clinic_id)
