"""Row-store contract used by the lifecycle manager, plus the in-process implementation.

Writes that guard a lifecycle invariant are conditional: they re-check their
precondition at write time and report a lost condition by returning None.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Protocol

import structlog

from .errors import DuplicateOffer, DuplicatePriceEntry, PriceEntryNotFound
from .models import ClinicPriceListEntry, Offer, Request

logger = structlog.get_logger(__name__)


class LifecycleStore(Protocol):
    async def get_request(self, request_id: str) -> Request | None: ...

    async def insert_request(self, request: Request) -> Request: ...

    async def list_requests(self, patient_id: str | None = None) -> list[Request]: ...

    async def commit_offer(self, offer: Offer, now: datetime) -> Request | None:
        """Insert `offer` and move its request new -> offered in one step.

        Returns None when the request is no longer `new` or its deadline has passed
        at `now`; raises DuplicateOffer when the clinic already has an offer on it.
        """
        ...

    async def expire_due_requests(self, now: datetime) -> list[Request]: ...

    async def get_offer(self, offer_id: str) -> Offer | None: ...

    async def find_offer(self, request_id: str, clinic_id: str) -> Offer | None: ...

    async def list_offers(self, request_id: str) -> list[Offer]: ...

    async def set_offer_status(self, offer_id: str, expected: str, new: str, now: datetime) -> Offer | None:
        """Conditional status change; only applies while the offer is `expected` and unexpired."""
        ...

    async def record_accepted_offer(self, request_id: str, offer_id: str) -> Request | None: ...

    async def get_price_entry(self, entry_id: str) -> ClinicPriceListEntry | None: ...

    async def find_price_entry(self, clinic_id: str, procedure_key: str) -> ClinicPriceListEntry | None: ...

    async def insert_price_entry(self, entry: ClinicPriceListEntry) -> ClinicPriceListEntry: ...

    async def update_price_entry(self, entry: ClinicPriceListEntry) -> ClinicPriceListEntry: ...

    async def remove_price_entry(self, entry_id: str, now: datetime) -> ClinicPriceListEntry | None: ...

    async def list_price_entries(self, clinic_id: str) -> list[ClinicPriceListEntry]: ...


class MemoryStore:
    """Dict-backed store. One lock serialises every write so conditional writes are atomic."""

    def __init__(self) -> None:
        self.requests: dict[str, Request] = {}
        self.offers: dict[str, Offer] = {}
        self.price_entries: dict[str, ClinicPriceListEntry] = {}
        self._lock = asyncio.Lock()

    # requests ---------------------------------------------------------------

    async def get_request(self, request_id: str) -> Request | None:
        return self.requests.get(request_id)

    async def insert_request(self, request: Request) -> Request:
        async with self._lock:
            self.requests[request.id] = request
        return request

    async def list_requests(self, patient_id: str | None = None) -> list[Request]:
        rows = [r for r in self.requests.values() if patient_id is None or r.patient_id == patient_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    async def commit_offer(self, offer: Offer, now: datetime) -> Request | None:
        async with self._lock:
            if self._offer_for(offer.request_id, offer.clinic_id):
                raise DuplicateOffer("This clinic already sent an offer for the request",
                                     request_id=offer.request_id, clinic_id=offer.clinic_id)
            current = self.requests.get(offer.request_id)
            if current is None or current.status != "new" or now >= current.sla_deadline_at:
                return None
            updated = current.model_copy(update={
                "status": "offered",
                "offer_type": offer.offer_type,
                "offer_min_price_cents": offer.min_price_cents,
                "offer_max_price_cents": offer.max_price_cents,
            })
            self.requests[updated.id] = updated
            self.offers[offer.id] = offer
        return updated

    async def expire_due_requests(self, now: datetime) -> list[Request]:
        expired = []
        async with self._lock:
            for request in list(self.requests.values()):
                if request.status == "new" and now >= request.sla_deadline_at:
                    updated = request.model_copy(update={"status": "expired"})
                    self.requests[updated.id] = updated
                    expired.append(updated)
        return expired

    # offers -----------------------------------------------------------------

    def _offer_for(self, request_id: str, clinic_id: str) -> Offer | None:
        for offer in self.offers.values():
            if offer.request_id == request_id and offer.clinic_id == clinic_id:
                return offer
        return None

    async def get_offer(self, offer_id: str) -> Offer | None:
        return self.offers.get(offer_id)

    async def find_offer(self, request_id: str, clinic_id: str) -> Offer | None:
        return self._offer_for(request_id, clinic_id)

    async def list_offers(self, request_id: str) -> list[Offer]:
        rows = [o for o in self.offers.values() if o.request_id == request_id]
        return sorted(rows, key=lambda o: o.submitted_at)

    async def set_offer_status(self, offer_id: str, expected: str, new: str, now: datetime) -> Offer | None:
        async with self._lock:
            current = self.offers.get(offer_id)
            if current is None or current.status != expected or now >= current.expires_at:
                return None
            updated = current.model_copy(update={"status": new})
            self.offers[offer_id] = updated
        return updated

    async def record_accepted_offer(self, request_id: str, offer_id: str) -> Request | None:
        async with self._lock:
            current = self.requests.get(request_id)
            if current is None:
                return None
            updated = current.model_copy(update={"accepted_offer_id": offer_id})
            self.requests[request_id] = updated
        return updated

    # price list -------------------------------------------------------------

    def _active_entry(self, clinic_id: str, procedure_key: str, exclude_id: str | None = None):
        for entry in self.price_entries.values():
            if (entry.clinic_id == clinic_id and entry.procedure_key == procedure_key
                    and entry.removed_at is None and entry.id != exclude_id):
                return entry
        return None

    async def get_price_entry(self, entry_id: str) -> ClinicPriceListEntry | None:
        return self.price_entries.get(entry_id)

    async def find_price_entry(self, clinic_id: str, procedure_key: str) -> ClinicPriceListEntry | None:
        return self._active_entry(clinic_id, procedure_key)

    async def insert_price_entry(self, entry: ClinicPriceListEntry) -> ClinicPriceListEntry:
        async with self._lock:
            if self._active_entry(entry.clinic_id, entry.procedure_key):
                raise DuplicatePriceEntry("A price for this procedure already exists",
                                          clinic_id=entry.clinic_id, procedure_key=entry.procedure_key)
            self.price_entries[entry.id] = entry
        return entry

    async def update_price_entry(self, entry: ClinicPriceListEntry) -> ClinicPriceListEntry:
        async with self._lock:
            current = self.price_entries.get(entry.id)
            if current is None or current.removed_at is not None:
                raise PriceEntryNotFound("Price-list entry not found", entry_id=entry.id)
            if self._active_entry(entry.clinic_id, entry.procedure_key, exclude_id=entry.id):
                raise DuplicatePriceEntry("A price for this procedure already exists",
                                          clinic_id=entry.clinic_id, procedure_key=entry.procedure_key)
            self.price_entries[entry.id] = entry
        return entry

    async def remove_price_entry(self, entry_id: str, now: datetime) -> ClinicPriceListEntry | None:
        async with self._lock:
            current = self.price_entries.get(entry_id)
            if current is None or current.removed_at is not None:
                return None
            updated = current.model_copy(update={"removed_at": now, "updated_at": now})
            self.price_entries[entry_id] = updated
        logger.debug("price_entry.soft_removed", entry_id=entry_id)
        return updated

    async def list_price_entries(self, clinic_id: str) -> list[ClinicPriceListEntry]:
        rows = [e for e in self.price_entries.values() if e.clinic_id == clinic_id and e.removed_at is None]
        return sorted(rows, key=lambda e: e.procedure_key)
