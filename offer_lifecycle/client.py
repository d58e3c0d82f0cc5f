"""Async client for the hosted row store (PostgREST) and its auth service.
Uses the service-role key for table access and the anon key for token lookups.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from .config import HTTP_TIMEOUT, SUPABASE_ANON_KEY, SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL
from .errors import DuplicateOffer, DuplicatePriceEntry, PriceEntryNotFound, StoreError
from .models import ClinicPriceListEntry, Identity, Offer, Request

logger = structlog.get_logger(__name__)

_RETURN_ROWS = {"Prefer": "return=representation"}


def _ts(value: datetime) -> str:
    """UTC timestamp for PostgREST filters (no '+' to survive query encoding)."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


async def fetch_identity(token: str) -> Identity | None:
    """Resolve caller identity from a bearer token via the auth service. None when the token is rejected."""
    headers = {"apikey": SUPABASE_ANON_KEY, "Authorization": f"Bearer {token}", "Accept": "application/json"}
    async with httpx.AsyncClient(http2=True, timeout=HTTP_TIMEOUT) as client:
        resp = await client.get(f"{SUPABASE_URL}/auth/v1/user", headers=headers)
    if resp.status_code in (401, 403):
        return None
    if resp.is_error:
        logger.error("auth.lookup_failed", status_code=resp.status_code)
        raise StoreError("Authentication service unavailable")

    payload = resp.json()
    meta = payload.get("app_metadata") or {}
    return Identity(
        user_id=payload["id"],
        role=meta.get("role", "patient"),
        clinic_id=meta.get("clinic_id"),
    )


class SupabaseStore:
    """LifecycleStore over PostgREST. The offer commit runs server-side as the `submit_offer` function."""

    def __init__(self, base_url: str = SUPABASE_URL, service_key: str = SUPABASE_SERVICE_ROLE_KEY,
                 timeout: float = HTTP_TIMEOUT) -> None:
        self.rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self.timeout = timeout
        self.headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Accept": "application/json",
        }

    async def _call(self, method: str, path: str, *, params: dict[str, str] | None = None,
                    json: Any = None, prefer_rows: bool = False) -> httpx.Response:
        headers = {**self.headers, **(_RETURN_ROWS if prefer_rows else {})}
        try:
            async with httpx.AsyncClient(http2=True, timeout=self.timeout) as client:
                resp = await client.request(method, f"{self.rest_url}/{path}", params=params,
                                            json=json, headers=headers)
        except httpx.TransportError as exc:
            logger.error("store.transport_error", method=method, path=path, error=str(exc))
            raise StoreError("Row store unreachable") from exc
        if resp.status_code == 409:
            return resp
        if resp.is_error:
            logger.error("store.http_error", method=method, path=path, status_code=resp.status_code,
                         body=resp.text[:200])
            raise StoreError(f"Row store returned {resp.status_code}")
        return resp

    @staticmethod
    def _rows(resp: httpx.Response) -> list[dict]:
        data = resp.json()
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    # requests ---------------------------------------------------------------

    async def get_request(self, request_id: str) -> Request | None:
        resp = await self._call("GET", "requests", params={"id": f"eq.{request_id}", "select": "*"})
        rows = self._rows(resp)
        return Request.model_validate(rows[0]) if rows else None

    async def insert_request(self, request: Request) -> Request:
        resp = await self._call("POST", "requests", json=request.model_dump(mode="json"), prefer_rows=True)
        return Request.model_validate(self._rows(resp)[0])

    async def list_requests(self, patient_id: str | None = None) -> list[Request]:
        params = {"select": "*", "order": "created_at.desc"}
        if patient_id is not None:
            params["patient_id"] = f"eq.{patient_id}"
        resp = await self._call("GET", "requests", params=params)
        return [Request.model_validate(row) for row in self._rows(resp)]

    async def commit_offer(self, offer: Offer, now: datetime) -> Request | None:
        resp = await self._call("POST", "rpc/submit_offer",
                                json={"p_offer": offer.model_dump(mode="json"), "p_now": _ts(now)})
        if resp.status_code == 409:
            raise DuplicateOffer("This clinic already sent an offer for the request",
                                 request_id=offer.request_id, clinic_id=offer.clinic_id)
        rows = self._rows(resp)
        return Request.model_validate(rows[0]) if rows and rows[0] else None

    async def expire_due_requests(self, now: datetime) -> list[Request]:
        resp = await self._call(
            "PATCH", "requests",
            params={"status": "eq.new", "sla_deadline_at": f"lte.{_ts(now)}"},
            json={"status": "expired"}, prefer_rows=True,
        )
        return [Request.model_validate(row) for row in self._rows(resp)]

    # offers -----------------------------------------------------------------

    async def get_offer(self, offer_id: str) -> Offer | None:
        resp = await self._call("GET", "offers", params={"id": f"eq.{offer_id}", "select": "*"})
        rows = self._rows(resp)
        return Offer.model_validate(rows[0]) if rows else None

    async def find_offer(self, request_id: str, clinic_id: str) -> Offer | None:
        resp = await self._call("GET", "offers", params={
            "request_id": f"eq.{request_id}", "clinic_id": f"eq.{clinic_id}", "select": "*",
        })
        rows = self._rows(resp)
        return Offer.model_validate(rows[0]) if rows else None

    async def list_offers(self, request_id: str) -> list[Offer]:
        resp = await self._call("GET", "offers", params={
            "request_id": f"eq.{request_id}", "select": "*", "order": "submitted_at.asc",
        })
        return [Offer.model_validate(row) for row in self._rows(resp)]

    async def set_offer_status(self, offer_id: str, expected: str, new: str, now: datetime) -> Offer | None:
        resp = await self._call(
            "PATCH", "offers",
            params={"id": f"eq.{offer_id}", "status": f"eq.{expected}", "expires_at": f"gt.{_ts(now)}"},
            json={"status": new}, prefer_rows=True,
        )
        rows = self._rows(resp)
        return Offer.model_validate(rows[0]) if rows else None

    async def record_accepted_offer(self, request_id: str, offer_id: str) -> Request | None:
        resp = await self._call("PATCH", "requests", params={"id": f"eq.{request_id}"},
                                json={"accepted_offer_id": offer_id}, prefer_rows=True)
        rows = self._rows(resp)
        return Request.model_validate(rows[0]) if rows else None

    # price list -------------------------------------------------------------

    async def get_price_entry(self, entry_id: str) -> ClinicPriceListEntry | None:
        resp = await self._call("GET", "clinic_price_list", params={"id": f"eq.{entry_id}", "select": "*"})
        rows = self._rows(resp)
        return ClinicPriceListEntry.model_validate(rows[0]) if rows else None

    async def find_price_entry(self, clinic_id: str, procedure_key: str) -> ClinicPriceListEntry | None:
        resp = await self._call("GET", "clinic_price_list", params={
            "clinic_id": f"eq.{clinic_id}", "procedure_key": f"eq.{procedure_key}",
            "removed_at": "is.null", "select": "*",
        })
        rows = self._rows(resp)
        return ClinicPriceListEntry.model_validate(rows[0]) if rows else None

    async def insert_price_entry(self, entry: ClinicPriceListEntry) -> ClinicPriceListEntry:
        resp = await self._call("POST", "clinic_price_list", json=entry.model_dump(mode="json"), prefer_rows=True)
        if resp.status_code == 409:
            raise DuplicatePriceEntry("A price for this procedure already exists",
                                      clinic_id=entry.clinic_id, procedure_key=entry.procedure_key)
        rows = self._rows(resp)
        if not rows:
            raise StoreError("Row store returned no row for the inserted entry")
        return ClinicPriceListEntry.model_validate(rows[0])

    async def update_price_entry(self, entry: ClinicPriceListEntry) -> ClinicPriceListEntry:
        body = entry.model_dump(mode="json", include={"procedure_key", "amount_cents", "currency", "updated_at"})
        resp = await self._call("PATCH", "clinic_price_list",
                                params={"id": f"eq.{entry.id}", "removed_at": "is.null"},
                                json=body, prefer_rows=True)
        if resp.status_code == 409:
            raise DuplicatePriceEntry("A price for this procedure already exists",
                                      clinic_id=entry.clinic_id, procedure_key=entry.procedure_key)
        rows = self._rows(resp)
        if not rows:
            raise PriceEntryNotFound("Price-list entry not found", entry_id=entry.id)
        return ClinicPriceListEntry.model_validate(rows[0])

    async def remove_price_entry(self, entry_id: str, now: datetime) -> ClinicPriceListEntry | None:
        resp = await self._call(
            "PATCH", "clinic_price_list",
            params={"id": f"eq.{entry_id}", "removed_at": "is.null"},
            json={"removed_at": _ts(now), "updated_at": _ts(now)}, prefer_rows=True,
        )
        rows = self._rows(resp)
        return ClinicPriceListEntry.model_validate(rows[0]) if rows else None

    async def list_price_entries(self, clinic_id: str) -> list[ClinicPriceListEntry]:
        resp = await self._call("GET", "clinic_price_list", params={
            "clinic_id": f"eq.{clinic_id}", "removed_at": "is.null", "select": "*", "order": "procedure_key.asc",
        })
        return [ClinicPriceListEntry.model_validate(row) for row in self._rows(resp)]
