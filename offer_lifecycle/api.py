from typing import Any, Optional

import structlog
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request as HTTPRequest
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config
from .client import SupabaseStore, fetch_identity
from .errors import (
    DUPLICATE,
    FORBIDDEN,
    INVALID_STATE,
    NOT_FOUND,
    RACE_LOST,
    UPSTREAM,
    VALIDATION,
    LifecycleError,
)
from .logging_config import configure_logging
from .models import ClinicPriceListEntry, Identity, Offer, PriceListEntryIn, Request, RequestCreate, RequestStatus
from .service import LifecycleManager
from .store import MemoryStore

logger = structlog.get_logger(__name__)

STATUS_BY_KIND = {
    NOT_FOUND: 404,
    INVALID_STATE: 409,
    VALIDATION: 422,
    DUPLICATE: 409,
    RACE_LOST: 409,
    FORBIDDEN: 403,
    UPSTREAM: 502,
}

# HTTPBearer scheme so Swagger-UI can attach the Authorization header globally
auth_scheme = HTTPBearer(auto_error=False)

configure_logging()
app = FastAPI(title="Offer Lifecycle Service")


def build_manager() -> LifecycleManager:
    store = SupabaseStore() if config.STORE_BACKEND == "supabase" else MemoryStore()
    logger.info("store.configured", backend=type(store).__name__)
    return LifecycleManager(store)


_manager = build_manager()


def get_manager() -> LifecycleManager:
    return _manager


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: HTTPRequest, exc: LifecycleError):
    status_code = STATUS_BY_KIND.get(exc.kind, 400)
    if status_code >= 500:
        logger.error("request.failed", path=request.url.path, error=exc.code, detail=exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": exc.message})


async def current_identity(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)) -> Identity:
    """Resolve the caller once per request from the bearer token."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing bearer token")
    identity = await fetch_identity(credentials.credentials)
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return identity


def require_patient(identity: Identity = Depends(current_identity)) -> Identity:
    if identity.role != "patient":
        raise HTTPException(status_code=403, detail="Patients only")
    return identity


def require_clinic(identity: Identity = Depends(current_identity)) -> Identity:
    if identity.role != "clinic" or not identity.clinic_id:
        raise HTTPException(status_code=403, detail="Clinics only")
    return identity


def verify_sweep_key(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)):
    """Validate the cron caller's bearer key"""
    if (not config.SWEEP_API_KEY or credentials is None or credentials.scheme.lower() != "bearer"
            or credentials.credentials != config.SWEEP_API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.get("/health")
async def health():
    return {"status": "ok", "store": config.STORE_BACKEND}


# Requests -----------------------------------------------------------------

@app.post("/requests", response_model=Request, status_code=201)
async def create_request(
    body: RequestCreate,
    identity: Identity = Depends(require_patient),
    manager: LifecycleManager = Depends(get_manager),
):
    return await manager.create_request(identity.user_id, body)


@app.get("/requests", response_model=list[Request])
async def list_requests(
    status: Optional[RequestStatus] = Query(None, description="Filter by status as read now"),
    identity: Identity = Depends(current_identity),
    manager: LifecycleManager = Depends(get_manager),
):
    """Patients see their own requests; clinics and admins see the whole inbox."""
    patient_id = identity.user_id if identity.role == "patient" else None
    return await manager.list_requests(status=status, patient_id=patient_id)


@app.get("/requests/{request_id}", response_model=Request)
async def get_request(
    request_id: str,
    identity: Identity = Depends(current_identity),
    manager: LifecycleManager = Depends(get_manager),
):
    request = await manager.get_request(request_id)
    if identity.role == "patient" and request.patient_id != identity.user_id:
        raise HTTPException(status_code=404, detail="Request not found")
    return request


# Offers -------------------------------------------------------------------

@app.post("/requests/{request_id}/offers", response_model=Offer, status_code=201)
async def submit_offer(
    request_id: str,
    fields: dict[str, Any] = Body(...),
    identity: Identity = Depends(require_clinic),
    manager: LifecycleManager = Depends(get_manager),
):
    # raw dict on purpose: field errors come back as typed lifecycle errors, not generic 422s
    return await manager.submit_offer(request_id, identity.clinic_id, fields)


@app.post("/requests/{request_id}/catalog-offer", response_model=Offer, status_code=201)
async def submit_catalog_offer(
    request_id: str,
    identity: Identity = Depends(require_clinic),
    manager: LifecycleManager = Depends(get_manager),
):
    return await manager.submit_catalog_offer(request_id, identity.clinic_id)


@app.get("/requests/{request_id}/offers", response_model=list[Offer])
async def list_offers(
    request_id: str,
    identity: Identity = Depends(current_identity),
    manager: LifecycleManager = Depends(get_manager),
):
    request = await manager.get_request(request_id)
    offers = await manager.list_offers(request_id)
    if identity.role == "patient":
        if request.patient_id != identity.user_id:
            raise HTTPException(status_code=404, detail="Request not found")
        return offers
    if identity.role == "clinic":
        return [o for o in offers if o.clinic_id == identity.clinic_id]
    return offers


@app.post("/offers/{offer_id}/accept", response_model=Offer)
async def accept_offer(
    offer_id: str,
    identity: Identity = Depends(require_patient),
    manager: LifecycleManager = Depends(get_manager),
):
    return await manager.respond_to_offer(offer_id, identity.user_id, accept=True)


@app.post("/offers/{offer_id}/reject", response_model=Offer)
async def reject_offer(
    offer_id: str,
    identity: Identity = Depends(require_patient),
    manager: LifecycleManager = Depends(get_manager),
):
    return await manager.respond_to_offer(offer_id, identity.user_id, accept=False)


# Price list ---------------------------------------------------------------

@app.get("/price-list", response_model=list[ClinicPriceListEntry])
async def list_price_list(
    identity: Identity = Depends(require_clinic),
    manager: LifecycleManager = Depends(get_manager),
):
    return await manager.list_price_list(identity.clinic_id)


@app.post("/price-list", response_model=ClinicPriceListEntry, status_code=201)
async def create_price_entry(
    body: PriceListEntryIn,
    identity: Identity = Depends(require_clinic),
    manager: LifecycleManager = Depends(get_manager),
):
    return await manager.save_price_list_entry(identity.clinic_id, body.procedure_key, body.amount)


@app.put("/price-list/{entry_id}", response_model=ClinicPriceListEntry)
async def update_price_entry(
    entry_id: str,
    body: PriceListEntryIn,
    identity: Identity = Depends(require_clinic),
    manager: LifecycleManager = Depends(get_manager),
):
    return await manager.save_price_list_entry(identity.clinic_id, body.procedure_key, body.amount,
                                               entry_id=entry_id)


@app.delete("/price-list/{entry_id}", response_model=ClinicPriceListEntry)
async def remove_price_entry(
    entry_id: str,
    identity: Identity = Depends(require_clinic),
    manager: LifecycleManager = Depends(get_manager),
):
    """Soft remove; the row stays for billing history."""
    return await manager.remove_price_list_entry(identity.clinic_id, entry_id)


# Sweep --------------------------------------------------------------------

@app.post("/sweep", dependencies=[Depends(verify_sweep_key)])
async def sweep(manager: LifecycleManager = Depends(get_manager)):
    """Persist expiry for every request past its 24h deadline (cron)."""
    expired = await manager.sweep_expired()
    return {"expired": len(expired), "request_ids": [r.id for r in expired]}
