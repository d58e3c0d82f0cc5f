import asyncio
from datetime import timedelta

import pytest

from offer_lifecycle import errors
from offer_lifecycle.models import RequestCreate

from .conftest import T0

RHINO = RequestCreate(procedure_key="burun_estetigi_rinoplasti", countries=["Turkey"], cities=["Istanbul"])


@pytest.mark.asyncio
async def test_create_request_sets_deadline(manager):
    req = await manager.create_request("patient-1", RHINO)
    assert req.status == "new"
    assert req.created_at == T0
    assert req.sla_deadline_at == T0 + timedelta(hours=24)


@pytest.mark.asyncio
async def test_create_request_unknown_procedure(manager):
    with pytest.raises(errors.UnknownProcedure):
        await manager.create_request("patient-1", RequestCreate(procedure_key="teleport", countries=["Turkey"]))


@pytest.mark.asyncio
async def test_unanswered_request_expires_lazily(manager, clock):
    req = await manager.create_request("patient-1", RHINO)
    clock.advance(hours=24, seconds=1)
    assert (await manager.get_request(req.id)).status == "expired"
    assert [r.id for r in await manager.list_requests(status="expired")] == [req.id]
    assert await manager.list_requests(status="new") == []


@pytest.mark.asyncio
async def test_sweep_persists_expiry(manager, store, clock):
    due = await manager.create_request("patient-1", RHINO)
    clock.advance(hours=12)
    fresh = await manager.create_request("patient-2", RHINO)
    clock.advance(hours=12)

    expired = await manager.sweep_expired()
    assert [r.id for r in expired] == [due.id]
    assert store.requests[due.id].status == "expired"
    assert store.requests[fresh.id].status == "new"
    # second run has nothing left to do
    assert await manager.sweep_expired() == []


@pytest.mark.asyncio
async def test_submit_offer_moves_request_to_offered(manager, store, clock, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    clock.advance(hours=1)

    offer = await manager.submit_offer(req.id, "clinic-a", manual_offer)

    assert offer.status == "pending"
    assert offer.submitted_at == T0 + timedelta(hours=1)
    assert offer.expires_at == T0 + timedelta(hours=1, days=7)
    updated = await manager.get_request(req.id)
    assert updated.status == "offered"
    assert updated.offer_type == "manual"
    assert (updated.offer_min_price_cents, updated.offer_max_price_cents) == (300000, 315000)


@pytest.mark.asyncio
async def test_second_clinic_gets_request_not_open(manager, clock, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    clock.advance(hours=1)
    await manager.submit_offer(req.id, "clinic-a", manual_offer)
    clock.advance(hours=1)

    with pytest.raises(errors.RequestNotOpen):
        await manager.submit_offer(req.id, "clinic-b", manual_offer)


@pytest.mark.asyncio
async def test_same_clinic_twice_is_duplicate(manager, store, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    await manager.submit_offer(req.id, "clinic-a", manual_offer)

    with pytest.raises(errors.DuplicateOffer):
        await manager.submit_offer(req.id, "clinic-a", {**manual_offer, "min_price": 3100})
    assert len(store.offers) == 1
    assert next(iter(store.offers.values())).min_price_cents == 300000


@pytest.mark.asyncio
async def test_spread_exceeded_persists_nothing(manager, store, manual_offer):
    req = await manager.create_request("patient-1", RHINO)

    with pytest.raises(errors.PriceSpreadExceeded):
        await manager.submit_offer(req.id, "clinic-a", {**manual_offer, "min_price": 3000, "max_price": 3300})
    assert store.offers == {}
    assert store.requests[req.id].status == "new"


@pytest.mark.asyncio
async def test_offer_after_deadline_is_sla_expired_before_sweep(manager, store, clock, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    clock.advance(hours=24)
    # not swept yet, stored row still says new
    assert store.requests[req.id].status == "new"

    with pytest.raises(errors.SlaExpired):
        await manager.submit_offer(req.id, "clinic-a", manual_offer)
    assert store.offers == {}


@pytest.mark.asyncio
async def test_offer_on_swept_request_is_not_open(manager, clock, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    clock.advance(hours=25)
    await manager.sweep_expired()

    with pytest.raises(errors.RequestNotOpen):
        await manager.submit_offer(req.id, "clinic-a", manual_offer)


@pytest.mark.asyncio
async def test_unknown_request(manager, manual_offer):
    with pytest.raises(errors.RequestNotFound):
        await manager.submit_offer("missing", "clinic-a", manual_offer)


@pytest.mark.asyncio
async def test_concurrent_submissions_one_winner(manager, store, manual_offer):
    req = await manager.create_request("patient-1", RHINO)

    results = await asyncio.gather(
        manager.submit_offer(req.id, "clinic-a", manual_offer),
        manager.submit_offer(req.id, "clinic-b", manual_offer),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], errors.RequestNotOpen)
    assert len(store.offers) == 1
    assert store.requests[req.id].status == "offered"


@pytest.mark.asyncio
async def test_stale_read_loses_at_commit(manager, store, manual_offer, monkeypatch):
    req = await manager.create_request("patient-1", RHINO)
    stale = store.requests[req.id]
    await manager.submit_offer(req.id, "clinic-a", manual_offer)

    async def stale_get(request_id):
        return stale

    # clinic-b read the request before clinic-a's write landed
    monkeypatch.setattr(store, "get_request", stale_get)
    with pytest.raises(errors.RequestNotOpen):
        await manager.submit_offer(req.id, "clinic-b", manual_offer)
    assert len(store.offers) == 1


@pytest.mark.asyncio
async def test_commit_rechecks_deadline(store, manager, manual_offer):
    from offer_lifecycle.lifecycle import offer_expiry_for
    from offer_lifecycle.models import Offer

    req = await manager.create_request("patient-1", RHINO)
    late = req.sla_deadline_at
    offer = Offer(id="o-late", request_id=req.id, clinic_id="clinic-a", min_price_cents=100, max_price_cents=100,
                  offer_type="auto", submitted_at=late, expires_at=offer_expiry_for(late))

    assert await store.commit_offer(offer, late) is None
    assert store.offers == {}


@pytest.mark.asyncio
async def test_accept_offer(manager, store, clock, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    offer = await manager.submit_offer(req.id, "clinic-a", manual_offer)
    clock.advance(days=2)

    accepted = await manager.respond_to_offer(offer.id, "patient-1", accept=True)
    assert accepted.status == "accepted"
    assert store.requests[req.id].accepted_offer_id == offer.id

    with pytest.raises(errors.OfferNotPending):
        await manager.respond_to_offer(offer.id, "patient-1", accept=False)


@pytest.mark.asyncio
async def test_reject_requires_owner(manager, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    offer = await manager.submit_offer(req.id, "clinic-a", manual_offer)

    with pytest.raises(errors.Forbidden):
        await manager.respond_to_offer(offer.id, "patient-2", accept=False)
    rejected = await manager.respond_to_offer(offer.id, "patient-1", accept=False)
    assert rejected.status == "rejected"


@pytest.mark.asyncio
async def test_unanswered_offer_expires_request_stays_offered(manager, clock, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    offer = await manager.submit_offer(req.id, "clinic-a", manual_offer)
    clock.advance(days=7)

    assert [o.status for o in await manager.list_offers(req.id)] == ["expired"]
    assert (await manager.get_request(req.id)).status == "offered"
    with pytest.raises(errors.OfferExpired):
        await manager.respond_to_offer(offer.id, "patient-1", accept=True)


@pytest.mark.asyncio
async def test_price_list_uniqueness_and_edit(manager):
    entry = await manager.save_price_list_entry("clinic-a", "burun_estetigi_rinoplasti", 4000)
    assert entry.amount_cents == 400000

    with pytest.raises(errors.DuplicatePriceEntry):
        await manager.save_price_list_entry("clinic-a", "burun_estetigi_rinoplasti", 4100)

    edited = await manager.save_price_list_entry("clinic-a", "burun_estetigi_rinoplasti", 4200, entry_id=entry.id)
    assert edited.id == entry.id
    assert edited.amount_cents == 420000

    # another clinic may price the same procedure
    await manager.save_price_list_entry("clinic-b", "burun_estetigi_rinoplasti", 3900)


@pytest.mark.asyncio
async def test_price_list_edit_cannot_collide(manager):
    await manager.save_price_list_entry("clinic-a", "dis_implant", 500)
    other = await manager.save_price_list_entry("clinic-a", "dis_beyazlatma", 150)

    with pytest.raises(errors.DuplicatePriceEntry):
        await manager.save_price_list_entry("clinic-a", "dis_implant", 450, entry_id=other.id)


@pytest.mark.asyncio
async def test_price_list_rejects_bad_input(manager):
    with pytest.raises(errors.InvalidPrice):
        await manager.save_price_list_entry("clinic-a", "dis_implant", 0)
    with pytest.raises(errors.UnknownProcedure):
        await manager.save_price_list_entry("clinic-a", "not_a_procedure", 100)


@pytest.mark.asyncio
async def test_price_list_edit_by_other_clinic_forbidden(manager):
    entry = await manager.save_price_list_entry("clinic-a", "dis_implant", 500)
    with pytest.raises(errors.Forbidden):
        await manager.save_price_list_entry("clinic-b", "dis_implant", 1, entry_id=entry.id)


@pytest.mark.asyncio
async def test_soft_remove_frees_the_slot(manager, store):
    entry = await manager.save_price_list_entry("clinic-a", "dis_implant", 500)
    removed = await manager.remove_price_list_entry("clinic-a", entry.id)

    assert removed.removed_at is not None
    assert entry.id in store.price_entries
    assert await manager.list_price_list("clinic-a") == []
    again = await manager.save_price_list_entry("clinic-a", "dis_implant", 550)
    assert again.id != entry.id
    with pytest.raises(errors.PriceEntryNotFound):
        await manager.remove_price_list_entry("clinic-a", entry.id)


@pytest.mark.asyncio
async def test_catalog_offer_uses_price_list(manager):
    req = await manager.create_request("patient-1", RHINO)
    with pytest.raises(errors.PriceEntryNotFound):
        await manager.submit_catalog_offer(req.id, "clinic-a")

    await manager.save_price_list_entry("clinic-a", "burun_estetigi_rinoplasti", 4000)
    offer = await manager.submit_catalog_offer(req.id, "clinic-a")

    assert offer.offer_type == "auto"
    assert offer.min_price_cents == offer.max_price_cents == 400000
    assert (await manager.get_request(req.id)).offer_type == "auto"


@pytest.mark.asyncio
async def test_price_list_rejects_amount_over_cap(manager, store):
    with pytest.raises(errors.InvalidPrice):
        await manager.save_price_list_entry("clinic-a", "dis_implant", 30000000)
    with pytest.raises(errors.InvalidPrice):
        await manager.save_price_list_entry("clinic-a", "dis_implant", "1e30")
    assert store.price_entries == {}


@pytest.mark.asyncio
async def test_catalog_offer_on_offered_request_is_not_open(manager, manual_offer):
    req = await manager.create_request("patient-1", RHINO)
    await manager.submit_offer(req.id, "clinic-b", manual_offer)

    # clinic-a has no price for the procedure; the closed request is reported first
    with pytest.raises(errors.RequestNotOpen):
        await manager.submit_catalog_offer(req.id, "clinic-a")


@pytest.mark.asyncio
async def test_catalog_offer_after_deadline_is_sla_expired(manager, store, clock):
    req = await manager.create_request("patient-1", RHINO)
    clock.advance(hours=24)

    with pytest.raises(errors.SlaExpired):
        await manager.submit_catalog_offer(req.id, "clinic-a")
    await manager.save_price_list_entry("clinic-a", "burun_estetigi_rinoplasti", 4000)
    with pytest.raises(errors.SlaExpired):
        await manager.submit_catalog_offer(req.id, "clinic-a")
    assert store.offers == {}


@pytest.mark.asyncio
async def test_update_of_removed_entry_is_not_found(manager, store):
    entry = await manager.save_price_list_entry("clinic-a", "dis_implant", 500)
    await manager.remove_price_list_entry("clinic-a", entry.id)

    with pytest.raises(errors.PriceEntryNotFound):
        await store.update_price_entry(entry.model_copy(update={"amount_cents": 600}))
    assert store.price_entries[entry.id].amount_cents == 50000
