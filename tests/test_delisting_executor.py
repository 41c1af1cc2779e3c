from datetime import timedelta

import pytest
from sqlalchemy import select

from delisting_hub.core.clock import ensure_utc, utcnow
from delisting_hub.models.audit_log import DelistingAuditLog
from delisting_hub.models.delisting_job import DelistingJob
from delisting_hub.models.listing import MarketplaceListing
from delisting_hub.services.delisting_executor import execute_delisting_job, resolve_job_status
from delisting_hub.services.errors import ErrorKind, JobStateError

from fakes import FakeMarketplaceGateway, failure
from fixtures_seed import seed_job, seed_listings

USER = "usr_1"
LIVE = {"ebay": "sold", "poshmark": "active", "facebook_marketplace": "active"}


async def _run(session_factory, job_id, gateway, **kwargs):
    async with session_factory() as s:
        return await execute_delisting_job(s, job_id, gateway, **kwargs)


async def _job(session_factory, job_id) -> DelistingJob:
    async with session_factory() as s:
        return (await s.execute(select(DelistingJob).where(DelistingJob.id == job_id))).scalar_one()


async def _audit(session_factory) -> list[DelistingAuditLog]:
    async with session_factory() as s:
        return list((await s.execute(select(DelistingAuditLog))).scalars())


def test_resolve_job_status():
    assert resolve_job_status(["poshmark"], []) == "completed"
    assert resolve_job_status([], []) == "completed"
    assert resolve_job_status(["poshmark"], ["etsy"]) == "partially_failed"
    assert resolve_job_status([], ["etsy"]) == "failed"


@pytest.mark.asyncio
async def test_all_marketplaces_delisted(session_factory, db_session):
    listing_ids = await seed_listings(db_session, user_id=USER, item_id="inv_1", marketplaces=LIVE)
    job_id = await seed_job(db_session, user_id=USER, targets=("poshmark", "facebook_marketplace"))
    gateway = FakeMarketplaceGateway()

    res = await _run(session_factory, job_id, gateway)

    assert res.status == "completed"
    assert res.completed == ["facebook_marketplace", "poshmark"]
    assert sorted(c["marketplace"] for c in gateway.delist_calls) == ["facebook_marketplace", "poshmark"]

    job = await _job(session_factory, job_id)
    assert job.status == "completed"
    assert job.completed_at is not None
    assert job.marketplaces_failed == []
    assert set(job.success_log) == {"poshmark", "facebook_marketplace"}

    async with session_factory() as s:
        statuses = dict((await s.execute(select(MarketplaceListing.marketplace, MarketplaceListing.status))).all())
    assert statuses == {"ebay": "sold", "poshmark": "cancelled", "facebook_marketplace": "cancelled"}

    rows = await _audit(session_factory)
    assert sorted(r.action for r in rows) == ["job_completed", "listing_delisted", "listing_delisted"]
    delisted = [r for r in rows if r.action == "listing_delisted"]
    assert {r.listing_id for r in delisted} == {listing_ids["poshmark"], listing_ids["facebook_marketplace"]}


@pytest.mark.asyncio
async def test_terminal_failure_gives_partially_failed(session_factory, db_session):
    await seed_listings(db_session, user_id=USER, item_id="inv_1", marketplaces=LIVE)
    job_id = await seed_job(db_session, user_id=USER, targets=("poshmark", "facebook_marketplace"))
    gateway = FakeMarketplaceGateway()
    gateway.delist_results["poshmark"] = failure(ErrorKind.LISTING_NOT_FOUND, "listing gone")

    res = await _run(session_factory, job_id, gateway)

    assert res.status == "partially_failed"
    job = await _job(session_factory, job_id)
    assert job.marketplaces_completed == ["facebook_marketplace"]
    assert job.marketplaces_failed == ["poshmark"]
    assert job.error_log["poshmark"]["code"] == "listing_not_found"

    failed = [r for r in await _audit(session_factory) if r.action == "listing_delist_failed"]
    assert len(failed) == 1
    assert failed[0].error_code == "listing_not_found"
    assert failed[0].success is False


@pytest.mark.asyncio
async def test_every_target_failing_gives_failed(session_factory, db_session):
    await seed_listings(db_session, user_id=USER, item_id="inv_1", marketplaces=LIVE)
    job_id = await seed_job(db_session, user_id=USER, targets=("poshmark",))
    gateway = FakeMarketplaceGateway()
    gateway.delist_results["poshmark"] = failure(ErrorKind.INVALID_TOKEN, "reconnect account")

    res = await _run(session_factory, job_id, gateway)

    assert res.status == "failed"
    assert res.completed == []


@pytest.mark.asyncio
async def test_retryable_failure_reschedules_then_completes(session_factory, db_session):
    await seed_listings(db_session, user_id=USER, item_id="inv_1", marketplaces=LIVE)
    job_id = await seed_job(db_session, user_id=USER, targets=("poshmark", "facebook_marketplace"))
    gateway = FakeMarketplaceGateway()
    gateway.delist_results["poshmark"] = failure(ErrorKind.RATE_LIMITED, "slow down", retryable=True)
    now = utcnow()

    res = await _run(session_factory, job_id, gateway, now=now)

    assert res.status == "pending"
    assert res.retry_scheduled == ["poshmark"]
    job = await _job(session_factory, job_id)
    assert job.retry_count == 1
    assert job.marketplaces_completed == ["facebook_marketplace"]
    assert job.marketplaces_failed == []
    assert ensure_utc(job.scheduled_for) >= now + timedelta(seconds=60)

    # not due yet
    with pytest.raises(JobStateError) as exc:
        await _run(session_factory, job_id, gateway, now=now)
    assert exc.value.code == "not_due"

    gateway.delist_results.clear()
    gateway.delist_calls.clear()
    res = await _run(session_factory, job_id, gateway, now=now + timedelta(minutes=10))

    assert res.status == "completed"
    assert [c["marketplace"] for c in gateway.delist_calls] == ["poshmark"]
    assert (await _job(session_factory, job_id)).marketplaces_completed == ["facebook_marketplace", "poshmark"]


@pytest.mark.asyncio
async def test_retryable_failure_without_retries_left_fails(session_factory, db_session):
    await seed_listings(db_session, user_id=USER, item_id="inv_1", marketplaces=LIVE)
    job_id = await seed_job(db_session, user_id=USER, targets=("poshmark",), retry_count=3, max_retries=3)
    gateway = FakeMarketplaceGateway()
    gateway.delist_results["poshmark"] = failure(ErrorKind.API_UNAVAILABLE, "503", retryable=True)

    res = await _run(session_factory, job_id, gateway)

    assert res.status == "failed"
    assert res.failed == ["poshmark"]


@pytest.mark.asyncio
async def test_already_ended_listing_counts_as_delisted(session_factory, db_session):
    await seed_listings(db_session, user_id=USER, item_id="inv_1", marketplaces=LIVE)
    job_id = await seed_job(db_session, user_id=USER, targets=("poshmark",))
    gateway = FakeMarketplaceGateway()
    gateway.delist_results["poshmark"] = failure(ErrorKind.LISTING_ALREADY_ENDED, "ended")

    assert (await _run(session_factory, job_id, gateway)).status == "completed"


@pytest.mark.asyncio
async def test_marketplace_without_live_listing_needs_no_call(session_factory, db_session):
    await seed_listings(db_session, user_id=USER, item_id="inv_1", marketplaces={"ebay": "sold", "etsy": "cancelled"})
    job_id = await seed_job(db_session, user_id=USER, targets=("etsy",))
    gateway = FakeMarketplaceGateway()

    res = await _run(session_factory, job_id, gateway)

    assert res.status == "completed"
    assert gateway.delist_calls == []


@pytest.mark.asyncio
async def test_missing_gateway_is_retryable(session_factory, db_session):
    await seed_listings(db_session, user_id=USER, item_id="inv_1", marketplaces=LIVE)
    job_id = await seed_job(db_session, user_id=USER, targets=("poshmark",))

    res = await _run(session_factory, job_id, None)

    assert res.status == "pending"
    assert res.retry_scheduled == ["poshmark"]


@pytest.mark.asyncio
@pytest.mark.parametrize("fields,code", [
    ({"requires_user_confirmation": True}, "confirmation_required"),
    ({"status": "cancelled"}, "not_runnable"),
    ({"status": "completed"}, "not_runnable"),
])
async def test_job_not_runnable(session_factory, db_session, fields, code):
    job_id = await seed_job(db_session, user_id=USER, **fields)

    with pytest.raises(JobStateError) as exc:
        await _run(session_factory, job_id, FakeMarketplaceGateway())
    assert exc.value.code == code


@pytest.mark.asyncio
async def test_future_job_is_not_due(session_factory, db_session):
    job_id = await seed_job(db_session, user_id=USER, scheduled_for=utcnow() + timedelta(days=7))

    with pytest.raises(JobStateError) as exc:
        await _run(session_factory, job_id, FakeMarketplaceGateway())
    assert exc.value.code == "not_due"


@pytest.mark.asyncio
async def test_unknown_job(session_factory):
    with pytest.raises(JobStateError) as exc:
        await _run(session_factory, "dlj_missing", FakeMarketplaceGateway())
    assert exc.value.code == "not_found"
