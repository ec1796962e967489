"""Document store, persistence gateway, cache and quota reset."""

import asyncio
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from conftest import NOW, FakeClock
from siteinsight.aggregation.engine import aggregate_daily, summarize
from siteinsight.core.dates import DateWindow, ensure_utc
from siteinsight.core.errors import PersistenceError, ProviderAPIError
from siteinsight.core.metric_registry import GA4_DAILY_TRAFFIC
from siteinsight.models.records import RawRow, WindowAggregates
from siteinsight.models.storage_models import CacheEntry, TenantDocument
from siteinsight.models.tenant_models import Provider, UserAccount
from siteinsight.quota import QuotaService
from siteinsight.storage.cache import CacheStore, cache_key
from siteinsight.storage.document_store import (
    BENCHMARK_CONTRACT,
    GA4_INGEST_CONTRACT,
    DocumentStore,
    WriteContract,
    deep_merge,
)
from siteinsight.storage.gateway import CANCELLED_MESSAGE, PersistenceGateway

WINDOW = DateWindow(start=date(2025, 9, 1), end=date(2025, 9, 30))


def ga4_aggregates(fetched_at=NOW, devices=("mobile",)) -> WindowAggregates:
    rows = [
        RawRow(dimension_values=["20250901", device, "Direct"],
               metric_values=["10", "8", "12", "0.5", "0.4", "30"])
        for device in devices
    ]
    daily = aggregate_daily(rows, GA4_DAILY_TRAFFIC)
    return WindowAggregates(
        provider="ga4",
        fetched_at=fetched_at,
        period=WINDOW.to_period(),
        daily=daily,
        summary=summarize(daily, GA4_DAILY_TRAFFIC, WINDOW, fetched_at),
    )


def all_documents(sessions):
    with sessions() as session:
        docs = session.exec(select(TenantDocument)).all()
        return {(d.site_id, d.collection, d.doc_id): (dict(d.data), d.updated_at) for d in docs}


@pytest.fixture
def store(sessions):
    return DocumentStore(sessions)


@pytest.fixture
def gateway(store, sessions):
    return PersistenceGateway(store, sessions)


class TestDeepMerge:
    def test_nested_maps_merge(self):
        base = {"a": 1, "byDevice": {"mobile": {"sessions": 1}}, "keep": True}
        patch = {"a": 2, "byDevice": {"desktop": {"sessions": 5}}}

        assert deep_merge(base, patch) == {
            "a": 2,
            "byDevice": {"mobile": {"sessions": 1}, "desktop": {"sessions": 5}},
            "keep": True,
        }
        assert base["byDevice"] == {"mobile": {"sessions": 1}}

    def test_non_dict_replaces(self):
        assert deep_merge({"queries": [1, 2]}, {"queries": [3]}) == {"queries": [3]}


class TestUpsert:
    def test_writes_daily_and_summary(self, gateway, store):
        gateway.upsert("s1", ga4_aggregates())

        daily = store.get("s1", "ga4_data", "20250901")
        summary = store.get("s1", "ga4_data", "_summary")
        assert daily["sessions"] == 10
        assert daily["sourceRowCount"] == 1
        assert daily["fetchedAt"] == NOW.isoformat()
        assert summary["totalSessions"] == 10
        assert summary["period"] == {"startDate": "2025-09-01", "endDate": "2025-09-30"}

    def test_idempotent(self, gateway, sessions):
        aggregates = ga4_aggregates()
        gateway.upsert("s1", aggregates)
        first = all_documents(sessions)
        first_status = gateway.status("s1", Provider.GA4)

        changed = gateway.upsert("s1", aggregates)

        assert changed == 0
        assert all_documents(sessions) == first
        second_status = gateway.status("s1", Provider.GA4)
        assert second_status.status == first_status.status == "success"
        assert second_status.last_fetched_at == first_status.last_fetched_at

    def test_merge_preserves_foreign_fields(self, gateway, store):
        notes = WriteContract("annotations", "ga4_data", frozenset({"note"}))
        store.batch(notes).merge("s1", "20250901", {"note": "campaign launch"}).commit()

        gateway.upsert("s1", ga4_aggregates())

        doc = store.get("s1", "ga4_data", "20250901")
        assert doc["note"] == "campaign launch"
        assert doc["sessions"] == 10

    def test_nested_breakdowns_merge(self, gateway, store):
        gateway.upsert("s1", ga4_aggregates(devices=("mobile",)))
        gateway.upsert("s1", ga4_aggregates(devices=("desktop",)))

        doc = store.get("s1", "ga4_data", "20250901")
        assert set(doc["byDevice"]) == {"mobile", "desktop"}

    def test_status_success_timestamp(self, gateway):
        gateway.upsert("s1", ga4_aggregates())

        status = gateway.status("s1", Provider.GA4)
        assert status.status == "success"
        assert status.error_message is None
        assert ensure_utc(status.last_fetched_at) == NOW


class TestIngest:
    def test_error_recorded_and_reraised(self, gateway, store):
        async def produce():
            raise ProviderAPIError("Internal error encountered.", 500, "ga4")

        with pytest.raises(ProviderAPIError):
            asyncio.run(gateway.ingest("s1", Provider.GA4, produce))

        status = gateway.status("s1", Provider.GA4)
        assert status.status == "error"
        assert status.error_message == "Internal error encountered."
        assert store.get("s1", "ga4_data", "_summary") is None

    def test_error_keeps_previous_fetch_time(self, gateway):
        async def ok():
            return ga4_aggregates()

        async def fail():
            raise ProviderAPIError("boom", 503, "ga4")

        asyncio.run(gateway.ingest("s1", Provider.GA4, ok))
        with pytest.raises(ProviderAPIError):
            asyncio.run(gateway.ingest("s1", Provider.GA4, fail))

        status = gateway.status("s1", Provider.GA4)
        assert status.status == "error"
        assert ensure_utc(status.last_fetched_at) == NOW

    def test_budget_cancellation_recorded(self, store, sessions):
        clock = FakeClock()
        gateway = PersistenceGateway(store, sessions, clock=clock)

        async def slow():
            await asyncio.sleep(5)
            return ga4_aggregates()

        async def run():
            await asyncio.wait_for(gateway.ingest("s1", Provider.GA4, slow), timeout=0.05)

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(run())

        status = gateway.status("s1", Provider.GA4)
        assert status.status == "error"
        assert status.error_message == CANCELLED_MESSAGE
        assert ensure_utc(status.last_attempted_at) == NOW
        assert status.last_fetched_at is None

    def test_attempt_time_set_on_error(self, store, sessions):
        clock = FakeClock(NOW + timedelta(hours=2))
        gateway = PersistenceGateway(store, sessions, clock=clock)

        async def fail():
            raise ProviderAPIError("boom", 503, "ga4")

        with pytest.raises(ProviderAPIError):
            asyncio.run(gateway.ingest("s1", Provider.GA4, fail))

        assert ensure_utc(gateway.status("s1", Provider.GA4).last_attempted_at) == NOW + timedelta(hours=2)

    def test_success_clears_error(self, gateway):
        async def fail():
            raise ProviderAPIError("boom", 503, "ga4")

        async def ok():
            return ga4_aggregates()

        with pytest.raises(ProviderAPIError):
            asyncio.run(gateway.ingest("s1", Provider.GA4, fail))
        asyncio.run(gateway.ingest("s1", Provider.GA4, ok))

        status = gateway.status("s1", Provider.GA4)
        assert status.status == "success"
        assert status.error_message is None


class TestWriteContracts:
    def test_undeclared_field_rejected(self, store):
        with pytest.raises(PersistenceError):
            store.batch(GA4_INGEST_CONTRACT).merge("s1", "20250901", {"revenue": 10})

    def test_benchmark_contract_cannot_touch_ingest_fields(self, store):
        with pytest.raises(PersistenceError):
            store.batch(BENCHMARK_CONTRACT).merge("s1", "2025-09", {"totalSessions": 1})

    def test_failed_commit_writes_nothing(self, store):
        def explode(session):
            raise SQLAlchemyError("disk full")

        batch = store.batch(GA4_INGEST_CONTRACT)
        batch.merge("s1", "20250901", {"sessions": 1})
        batch.merge("s1", "_summary", {"totalSessions": 1})

        with pytest.raises(PersistenceError):
            batch.commit(also=explode)

        assert store.get("s1", "ga4_data", "20250901") is None
        assert store.get("s1", "ga4_data", "_summary") is None


class TestCacheStore:
    def test_hit_then_expiry(self, sessions):
        clock = FakeClock()
        cache = CacheStore(sessions, ttl_seconds=3600, clock=clock)
        key = cache_key("ga4_monthly", "s1", "2025-09-01", "2025-09-30")

        cache.set(key, {"sessions": 5}, site_id="s1")
        assert cache.get(key) == {"sessions": 5}

        clock.advance(hours=1)
        assert cache.get(key) is None

    def test_cleanup_removes_old_entries(self, sessions):
        clock = FakeClock()
        cache = CacheStore(sessions, clock=clock)
        cache.set("old", {"v": 1})
        clock.advance(hours=25)
        cache.set("new", {"v": 2})

        deleted = cache.cleanup_older_than(24)

        assert deleted == 1
        with sessions() as session:
            assert [e.key for e in session.exec(select(CacheEntry)).all()] == ["new"]

    def test_cleanup_with_nothing_to_delete(self, sessions):
        assert CacheStore(sessions).cleanup_older_than(24) == 0


class TestQuotaReset:
    def test_resets_all_accounts_in_batches(self, sessions):
        with sessions() as session:
            for i in range(5):
                session.add(UserAccount(id=f"u{i}", ai_summary_usage=i + 1, ai_improvement_usage=2))
            session.commit()

        count = QuotaService(sessions, batch_size=2, clock=FakeClock(NOW + timedelta(days=1))).reset_monthly_usage()

        assert count == 5
        with sessions() as session:
            accounts = session.exec(select(UserAccount)).all()
            assert all(a.ai_summary_usage == 0 and a.ai_improvement_usage == 0 for a in accounts)

    def test_no_accounts(self, sessions):
        assert QuotaService(sessions).reset_monthly_usage() == 0
