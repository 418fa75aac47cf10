"""
Tests for the DataStore registry: aggregates, cross-domain invalidation,
reset and refresh_all.
"""

import logging

import httpx
import pytest

from dashboard_client.aggregate_cache import AggregateConfig
from dashboard_client.data_store import DataStore
from dashboard_client.entity_cache import DomainConfig, TTLClass
from dashboard_client.error_handler import NotFoundError, ServerError
from tests.fixtures.api_mocks import BASE_URL, deal, deals_page, envelope

LIST_KEYS = {
    "/deals": "deals",
    "/invoices": "invoices",
    "/briefs": "briefs",
    "/contracts": "contracts",
    "/ratecards": "rateCards",
    "/scripts": "scripts",
}


@pytest.fixture
def store(client, clock):
    return DataStore(client, clock=clock)


def _everything_ok(request):
    path = request.url.path[len("/api/v1"):]
    if path in LIST_KEYS:
        return httpx.Response(200, json=envelope({LIST_KEYS[path]: []}))
    return httpx.Response(200, json=envelope({"path": path}))


class TestAggregates:
    @pytest.mark.asyncio
    async def test_served_from_memory_within_ttl(self, store, clock, api_mock):
        route = api_mock.get("/analytics/dashboard").mock(
            return_value=httpx.Response(200, json=envelope({"revenue": 1200}))
        )
        analytics = store.aggregate("analytics")

        assert await analytics.fetch() == {"revenue": 1200}
        clock.advance(minutes=29)
        assert await analytics.fetch() == {"revenue": 1200}
        assert route.call_count == 1
        assert route.calls.last.request.url.params["period"] == "month"

        clock.advance(minutes=2)
        await analytics.fetch()
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_keyed_by_params(self, store, api_mock):
        route = api_mock.get("/analytics/dashboard").mock(
            side_effect=lambda request: httpx.Response(
                200, json=envelope({"period": request.url.params["period"]})
            )
        )
        analytics = store.aggregate("analytics")

        assert await analytics.fetch({"period": "week"}) == {"period": "week"}
        assert await analytics.fetch({"period": "week"}) == {"period": "week"}
        assert await analytics.fetch() == {"period": "month"}
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_failure_recorded_and_value_kept(self, store, clock, api_mock):
        route = api_mock.get("/contracts/upload-limits").mock(
            side_effect=[
                httpx.Response(200, json=envelope({"remaining": 4})),
                httpx.Response(404),
            ]
        )
        limits = store.aggregate("upload_limits")
        await limits.fetch()
        clock.advance(minutes=61)

        with pytest.raises(NotFoundError):
            await limits.fetch()
        assert route.call_count == 2
        assert isinstance(limits.error, NotFoundError)
        assert limits.value == {"remaining": 4}
        assert limits.is_loading is False

    @pytest.mark.asyncio
    async def test_activity_feed_overall_and_per_contract(self, store, clock, api_mock):
        overall = api_mock.get("/contracts/activity").mock(
            return_value=httpx.Response(
                200, json=envelope({"activities": [{"action": "uploaded"}]})
            )
        )
        single = api_mock.get("/contracts/c1/activity").mock(
            return_value=httpx.Response(
                200, json=envelope({"activities": [{"action": "signed"}]})
            )
        )
        activity = store.aggregate("contract_activity")

        assert await activity.fetch() == [{"action": "uploaded"}]
        assert overall.calls.last.request.url.params["limit"] == "10"

        assert await activity.fetch(subject="c1") == [{"action": "signed"}]
        clock.advance(minutes=14)
        assert await activity.fetch(subject="c1") == [{"action": "signed"}]
        assert single.call_count == 1
        assert single.calls.last.request.url.params["limit"] == "10"

        assert await activity.fetch() == [{"action": "uploaded"}]
        assert overall.call_count == 2

    @pytest.mark.asyncio
    async def test_subject_needs_subject_path(self, store, api_mock):
        with pytest.raises(ValueError, match="analytics"):
            await store.aggregate("analytics").fetch(subject="42")
        assert not api_mock.calls


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_by_name_list_or_all(self, store, api_mock):
        api_mock.route(method="GET").mock(side_effect=_everything_ok)
        await store.refresh_all()

        store.invalidate("deals")
        assert not store.cache("deals").is_valid()
        assert store.cache("invoices").is_valid()

        store.invalidate(["invoices", "analytics"])
        assert not store.cache("invoices").is_valid()
        assert not store.aggregate("analytics").is_valid()
        assert store.cache("briefs").is_valid()

        store.invalidate()
        assert not any(cache.is_valid() for cache in store.caches.values())
        assert not any(agg.last_fetch for agg in store.aggregates.values())

    def test_unknown_name_is_ignored_with_warning(self, store, caplog):
        with caplog.at_level(logging.WARNING, logger="dashboard_client"):
            store.invalidate("nonexistent")
        assert "nonexistent" in caplog.text

    @pytest.mark.asyncio
    async def test_deal_write_invalidates_analytics(self, store, api_mock):
        api_mock.get("/analytics/dashboard").mock(
            return_value=httpx.Response(200, json=envelope({"revenue": 1}))
        )
        api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1")]))
        )
        api_mock.put("/deals/1").mock(
            return_value=httpx.Response(200, json=envelope(deal("1", amount=900)))
        )
        await store.aggregate("analytics").fetch()
        await store.cache("deals").fetch()

        await store.mutator("deals").update("1", {"amount": 900})

        assert not store.aggregate("analytics").is_valid()
        # an update leaves its own list fresh
        assert store.cache("deals").is_valid()

    @pytest.mark.asyncio
    async def test_brief_create_invalidates_briefs_and_stats(self, store, api_mock):
        api_mock.route(method="GET").mock(side_effect=_everything_ok)
        api_mock.post("/briefs/create-text").mock(
            return_value=httpx.Response(201, json=envelope({"_id": "b1", "title": "Brief"}))
        )
        await store.refresh_all()

        await store.mutator("briefs").create({"title": "Brief"})

        assert not store.cache("briefs").is_valid()
        assert not store.aggregate("brief_stats").is_valid()
        assert store.aggregate("script_stats").is_valid()

    @pytest.mark.asyncio
    async def test_contract_status_change_invalidates_activity(self, store, api_mock):
        feed = api_mock.get("/contracts/activity").mock(
            return_value=httpx.Response(200, json=envelope({"activities": []}))
        )
        api_mock.patch("/contracts/c1/status").mock(
            return_value=httpx.Response(200, json=envelope(None, message="Status updated"))
        )
        activity = store.aggregate("contract_activity")
        await activity.fetch()

        await store.mutator("contracts").update_status("c1", "signed")

        assert not activity.is_valid()
        assert store.cache("contracts").get("c1") is None
        await activity.fetch()
        assert feed.call_count == 2

    def test_unknown_dependents_are_rejected(self, client):
        broken = DomainConfig(
            name="widgets", path="/widgets", list_key="widgets", dependents=("gadgets",)
        )
        with pytest.raises(ValueError, match="gadgets"):
            DataStore(client, domains=[broken], aggregates=[])

    def test_unknown_lookups_raise_key_error(self, store):
        with pytest.raises(KeyError):
            store.cache("widgets")
        with pytest.raises(KeyError):
            store.mutator("widgets")
        with pytest.raises(KeyError):
            store.aggregate("widgets")


class TestResetAndRefresh:
    @pytest.mark.asyncio
    async def test_reset_drops_everything(self, store, api_mock):
        api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1")]))
        )
        api_mock.get("/analytics/dashboard").mock(
            return_value=httpx.Response(200, json=envelope({"revenue": 1}))
        )
        deals = store.cache("deals")
        await deals.set_filters(stage="won")
        await store.aggregate("analytics").fetch()

        store.reset()

        assert deals.items == []
        assert deals.get("1") is None
        assert deals.entry.filters["stage"] == "all"
        assert store.aggregate("analytics").value is None

    @pytest.mark.asyncio
    async def test_refresh_all_reports_each_outcome(self, store, api_mock):
        def handler(request):
            if request.url.path == "/api/v1/scripts/dashboard/stats":
                return httpx.Response(500)
            return _everything_ok(request)

        api_mock.route(method="GET").mock(side_effect=handler)

        outcome = await store.refresh_all()

        assert set(outcome) == set(store.caches) | set(store.aggregates)
        assert isinstance(outcome["script_stats"], ServerError)
        assert all(error is None for name, error in outcome.items() if name != "script_stats")
        assert store.cache("contracts").is_valid()

    @pytest.mark.asyncio
    async def test_refresh_all_bypasses_ttl(self, client, clock, api_mock):
        domain = DomainConfig(name="deals", path="/deals", list_key="deals", ttl=TTLClass.LONG)
        aggregate = AggregateConfig(name="totals", path="/totals")
        store = DataStore(client, domains=[domain], aggregates=[aggregate], clock=clock)
        deals = api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([]))
        )
        totals = api_mock.get("/totals").mock(
            return_value=httpx.Response(200, json=envelope(3))
        )

        await store.refresh_all()
        await store.refresh_all()

        assert deals.call_count == 2
        assert totals.call_count == 2
        assert str(totals.calls.last.request.url) == f"{BASE_URL}/totals"
