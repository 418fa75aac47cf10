"""
Tests for the per-domain entity cache: TTL handling, pagination and
filters, in-flight fetch joining and the stale-fetch guard.
"""

import asyncio

import httpx
import pytest

from dashboard_client.cancellation import CancelToken
from dashboard_client.client import ApiClient
from dashboard_client.domain_definitions import CONTRACTS, DEALS, RATE_CARDS
from dashboard_client.entity_cache import EntityCache, TTLClass
from dashboard_client.error_handler import (
    NotFoundError,
    RequestCancelledError,
    ServerError,
    UnexpectedResponseError,
)
from tests.fixtures.api_mocks import deal, deals_page, envelope, failure


@pytest.fixture
def deals(client, clock):
    return EntityCache(DEALS, client, clock=clock)


def _assert_index_matches_list(cache):
    ids = [cache.id_of(e) for e in cache.entry.items]
    assert len(ids) == len(set(ids))
    assert set(cache.entry.by_id) == set(ids)


class TestTTL:
    @pytest.mark.asyncio
    async def test_short_ttl_scenario(self, deals, clock, api_mock):
        route = api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1"), deal("2")]))
        )

        first = await deals.fetch()
        clock.advance(minutes=4)
        second = await deals.fetch()
        clock.advance(minutes=2)
        third = await deals.fetch()

        assert route.call_count == 2
        assert first == second == third
        assert deals.entry.last_fetch == clock.now

    @pytest.mark.asyncio
    async def test_force_bypasses_valid_entry(self, deals, api_mock):
        route = api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1")]))
        )
        await deals.fetch()
        await deals.fetch(force=True)
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_next_fetch(self, deals, api_mock):
        route = api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1")]))
        )
        await deals.fetch()
        deals.invalidate()

        assert not deals.is_valid()
        assert deals.entry.items  # data kept until the refetch lands
        await deals.fetch()
        assert route.call_count == 2

    def test_ttl_classes(self):
        assert TTLClass.SHORT.seconds == 300
        assert TTLClass.MEDIUM.seconds == 900
        assert TTLClass.LONG.seconds == 1800
        assert TTLClass.VERY_LONG.seconds == 3600


class TestListFetch:
    @pytest.mark.asyncio
    async def test_sends_filters_and_pagination(self, deals, api_mock):
        route = api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1")], total=41, has_more=True))
        )
        await deals.fetch()

        params = route.calls.last.request.url.params
        assert params["stage"] == "all"
        assert params["page"] == "1"
        assert params["limit"] == "20"
        assert "search" not in params  # empty filters are not sent
        assert deals.entry.pagination.total == 41
        assert deals.entry.pagination.has_more is True
        assert deals.entry.is_loading is False

    @pytest.mark.asyncio
    async def test_set_filters_resets_page_and_refetches(self, deals, api_mock):
        route = api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1")]))
        )
        await deals.set_page(3)
        await deals.set_filters(stage="negotiation")

        params = route.calls.last.request.url.params
        assert params["stage"] == "negotiation"
        assert params["page"] == "1"
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_nested_pagination_shape(self, client, clock, api_mock):
        contracts = EntityCache(CONTRACTS, client, clock=clock)
        api_mock.get("/contracts").mock(
            return_value=httpx.Response(
                200,
                json=envelope(
                    {
                        "contracts": [{"id": "c1"}, {"id": "c2"}],
                        "pagination": {"page": 1, "pages": 3, "total": 45},
                    }
                ),
            )
        )
        await contracts.fetch()

        assert set(contracts.entry.by_id) == {"c1", "c2"}
        assert contracts.entry.pagination.total == 45
        assert contracts.entry.pagination.has_more is True

    @pytest.mark.asyncio
    async def test_page_change_keeps_index_in_sync(self, deals, api_mock):
        api_mock.get("/deals").mock(
            side_effect=[
                httpx.Response(200, json=deals_page([deal("1"), deal("2")])),
                httpx.Response(200, json=deals_page([deal("3"), deal("3")])),
            ]
        )
        await deals.fetch()
        await deals.set_page(2)

        assert [e["_id"] for e in deals.entry.items] == ["3"]
        _assert_index_matches_list(deals)
        # entities from the previous page remain available for lookups
        assert deals.get("1")["title"] == "Deal 1"

    @pytest.mark.asyncio
    async def test_failure_keeps_prior_data(self, deals, clock, api_mock):
        api_mock.get("/deals").mock(
            side_effect=[
                httpx.Response(200, json=deals_page([deal("1")])),
                httpx.Response(404, json=failure("Route not found")),
            ]
        )
        await deals.fetch()
        fetched_at = deals.entry.last_fetch
        clock.advance(minutes=10)

        with pytest.raises(NotFoundError):
            await deals.fetch()

        assert [e["_id"] for e in deals.entry.items] == ["1"]
        assert deals.entry.last_fetch == fetched_at
        assert isinstance(deals.entry.error, NotFoundError)
        assert deals.entry.is_loading is False

    @pytest.mark.asyncio
    async def test_malformed_list_response(self, deals, api_mock):
        api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=envelope({"items": []}))
        )
        with pytest.raises(UnexpectedResponseError):
            await deals.fetch()
        assert isinstance(deals.entry.error, UnexpectedResponseError)

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_for_reads(self, client, clock, api_mock):
        rate_cards = EntityCache(RATE_CARDS, client, clock=clock)
        route = api_mock.get("/ratecards").mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(200, json=envelope({"rateCards": [{"_id": "r1"}]})),
            ]
        )
        assert await rate_cards.fetch() == [{"_id": "r1"}]
        assert route.call_count == 2
        assert route.calls.last.request.url.params["limit"] == "10"

    @pytest.mark.asyncio
    async def test_reset_restores_defaults(self, deals, api_mock):
        api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1")]))
        )
        await deals.set_filters(stage="won")
        deals.reset()

        assert deals.entry.items == []
        assert deals.entry.filters["stage"] == "all"
        assert deals.entry.last_fetch is None


class TestFetchById:
    @pytest.mark.asyncio
    async def test_served_from_list_while_fresh(self, deals, clock, api_mock):
        api_mock.get("/deals").mock(
            return_value=httpx.Response(200, json=deals_page([deal("1")]))
        )
        single = api_mock.get("/deals/1").mock(
            return_value=httpx.Response(200, json=envelope(deal("1", amount=900)))
        )
        await deals.fetch()

        assert (await deals.fetch_by_id("1"))["amount"] == 300
        clock.advance(minutes=16)
        assert (await deals.fetch_by_id("1"))["amount"] == 900
        assert single.call_count == 1
        # the listed copy is replaced in place
        assert deals.entry.items[0]["amount"] == 900
        _assert_index_matches_list(deals)

    @pytest.mark.asyncio
    async def test_unlisted_entity_goes_to_details(self, deals, api_mock):
        route = api_mock.get("/deals/77").mock(
            return_value=httpx.Response(200, json=envelope(deal("77")))
        )
        await deals.fetch_by_id(77)
        await deals.fetch_by_id(77)

        assert route.call_count == 1
        assert deals.entry.items == []
        assert deals.get("77")["_id"] == "77"
        _assert_index_matches_list(deals)

    @pytest.mark.asyncio
    async def test_detail_key_unwrapped(self, client, clock, api_mock):
        contracts = EntityCache(CONTRACTS, client, clock=clock)
        api_mock.get("/contracts/c9").mock(
            return_value=httpx.Response(200, json=envelope({"contract": {"id": "c9", "status": "draft"}}))
        )
        assert (await contracts.fetch_by_id("c9"))["status"] == "draft"


class TestConcurrentFetches:
    @pytest.mark.asyncio
    async def test_non_forced_fetch_joins_in_flight_one(self, config, credentials, clock):
        gate = asyncio.Event()
        calls = []

        async def handler(request):
            calls.append(request)
            await gate.wait()
            return httpx.Response(200, json=deals_page([deal("1")]))

        client = ApiClient(config, credentials, transport=httpx.MockTransport(handler))
        cache = EntityCache(DEALS, client, clock=clock)

        first = asyncio.ensure_future(cache.fetch())
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(cache.fetch())
        await asyncio.sleep(0.01)
        gate.set()

        assert await first == await second == [deal("1")]
        assert len(calls) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stale_fetch_keeps_newer_local_write(self, config, credentials, clock):
        gate = asyncio.Event()

        async def handler(request):
            await gate.wait()
            return httpx.Response(
                200, json=deals_page([deal("42", amount=300), deal("7"), deal("8")])
            )

        client = ApiClient(config, credentials, transport=httpx.MockTransport(handler))
        cache = EntityCache(DEALS, client, clock=clock)
        cache.prepend(deal("7"))
        cache.prepend(deal("42", amount=300))

        pending = asyncio.ensure_future(cache.fetch(force=True))
        await asyncio.sleep(0.01)

        # local writes land while the fetch is in flight
        cache.replace("42", deal("42", amount=500))
        cache.discard("7")
        gate.set()
        items = await pending

        assert cache.get("42")["amount"] == 500
        assert [e["_id"] for e in items] == ["42", "8"]
        assert cache.get("7") is None
        _assert_index_matches_list(cache)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_older_fetch_landing_last_is_discarded(self, config, credentials, clock):
        gates = [asyncio.Event(), asyncio.Event()]
        pages = [[deal("old")], [deal("new")]]
        seen = []

        async def handler(request):
            index = len(seen)
            seen.append(index)
            await gates[index].wait()
            return httpx.Response(200, json=deals_page(pages[index]))

        client = ApiClient(config, credentials, transport=httpx.MockTransport(handler))
        cache = EntityCache(DEALS, client, clock=clock)

        older = asyncio.ensure_future(cache.fetch(force=True))
        await asyncio.sleep(0.01)
        newer = asyncio.ensure_future(cache.fetch(force=True))
        await asyncio.sleep(0.01)

        gates[1].set()
        await newer
        gates[0].set()
        await older

        assert [e["_id"] for e in cache.entry.items] == ["new"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cancelled_fetch_leaves_entry_untouched(self, config, credentials, clock):
        async def handler(request):
            await asyncio.Event().wait()

        client = ApiClient(config, credentials, transport=httpx.MockTransport(handler))
        cache = EntityCache(DEALS, client, clock=clock)
        cache.prepend(deal("1"))
        before = list(cache.entry.items)

        token = CancelToken()
        pending = asyncio.ensure_future(cache.fetch(force=True, cancel_token=token))
        await asyncio.sleep(0.01)
        assert cache.entry.is_loading is True
        token.cancel("navigated away")

        with pytest.raises(RequestCancelledError):
            await pending

        assert cache.entry.items == before
        assert cache.entry.is_loading is False
        assert cache.entry.error is None
        assert cache.entry.last_fetch is None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_reset_during_fetch_discards_result(self, config, credentials, clock):
        gate = asyncio.Event()

        async def handler(request):
            await gate.wait()
            return httpx.Response(200, json=deals_page([deal("1")]))

        client = ApiClient(config, credentials, transport=httpx.MockTransport(handler))
        cache = EntityCache(DEALS, client, clock=clock)

        pending = asyncio.ensure_future(cache.fetch())
        await asyncio.sleep(0.01)
        cache.reset()
        gate.set()
        await pending

        assert cache.entry.items == []
        assert cache.entry.last_fetch is None
        await client.aclose()


@pytest.mark.asyncio
async def test_server_error_recorded_on_entry(deals, api_mock):
    api_mock.get("/deals").mock(return_value=httpx.Response(500))
    with pytest.raises(ServerError):
        await deals.fetch()
    assert isinstance(deals.entry.error, ServerError)
