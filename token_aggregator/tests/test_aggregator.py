"""Aggregation engine tests: merge rules, change events, refresh and reads"""

import httpx
import pytest

from conftest import FakeSource, address, make_token
from token_aggregator.core.errors import InitializationError, UpstreamError
from token_aggregator.ingestion.dexscreener import DexScreenerSource
from token_aggregator.schemas.query import PaginationOptions, TokenFilter, TokenSort
from token_aggregator.services.aggregator import ALL_TOKENS_KEY, TokenAggregator, token_key
from token_aggregator.services.cache import MemoryCache
from token_aggregator.services.events import EventSink


class BrokenCache(MemoryCache):
    """A backend that fails every read and write."""

    async def get(self, key):
        raise RuntimeError("cache backend down")

    async def set(self, key, value, ttl=None):
        raise RuntimeError("cache backend down")


@pytest.fixture
def aggregator(memory_cache, sink):
    return TokenAggregator(cache=memory_cache, event_sink=sink)


class TestMergeRules:
    """Field-level reconciliation of records for the same address"""

    def test_first_sighting_inserts_and_emits_once(self, aggregator, sink):
        token = make_token(1)
        aggregator.merge_token(token)
        assert aggregator.get_all_tokens() == [token]
        assert sink.new_tokens == [token]

        aggregator.merge_token(make_token(1))
        assert len(sink.new_tokens) == 1

    def test_prefer_nonzero(self, aggregator):
        aggregator.merge_token(make_token(1, price_usd=1.0, market_cap_usd=500, volume_7d=70, liquidity_usd=10))
        merged = aggregator.merge_token(make_token(1, price_usd=0, market_cap_usd=700, volume_7d=0, liquidity_usd=20))

        assert merged.price_usd == 1.0
        assert merged.market_cap_usd == 700
        assert merged.volume_7d == 70
        assert merged.liquidity_usd == 20

    def test_negative_changes_are_not_treated_as_missing(self, aggregator):
        aggregator.merge_token(make_token(1, price_24hr_change=5.0))
        merged = aggregator.merge_token(make_token(1, price_24hr_change=-2.0))
        assert merged.price_24hr_change == -2.0

    @pytest.mark.parametrize("existing,incoming", [(10, 3), (3, 10), (0, 4)])
    def test_transaction_count_takes_max(self, aggregator, existing, incoming):
        aggregator.merge_token(make_token(1, transaction_count=existing))
        merged = aggregator.merge_token(make_token(1, transaction_count=incoming))
        assert merged.transaction_count == max(existing, incoming)

    def test_sources_union_preserves_order(self, aggregator):
        aggregator.merge_token(make_token(1, sources=["dexscreener"]))
        merged = aggregator.merge_token(make_token(1, sources=["geckoterminal", "dexscreener"]))
        assert merged.sources == ["dexscreener", "geckoterminal"]

    def test_identity_fields_come_from_first_sighting(self, aggregator):
        aggregator.merge_token(make_token(1, token_name="Original", protocol="raydium"))
        merged = aggregator.merge_token(make_token(1, token_name="Other", protocol="jupiter"))
        assert merged.token_name == "Original"
        assert merged.protocol == "raydium"

    def test_metadata_prefers_incoming_when_present(self, aggregator):
        aggregator.merge_token(make_token(1, image_url="old.png", website="https://old.test"))
        merged = aggregator.merge_token(make_token(1, image_url="new.png", website=None))
        assert merged.image_url == "new.png"
        assert merged.website == "https://old.test"

    def test_socials_shallow_merge(self, aggregator):
        aggregator.merge_token(make_token(1, socials={"twitter": "t-old", "discord": "d-old"}))
        merged = aggregator.merge_token(make_token(1, socials={"twitter": "t-new", "telegram": "tg"}))
        assert merged.socials.twitter == "t-new"
        assert merged.socials.telegram == "tg"
        assert merged.socials.discord == "d-old"

    def test_merge_is_idempotent_on_equal_input(self, aggregator, sink):
        incoming = make_token(1, price_usd=2.0, volume_24hr=500, transaction_count=9)
        aggregator.merge_token(incoming)
        first = aggregator.merge_token(incoming)
        second = aggregator.merge_token(incoming)

        ignore = {"last_updated"}
        assert first.model_dump(exclude=ignore) == second.model_dump(exclude=ignore)
        assert second.sources == ["dexscreener"]
        assert sink.price_updates == []
        assert sink.volume_spikes == []

    def test_non_finite_upstream_price_keeps_last_good_value(self, aggregator):
        source = DexScreenerSource(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
        pair = {"chainId": "solana", "baseToken": {"address": address(1), "name": "N", "symbol": "N"}}

        aggregator.merge_token(source.transform({**pair, "priceUsd": "2"}))
        merged = aggregator.merge_token(source.transform({**pair, "priceUsd": "NaN"}))
        assert merged.price_usd == 2.0

    def test_last_updated_never_decreases(self, aggregator):
        first = aggregator.merge_token(make_token(1))
        second = aggregator.merge_token(make_token(1))
        third = aggregator.merge_token(make_token(1))
        assert first.last_updated <= second.last_updated <= third.last_updated

    def test_faulty_sink_does_not_break_merge(self, memory_cache):
        class ExplodingSink(EventSink):
            def on_price_update(self, event):
                raise RuntimeError("subscriber bug")

            def on_volume_spike(self, event):
                raise RuntimeError("subscriber bug")

            def on_new_token(self, token):
                raise RuntimeError("subscriber bug")

        aggregator = TokenAggregator(cache=memory_cache, event_sink=ExplodingSink())
        aggregator.merge_token(make_token(1, price_usd=1.0))
        merged = aggregator.merge_token(make_token(1, price_usd=2.0))
        assert merged.price_usd == 2.0


class TestChangeEvents:
    """Price and volume thresholds"""

    def test_exact_one_percent_move_fires(self, aggregator, sink):
        aggregator.merge_token(make_token(1, price_usd=100.0))
        aggregator.merge_token(make_token(1, price_usd=101.0))

        assert len(sink.price_updates) == 1
        event = sink.price_updates[0]
        assert event.old_price == 100.0
        assert event.new_price == 101.0
        assert event.price_change_percent == pytest.approx(1.0)

    def test_just_under_one_percent_does_not_fire(self, aggregator, sink):
        aggregator.merge_token(make_token(1, price_usd=100.0))
        aggregator.merge_token(make_token(1, price_usd=100.99))
        assert sink.price_updates == []

    def test_price_drop_fires(self, aggregator, sink):
        aggregator.merge_token(make_token(1, price_usd=100.0))
        aggregator.merge_token(make_token(1, price_usd=90.0))
        assert sink.price_updates[0].price_change_percent == pytest.approx(-10.0)

    def test_exact_fifty_percent_volume_increase_fires(self, aggregator, sink):
        aggregator.merge_token(make_token(1, token_ticker="VOL", volume_24hr=1000))
        aggregator.merge_token(make_token(1, volume_24hr=1500))

        assert len(sink.volume_spikes) == 1
        spike = sink.volume_spikes[0]
        assert spike.volume_change_percent == pytest.approx(50.0)
        assert spike.previous_volume == 1000
        assert spike.current_volume == 1500
        assert spike.token_ticker == "VOL"
        assert spike.time_window == "5m"

    def test_forty_nine_percent_volume_increase_does_not_fire(self, aggregator, sink):
        aggregator.merge_token(make_token(1, volume_24hr=1000))
        aggregator.merge_token(make_token(1, volume_24hr=1490))
        assert sink.volume_spikes == []

    def test_volume_drop_does_not_fire(self, aggregator, sink):
        aggregator.merge_token(make_token(1, volume_24hr=1000))
        aggregator.merge_token(make_token(1, volume_24hr=100))
        assert sink.volume_spikes == []

    def test_compares_against_last_merge(self, aggregator, sink):
        aggregator.merge_token(make_token(1, price_usd=100.0))
        aggregator.merge_token(make_token(1, price_usd=101.0))
        # 101 -> 101.5 is under 1% even though it is 1.5% above the original price
        aggregator.merge_token(make_token(1, price_usd=101.5))
        assert len(sink.price_updates) == 1

    def test_zero_incoming_price_emits_nothing(self, aggregator, sink):
        aggregator.merge_token(make_token(1, price_usd=100.0))
        aggregator.merge_token(make_token(1, price_usd=0))
        assert sink.price_updates == []


class TestRefresh:
    """Concurrent fan-out with isolated failures"""

    @pytest.mark.asyncio
    async def test_new_asset_discovery(self, memory_cache, sink):
        source = FakeSource("dexscreener", tokens=[make_token(7, sources=["dexscreener"])])
        aggregator = TokenAggregator(cache=memory_cache, primary=source, event_sink=sink)

        await aggregator.refresh_all()
        page = await aggregator.get_tokens()

        assert [t.token_address for t in page.data] == [address(7)]
        assert page.data[0].sources == ["dexscreener"]
        assert len(sink.new_tokens) == 1

        await aggregator.refresh_all()
        assert len(sink.new_tokens) == 1

    @pytest.mark.asyncio
    async def test_cross_source_enrichment(self, memory_cache):
        dex = FakeSource("dexscreener", tokens=[make_token(1, price_usd=1.0, liquidity_usd=0, sources=["dexscreener"])])
        gecko = FakeSource("geckoterminal", tokens=[make_token(1, price_usd=0, liquidity_usd=5000, sources=["geckoterminal"])])
        aggregator = TokenAggregator(cache=memory_cache, primary=dex, pools=gecko)

        await aggregator.refresh_all()
        token = aggregator.get_all_tokens()[0]

        assert token.price_usd == 1.0
        assert token.liquidity_usd == 5000
        assert set(token.sources) == {"dexscreener", "geckoterminal"}

    @pytest.mark.asyncio
    async def test_degraded_refresh_keeps_surviving_source(self, memory_cache):
        dex = FakeSource("dexscreener", tokens=[make_token(1), make_token(2)])
        gecko = FakeSource("geckoterminal", error=UpstreamError("geckoterminal", "timeout"))
        jup = FakeSource("jupiter", error=RuntimeError("boom"))
        aggregator = TokenAggregator(cache=memory_cache, primary=dex, pools=gecko, discovery=jup)

        result = await aggregator.refresh_all()

        assert result.succeeded == ["dexscreener"]
        assert set(result.failed) == {"geckoterminal", "jupiter"}
        assert result.total_tokens == 2
        assert result.all_failed is False
        assert aggregator.active_sources() == ["dexscreener"]
        assert aggregator.last_full_refresh is not None

        status = aggregator.source_status()
        assert status["geckoterminal"]["last_refresh"]["ok"] is False
        assert status["dexscreener"]["last_refresh"]["tokens"] == 2
        assert status["jupiter"]["role"] == "discovery"

    @pytest.mark.asyncio
    async def test_all_sources_failing_still_completes(self, memory_cache):
        dex = FakeSource("dexscreener", error=RuntimeError("down"))
        aggregator = TokenAggregator(cache=memory_cache, primary=dex)
        result = await aggregator.refresh_all()
        assert result.all_failed is True
        assert result.total_tokens == 0

    @pytest.mark.asyncio
    async def test_refresh_writes_snapshot(self, memory_cache):
        dex = FakeSource("dexscreener", tokens=[make_token(1), make_token(2)])
        aggregator = TokenAggregator(cache=memory_cache, primary=dex)
        await aggregator.refresh_all()

        assert len(await memory_cache.get(ALL_TOKENS_KEY)) == 2
        assert await memory_cache.exists(token_key(address(1)))

        page = await aggregator.get_tokens()
        assert page.meta.cache_hit is True
        assert page.pagination.total_count == 2

    @pytest.mark.asyncio
    async def test_reference_rate_refresh(self, memory_cache):
        jup = FakeSource("jupiter", reference_rate=150.0)
        aggregator = TokenAggregator(cache=memory_cache, discovery=jup)
        assert aggregator.reference_rate == 200.0
        assert await aggregator.refresh_reference_rate() == 150.0

    @pytest.mark.asyncio
    async def test_reference_rate_failure_keeps_stale_value(self, memory_cache):
        jup = FakeSource("jupiter", error=RuntimeError("down"))
        aggregator = TokenAggregator(cache=memory_cache, discovery=jup, default_reference_rate=180.0)
        assert await aggregator.refresh_reference_rate() == 180.0

    @pytest.mark.asyncio
    async def test_initialize_loads_data(self, memory_cache):
        dex = FakeSource("dexscreener", tokens=[make_token(1)])
        aggregator = TokenAggregator(cache=memory_cache, primary=dex)
        result = await aggregator.initialize()
        assert result.total_tokens == 1

    @pytest.mark.asyncio
    async def test_initialize_wraps_unexpected_errors(self, memory_cache, monkeypatch):
        aggregator = TokenAggregator(cache=memory_cache, primary=FakeSource("dexscreener", tokens=[make_token(1)]))

        async def broken_refresh():
            raise RuntimeError("event loop closed")

        monkeypatch.setattr(aggregator, "refresh_all", broken_refresh)
        with pytest.raises(InitializationError):
            await aggregator.initialize()

    @pytest.mark.asyncio
    async def test_cache_outage_does_not_stop_refresh(self):
        aggregator = TokenAggregator(cache=BrokenCache(), primary=FakeSource("dexscreener", tokens=[make_token(1)]))

        result = await aggregator.initialize()

        assert result.succeeded == ["dexscreener"]
        assert result.total_tokens == 1


class TestReads:
    """Query, lookup and search"""

    @pytest.mark.asyncio
    async def test_query_reads_memory_without_snapshot(self, aggregator):
        for i, volume in enumerate([100, 300, 200]):
            aggregator.merge_token(make_token(i, volume_24hr=volume))

        page = await aggregator.get_tokens(sort=TokenSort(field="volume", direction="desc"))

        assert page.meta.cache_hit is False
        assert [t.volume_24hr for t in page.data] == [300, 200, 100]
        assert page.pagination.limit == 30

    @pytest.mark.asyncio
    async def test_query_round_trip_over_pages(self, aggregator):
        for i in range(12):
            aggregator.merge_token(make_token(i))

        seen = []
        cursor = None
        while True:
            page = await aggregator.get_tokens(pagination=PaginationOptions(limit=5, cursor=cursor))
            seen.extend(t.token_address for t in page.data)
            cursor = page.pagination.next_cursor
            if not page.pagination.has_more:
                break
        assert len(seen) == 12
        assert len(set(seen)) == 12

    @pytest.mark.asyncio
    async def test_contradictory_filter_yields_zero(self, aggregator):
        aggregator.merge_token(make_token(1, volume_24hr=700))
        page = await aggregator.get_tokens(TokenFilter(min_volume=1000, max_volume=500))
        assert page.data == []
        assert page.pagination.total_count == 0
        assert page.pagination.has_more is False

    @pytest.mark.asyncio
    async def test_cache_outage_falls_back_to_memory(self):
        aggregator = TokenAggregator(cache=BrokenCache(), primary=FakeSource("dexscreener"))
        aggregator.merge_token(make_token(1))

        page = await aggregator.get_tokens()
        assert page.pagination.total_count == 1
        assert page.meta.cache_hit is False
        assert (await aggregator.get_token(address(1))).token_address == address(1)

    @pytest.mark.asyncio
    async def test_cache_outage_during_remote_lookup(self):
        dex = FakeSource("dexscreener", pairs={address(5): [make_token(5)]})
        aggregator = TokenAggregator(cache=BrokenCache(), primary=dex)
        assert (await aggregator.get_token(address(5))).token_address == address(5)

    @pytest.mark.asyncio
    async def test_lookup_from_memory(self, aggregator):
        token = make_token(1)
        aggregator.merge_token(token)
        assert (await aggregator.get_token(address(1))).token_address == address(1)

    @pytest.mark.asyncio
    async def test_lookup_falls_back_to_primary(self, memory_cache, sink):
        remote = make_token(5, price_usd=3.0)
        dex = FakeSource("dexscreener", pairs={address(5): [remote]})
        aggregator = TokenAggregator(cache=memory_cache, primary=dex, event_sink=sink)

        found = await aggregator.get_token(address(5))

        assert found.price_usd == 3.0
        assert len(sink.new_tokens) == 1
        assert await memory_cache.exists(token_key(address(5)))
        assert aggregator.get_all_tokens()[0].token_address == address(5)

    @pytest.mark.asyncio
    async def test_lookup_miss_returns_none(self, memory_cache):
        aggregator = TokenAggregator(cache=memory_cache, primary=FakeSource("dexscreener"))
        assert await aggregator.get_token(address(99)) is None

    @pytest.mark.asyncio
    async def test_lookup_primary_error_returns_none(self, memory_cache):
        dex = FakeSource("dexscreener", error=UpstreamError("dexscreener", "down"))
        aggregator = TokenAggregator(cache=memory_cache, primary=dex)
        assert await aggregator.get_token(address(99)) is None

    @pytest.mark.asyncio
    async def test_search_served_from_memory_when_enough(self, memory_cache):
        dex = FakeSource("dexscreener")
        aggregator = TokenAggregator(cache=memory_cache, primary=dex)
        for i in range(3):
            aggregator.merge_token(make_token(i, token_name=f"Pepe {i}"))

        result = await aggregator.search_tokens("pepe", limit=2)
        assert len(result) == 2
        assert dex.search_calls == 0

    @pytest.mark.asyncio
    async def test_search_merges_remote_hits(self, memory_cache):
        dex = FakeSource(
            "dexscreener",
            search_hits=[
                make_token(1, token_name="Dog Coin"),
                make_token(2, token_name="Dog Chain", chain_id="ethereum"),
            ],
        )
        gecko = FakeSource("geckoterminal", search_hits=[make_token(3, token_ticker="DOGGY", sources=["geckoterminal"])])
        aggregator = TokenAggregator(cache=memory_cache, primary=dex, pools=gecko)

        result = await aggregator.search_tokens("dog", limit=10)

        assert sorted(t.token_address for t in result) == [address(1), address(3)]
        assert dex.search_calls == 1
        assert gecko.search_calls == 1

    @pytest.mark.asyncio
    async def test_search_tolerates_remote_failure(self, memory_cache):
        dex = FakeSource("dexscreener", error=RuntimeError("down"))
        aggregator = TokenAggregator(cache=memory_cache, primary=dex)
        aggregator.merge_token(make_token(1, token_name="Cat"))
        assert len(await aggregator.search_tokens("cat")) == 1

    @pytest.mark.asyncio
    async def test_get_many_splits_found_and_missing(self, memory_cache):
        aggregator = TokenAggregator(cache=memory_cache, primary=FakeSource("dexscreener"))
        aggregator.merge_token(make_token(1))

        found, missing = await aggregator.get_many([address(1), address(2)])
        assert [t.token_address for t in found] == [address(1)]
        assert missing == [address(2)]

    def test_stats(self, aggregator):
        aggregator.merge_token(make_token(1))
        stats = aggregator.get_stats()
        assert stats["total_tokens"] == 1
        assert stats["sources"] == ["dexscreener"]
        assert stats["reference_rate"] == 200.0
        assert stats["cache"]["backend"] == "memory"
        assert stats["cache"]["connected"] is True
