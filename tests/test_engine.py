"""
End-to-end engine scenarios on virtual time: cache freshness, priorities,
failover under rate limits, partial results, token lifecycle and status.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from quote_sync.db.tokens import MemoryTokenStore
from quote_sync.engine import SyncSettings, normalize_symbol
from quote_sync.providers.base import AuthDenied, CurrencyQuote, ProviderState, Quote
from quote_sync.providers.resilience import RetryConfig
from quote_sync.store.backend import MemoryBackingStore

from tests.fakes import (
    FakeProviderAlwaysFail,
    FakeProviderFailNThenSucceed,
    FakeQuoteProvider,
    FakeRateLimitedProvider,
    ManualScheduler,
)
from tests.fakes.engine import build_engine, open_limits


def _advance(sched: ManualScheduler, seconds: float) -> None:
    asyncio.run(sched.advance(seconds))


def _seed_quote(backing: MemoryBackingStore, symbol: str, price: float, written_at: float) -> None:
    quote = Quote(symbol=symbol, prices={"usd": CurrencyQuote(price=price)}, provider_name="coingecko")
    backing.write(f"quote:{symbol}", quote.to_dict(), written_at)


class TestFreshness:
    def test_stale_hit_returned_and_refreshed_in_background(self):
        sched = ManualScheduler()
        backing = MemoryBackingStore()
        _seed_quote(backing, "BTC", 42_000.0, sched.clock.now() - 540)
        p = FakeQuoteProvider("coingecko")
        engine = build_engine([p], scheduler=sched, backing=backing, default_tokens={"BTC": "bitcoin"})
        engine.start()
        assert p.call_count == 0
        assert sched.live_timers() == []

        assert engine.get_quote("BTC").price == 42_000.0
        assert engine.is_pending("BTC")
        assert sched.next_delay() == pytest.approx(0.5)

        _advance(sched, 1.0)
        assert engine.get_quote("btc").price == 50_000.0
        assert not engine.is_pending("BTC")

    def test_expired_entry_is_a_miss_with_urgent_fetch(self):
        sched = ManualScheduler()
        backing = MemoryBackingStore()
        _seed_quote(backing, "BTC", 42_000.0, sched.clock.now() - 660)
        p = FakeQuoteProvider("coingecko")
        engine = build_engine([p], scheduler=sched, backing=backing, default_tokens={"BTC": "bitcoin"})
        engine.start()
        assert sched.next_delay() == pytest.approx(0.5)

        assert engine.get_quote("BTC") is None
        assert sched.next_delay() == pytest.approx(0.1)
        # Stale data remains available as a fallback.
        assert engine.refresh()["BTC"].get("usd").price == 42_000.0

        _advance(sched, 0.2)
        assert engine.get_quote("BTC").price == 50_000.0
        assert p.calls_to("fetch_quotes") == [("BTC",)]

    def test_untracked_symbol_never_fetched(self):
        sched = ManualScheduler()
        p = FakeQuoteProvider("coingecko")
        engine = build_engine([p], scheduler=sched)
        assert engine.get_quote("DOGE") is None
        assert not engine.is_pending("DOGE")
        assert sched.live_timers() == []

    def test_missing_currency_is_none(self):
        sched = ManualScheduler()
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=sched)
        engine.add_symbol("SOL")
        _advance(sched, 1.0)
        assert engine.get_quote("SOL", "usd") is not None
        assert engine.get_quote("SOL", "eur") is None

    def test_pending_until_batch_completes(self):
        sched = ManualScheduler()
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=sched)
        engine.add_symbol("SOL", "solana")
        assert engine.is_pending("sol")
        _advance(sched, 0.05)
        assert engine.is_pending("SOL")
        _advance(sched, 0.1)
        assert not engine.is_pending("SOL")
        assert engine.get_metadata("SOL").provider_ref == "solana"


class TestFailover:
    def test_rate_limited_primary_fails_over(self):
        sched = ManualScheduler()
        primary = FakeRateLimitedProvider("coingecko", retry_after=30.0)
        secondary = FakeQuoteProvider("cryptocompare")
        engine = build_engine([primary, secondary], scheduler=sched)
        t0 = sched.clock.now()

        engine.add_symbol("SOL")
        _advance(sched, 0.2)

        assert engine.coordinator.cooldown_until("coingecko") == pytest.approx(t0 + 0.1 + 30.0)
        statuses = engine.provider_statuses()
        assert statuses["coingecko"].state(sched.clock.now()) is ProviderState.COOLING
        assert engine.quotes.get("SOL").provider_name == "cryptocompare"
        assert not engine.is_pending("SOL")

    def test_all_providers_cooling_serves_cache_and_waits(self):
        sched = ManualScheduler()
        backing = MemoryBackingStore()
        _seed_quote(backing, "BTC", 42_000.0, sched.clock.now() - 540)
        a = FakeRateLimitedProvider("coingecko", retry_after=30.0)
        b = FakeRateLimitedProvider("cryptocompare", retry_after=45.0)
        engine = build_engine([a, b], scheduler=sched, backing=backing, default_tokens={"BTC": "bitcoin"})
        engine.start()

        cached = engine.refresh(force=True)
        assert cached["BTC"].get("usd").price == 42_000.0
        _advance(sched, 0.5)

        assert engine.is_pending("BTC")
        assert sched.next_delay() == pytest.approx(30.0)
        assert engine.last_error.startswith("RATE_LIMITED")
        assert engine.get_quote("BTC").price == 42_000.0

        _advance(sched, 29.0)
        assert (a.call_count, b.call_count) == (1, 1)
        _advance(sched, 1.5)
        assert (a.call_count, b.call_count) == (2, 1)

    def test_transient_error_recovers_on_retry(self):
        sched = ManualScheduler()
        p = FakeProviderFailNThenSucceed("coingecko", fail_times=1)
        engine = build_engine([p], scheduler=sched)
        engine.add_symbol("SOL")
        _advance(sched, 0.2)
        assert engine.is_pending("SOL")
        assert engine.last_error.startswith("UNKNOWN")

        _advance(sched, 3.0)
        assert engine.get_quote("SOL") is not None
        assert engine.last_error is None
        assert p.failures == 1


class TestPartialResults:
    def test_three_of_five_then_give_up_on_rest(self):
        sched = ManualScheduler()
        p = FakeQuoteProvider("coingecko", missing_symbols=["DOGE", "ADA"])
        engine = build_engine([p], scheduler=sched, default_tokens={})
        engine.add_symbols(["BTC", "ETH", "SOL", "DOGE", "ADA"])
        _advance(sched, 1.0)

        for sym in ("BTC", "ETH", "SOL"):
            assert engine.quotes.get(sym) is not None
            assert not engine.is_pending(sym)
        assert engine.is_pending("DOGE") and engine.is_pending("ADA")
        assert sched.next_delay() == pytest.approx(2.5)
        assert engine.last_updated is not None

        _advance(sched, 20.0)
        assert not engine.is_pending("DOGE")
        assert engine.quotes.get("DOGE") is None
        assert engine.last_error.startswith("UNKNOWN")
        assert p.calls_to("fetch_quotes")[1:] == [("DOGE", "ADA"), ("DOGE", "ADA")]

    def test_crash_after_quotes_written_clears_pending(self):
        class BadRangesProvider(FakeQuoteProvider):
            def fetch_ranges(self, symbols, refs):
                self._record("fetch_ranges", symbols)
                return {s: {"low": 1.0} for s in symbols}

        sched = ManualScheduler()
        p = BadRangesProvider("coingecko")
        engine = build_engine([p], scheduler=sched, default_tokens={})
        engine.add_symbol("BTC")
        _advance(sched, 1.0)

        assert engine.get_quote("BTC").price == 50_000.0
        assert not engine.is_pending("BTC")
        assert engine.pending.snapshot() == set()


class TestTokens:
    def test_add_is_idempotent(self):
        sched = ManualScheduler()
        tokens = MemoryTokenStore()
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=sched, token_store=tokens)
        assert engine.add_symbol("sol") is True
        assert engine.add_symbol(" SOL ") is False
        assert tokens.writes == 1
        assert tokens.load_all() == {"SOL": "sol"}
        assert engine.tracked_symbols().count("SOL") == 1
        assert engine.queue.waiting_symbols() == ["SOL"]

    def test_add_symbols_accepts_mapping(self):
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=ManualScheduler())
        added = engine.add_symbols({"sol": "solana", "BTC": "bitcoin", "xrp": None})
        assert added == ["SOL", "XRP"]
        assert engine.get_ref("SOL") == "solana"
        assert engine.get_ref("xrp") == "xrp"

    def test_empty_symbol_rejected(self):
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=ManualScheduler())
        with pytest.raises(ValueError):
            engine.add_symbol("  ")

    def test_recent_quote_skips_fetch(self):
        sched = ManualScheduler()
        backing = MemoryBackingStore()
        _seed_quote(backing, "SOL", 150.0, sched.clock.now() - 30)
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=sched, backing=backing, default_tokens={})
        engine.start()
        assert engine.add_symbol("SOL") is True
        assert not engine.is_pending("SOL")
        assert engine.get_quote("SOL").price == 150.0

    def test_remove_symbol_drops_everything(self):
        sched = ManualScheduler()
        tokens = MemoryTokenStore()
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=sched, token_store=tokens)
        engine.add_symbol("SOL")
        _advance(sched, 1.0)
        assert engine.get_metadata("SOL") is not None

        assert engine.remove_symbol("sol") is True
        assert not engine.is_tracked("SOL")
        assert engine.quotes.get_fallback("SOL") is None
        assert engine.get_metadata("SOL") is None
        assert "SOL" not in tokens.load_all()
        assert engine.remove_symbol("SOL") is False

    def test_remove_while_pending_cancels_fetch(self):
        sched = ManualScheduler()
        p = FakeQuoteProvider("coingecko")
        engine = build_engine([p], scheduler=sched)
        engine.add_symbol("SOL")
        engine.remove_symbol("SOL")
        assert not engine.is_pending("SOL")
        _advance(sched, 1.0)
        assert p.call_count == 0

    def test_default_tokens_cannot_be_removed(self):
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=ManualScheduler())
        assert engine.is_default("btc")
        assert engine.remove_symbol("BTC") is False
        assert engine.is_tracked("BTC")

    def test_normalize_symbol(self):
        assert normalize_symbol(" eth ") == "ETH"
        assert normalize_symbol(None) == ""


class TestRateLimits:
    def test_calls_respect_min_interval(self):
        sched = ManualScheduler()
        p = FakeQuoteProvider("coingecko", clock=sched.clock)
        engine = build_engine(
            [p],
            scheduler=sched,
            default_tokens={},
            limits=open_limits([p], min_interval_s=0.5),
            settings=SyncSettings(auto_refresh_s=0, max_batch_size=1),
        )
        symbols = ["BTC", "ETH", "SOL", "USDC", "XRP"]
        engine.add_symbols(symbols)
        _advance(sched, 60.0)

        assert all(engine.quotes.get(s) is not None for s in symbols)
        assert len(p.call_times) >= 5
        gaps = [b - a for a, b in zip(p.call_times, p.call_times[1:])]
        assert all(g >= 0.5 - 1e-9 for g in gaps)


class TestLifecycle:
    def test_start_loads_persisted_tokens_and_auto_refreshes(self):
        sched = ManualScheduler()
        p = FakeQuoteProvider("coingecko")
        engine = build_engine(
            [p],
            scheduler=sched,
            token_store=MemoryTokenStore({"SOL": "solana"}),
            settings=SyncSettings(auto_refresh_s=600),
        )
        engine.start()
        assert engine.tracked_symbols() == ["BTC", "ETH", "SOL"]
        assert engine.get_ref("SOL") == "solana"
        assert engine.pending.snapshot() == {"BTC", "ETH", "SOL"}

        _advance(sched, 1.0)
        assert p.calls_to("fetch_quotes") == [("BTC", "ETH", "SOL")]

        _advance(sched, 600.0)
        assert len(p.calls_to("fetch_quotes")) == 2

        engine.close()
        assert sched.live_timers() == []

    def test_start_survives_non_object_cache_values(self):
        sched = ManualScheduler()
        backing = MemoryBackingStore()
        backing.write("quote:BTC", "garbage", sched.clock.now())
        backing.write("meta:BTC", [1, 2], sched.clock.now())
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=sched, backing=backing)
        engine.start()
        assert engine.get_quote("BTC") is None
        assert engine.get_metadata("BTC") is None
        _advance(sched, 1.0)
        assert engine.get_quote("BTC").price == 50_000.0

    def test_start_is_idempotent(self):
        sched = ManualScheduler()
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=sched)
        engine.start()
        engine.start()
        assert len(sched.live_timers()) == 1

    def test_auth_denied_gives_up_with_error(self):
        sched = ManualScheduler()
        p = FakeProviderAlwaysFail("coingecko", error=AuthDenied("HTTP 401", "coingecko"))
        engine = build_engine([p], scheduler=sched, retry_config=RetryConfig(auth_retry_s=60.0))
        engine.add_symbol("SOL")
        _advance(sched, 0.2)
        assert engine.is_pending("SOL")
        assert sched.next_delay() == pytest.approx(59.9)

        _advance(sched, 200.0)
        assert not engine.is_pending("SOL")
        assert engine.last_error.startswith("AUTH_DENIED")
        assert len(p.calls_to("fetch_quotes")) == 3

    def test_success_clears_last_error_and_persists_health(self):
        sched = ManualScheduler()
        health = MagicMock()
        engine = build_engine([FakeQuoteProvider("coingecko")], scheduler=sched, health_store=health)
        engine._last_error = "TIMEOUT: earlier"
        engine.add_symbol("SOL")
        _advance(sched, 1.0)
        assert engine.last_error is None
        assert engine.last_updated == pytest.approx(sched.clock.now() - 0.9)
        health.upsert_all.assert_called()
        statuses, _ = health.upsert_all.call_args.args
        assert set(statuses) == {"coingecko"}

    def test_search(self):
        sched = ManualScheduler()
        p = FakeQuoteProvider("coingecko")
        engine = build_engine([p], scheduler=sched)
        assert asyncio.run(engine.search("  ")) == []
        assert p.call_count == 0
        results = asyncio.run(engine.search("sol"))
        assert [m.symbol for m in results] == ["SOL"]
