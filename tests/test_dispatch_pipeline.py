"""
Dispatch pipeline with fake providers: one run per call, outcome left on the
batch. No timers, no network.
"""

from __future__ import annotations

import asyncio
import time

import pytest

from quote_sync.providers.base import AuthDenied, ErrorKind, RateLimited
from quote_sync.providers.resilience import RetryConfig
from quote_sync.sync.batch import Batch, BatchState

from tests.fakes import (
    FakeCrashingProvider,
    FakeProviderAlwaysFail,
    FakeQuoteProvider,
    FakeRateLimitedProvider,
)
from tests.fakes.engine import PipelineRig, open_limits

TRACKED = {"BTC": "bitcoin", "ETH": "ethereum"}


class SlowProvider(FakeQuoteProvider):
    def before_call(self, method: str) -> None:
        time.sleep(0.3)


def _run(rig: PipelineRig, symbols) -> Batch:
    batch = Batch(symbols=list(symbols))
    asyncio.run(rig.pipeline.run(batch))
    return batch


class TestSuccess:
    def test_quotes_ranges_and_metadata_written(self):
        p = FakeQuoteProvider("a")
        rig = PipelineRig([p], tracked=TRACKED)
        batch = _run(rig, ["BTC", "ETH"])

        assert batch.state is BatchState.SUCCEEDED
        assert batch.succeeded == {"BTC", "ETH"}
        btc = rig.quotes.get("BTC").get("usd")
        assert btc.price == 50_000.0
        assert btc.has_range()
        assert rig.metadata.get("ETH").display_name == "ETH Token"
        assert [m for m, _ in p.calls] == ["fetch_quotes", "fetch_ranges", "fetch_metadata"]
        assert p.calls_to("fetch_quotes") == [("BTC", "ETH")]

    def test_success_resets_provider_errors(self):
        p = FakeQuoteProvider("a")
        rig = PipelineRig([p], tracked=TRACKED)
        rig.coordinator.record_failure("a", RateLimited("429", "a", retry_after=1.0))
        rig.clock.advance(1.0)
        _run(rig, ["BTC"])
        status = rig.coordinator.statuses()["a"]
        assert status.consecutive_cooldowns == 0
        assert status.last_ok_at == rig.clock.now()

    def test_ranges_and_metadata_not_refetched_within_their_ttl(self):
        p = FakeQuoteProvider("a")
        rig = PipelineRig([p], tracked=TRACKED)
        _run(rig, ["BTC"])
        rig.clock.advance(60.0)
        _run(rig, ["BTC"])
        assert len(p.calls_to("fetch_quotes")) == 2
        assert len(p.calls_to("fetch_ranges")) == 1
        assert len(p.calls_to("fetch_metadata")) == 1
        # Range data survives the basic refresh.
        assert rig.quotes.get("BTC").get("usd").has_range()

    def test_ranges_skipped_when_quote_already_has_them(self):
        p = FakeQuoteProvider("a", with_ranges=True)
        rig = PipelineRig([p], tracked=TRACKED)
        _run(rig, ["BTC"])
        assert p.calls_to("fetch_ranges") == []
        assert rig.coordinator.ranges_due(["BTC"]) == []

    def test_untracked_symbol_write_is_dropped(self):
        rig = PipelineRig([FakeQuoteProvider("a")], tracked={"BTC": "bitcoin"})
        batch = _run(rig, ["BTC", "ETH"])
        assert batch.state is BatchState.SUCCEEDED
        assert rig.quotes.get("ETH") is None
        assert rig.quotes.get("BTC") is not None

    def test_empty_batch_finishes(self):
        p = FakeQuoteProvider("a")
        rig = PipelineRig([p])
        assert _run(rig, []).state is BatchState.SUCCEEDED
        assert p.call_count == 0


class TestGates:
    def test_all_providers_cooling_reschedules_whole_batch(self):
        a, b = FakeQuoteProvider("a"), FakeQuoteProvider("b")
        rig = PipelineRig([a, b], tracked=TRACKED)
        rig.coordinator.record_failure("a", RateLimited("429", "a", retry_after=45.0))
        rig.coordinator.record_failure("b", RateLimited("429", "b", retry_after=30.0))

        batch = _run(rig, ["BTC", "ETH"])
        assert batch.state is BatchState.RETRYING
        assert batch.retry_in == pytest.approx(30.0)
        assert batch.attempt == 0
        assert batch.symbols == ["BTC", "ETH"]
        assert a.call_count == b.call_count == 0

    def test_rate_gate_reschedules_after_spacing(self):
        p = FakeQuoteProvider("a")
        rig = PipelineRig([p], tracked=TRACKED, limits=open_limits([p], min_interval_s=5.0))
        rig.limiter.record_call("a")
        rig.clock.advance(1.0)

        batch = _run(rig, ["BTC"])
        assert batch.state is BatchState.RETRYING
        assert batch.retry_in == pytest.approx(4.0)
        assert batch.attempt == 0
        assert p.call_count == 0


class TestRateLimited:
    def test_fails_over_to_secondary_in_same_run(self):
        primary = FakeRateLimitedProvider("a", retry_after=30.0)
        secondary = FakeQuoteProvider("b")
        rig = PipelineRig([primary, secondary], tracked=TRACKED)
        now = rig.clock.now()

        batch = _run(rig, ["BTC"])
        assert batch.state is BatchState.SUCCEEDED
        assert batch.provider_name == "b"
        assert rig.quotes.get("BTC").provider_name == "b"
        assert rig.coordinator.cooldown_until("a") == pytest.approx(now + 30.0)
        assert rig.limiter.wait_time("a") == pytest.approx(30.0)
        assert primary.calls_to("fetch_quotes") == [("BTC",)]
        assert secondary.calls_to("fetch_quotes") == [("BTC",)]

    def test_both_rate_limited_reschedules_without_counting_attempt(self):
        a = FakeRateLimitedProvider("a", retry_after=30.0)
        b = FakeRateLimitedProvider("b", retry_after=45.0)
        rig = PipelineRig([a, b], tracked=TRACKED)

        batch = _run(rig, ["BTC"])
        assert batch.state is BatchState.RETRYING
        assert batch.retry_in == pytest.approx(30.0)
        assert batch.attempt == 0
        assert batch.last_error_kind is ErrorKind.RATE_LIMITED
        assert a.call_count == b.call_count == 1

    def test_never_routes_to_cooling_provider(self):
        a = FakeRateLimitedProvider("a", retry_after=30.0)
        b = FakeQuoteProvider("b")
        rig = PipelineRig([a, b], tracked=TRACKED)
        _run(rig, ["BTC"])
        rig.clock.advance(10.0)
        _run(rig, ["ETH"])
        assert a.call_count == 1
        assert b.calls_to("fetch_quotes") == [("BTC",), ("ETH",)]


class TestRetries:
    def test_backoff_then_terminal_failure(self):
        p = FakeProviderAlwaysFail("a")
        rig = PipelineRig([p], tracked=TRACKED, retry_config=RetryConfig(base_delay_s=3.0))
        batch = Batch(symbols=["BTC"])

        asyncio.run(rig.pipeline.run(batch))
        assert (batch.state, batch.attempt, batch.retry_in) == (BatchState.RETRYING, 1, 3.0)
        asyncio.run(rig.pipeline.run(batch))
        assert (batch.state, batch.attempt, batch.retry_in) == (BatchState.RETRYING, 2, 6.0)
        asyncio.run(rig.pipeline.run(batch))
        assert batch.state is BatchState.FAILED
        assert batch.failed == {"BTC"}
        assert batch.last_error_kind is ErrorKind.UNKNOWN
        # Three consecutive errors also put the provider into cooldown.
        assert not rig.coordinator.is_available("a")

    def test_auth_denied_uses_fixed_interval(self):
        p = FakeProviderAlwaysFail("a", error=AuthDenied("bad key", "a"))
        rig = PipelineRig([p], tracked=TRACKED, retry_config=RetryConfig(auth_retry_s=60.0))
        batch = Batch(symbols=["BTC"])
        asyncio.run(rig.pipeline.run(batch))
        assert batch.retry_in == 60.0
        assert batch.attempt == 1
        assert batch.last_error_kind is ErrorKind.AUTH_DENIED

    def test_adapter_crash_is_classified_unknown(self):
        rig = PipelineRig([FakeCrashingProvider("a")], tracked=TRACKED)
        batch = _run(rig, ["BTC"])
        assert batch.state is BatchState.RETRYING
        assert batch.last_error_kind is ErrorKind.UNKNOWN
        assert "adapter bug" in batch.last_error

    def test_slow_call_times_out(self):
        rig = PipelineRig([SlowProvider("a")], tracked=TRACKED, call_timeout_s=0.05)
        batch = _run(rig, ["BTC"])
        assert batch.state is BatchState.RETRYING
        assert batch.last_error_kind is ErrorKind.TIMEOUT


class TestPartialFailure:
    def test_three_of_five_commit_and_two_retry(self):
        symbols = ["A", "B", "C", "D", "E"]
        p = FakeQuoteProvider("a", missing_symbols=["D", "E"])
        rig = PipelineRig([p], tracked={s: s.lower() for s in symbols})

        batch = _run(rig, symbols)
        assert batch.succeeded == {"A", "B", "C"}
        assert all(rig.quotes.get(s) is not None for s in "ABC")
        assert rig.quotes.get("D") is None
        assert batch.state is BatchState.RETRYING
        assert batch.symbols == ["D", "E"]
        assert batch.attempt == 1

    def test_missing_subset_eventually_abandoned(self):
        p = FakeQuoteProvider("a", missing_symbols=["D"])
        rig = PipelineRig([p], tracked={"A": "a", "D": "d"})
        batch = Batch(symbols=["A", "D"])
        for _ in range(3):
            asyncio.run(rig.pipeline.run(batch))
        assert batch.state is BatchState.FAILED
        assert batch.failed == {"D"}
        assert batch.succeeded == set()  # cleared per run; A was delivered in run one
        assert rig.quotes.get("A") is not None


class TestAuxiliaryCalls:
    def test_aux_calls_wait_for_spacing_within_cap(self):
        p = FakeQuoteProvider("a")
        rig = PipelineRig([p], tracked=TRACKED, limits=open_limits([p], min_interval_s=1.0))
        _run(rig, ["BTC"])
        assert rig.scheduler.sleeps == [pytest.approx(1.0), pytest.approx(1.0)]
        assert [m for m, _ in p.calls] == ["fetch_quotes", "fetch_ranges", "fetch_metadata"]

    def test_aux_calls_skipped_when_wait_exceeds_cap(self):
        p = FakeQuoteProvider("a")
        rig = PipelineRig(
            [p], tracked=TRACKED, limits=open_limits([p], min_interval_s=5.0), aux_wait_cap_s=2.0
        )
        batch = _run(rig, ["BTC"])
        assert batch.state is BatchState.SUCCEEDED
        assert [m for m, _ in p.calls] == ["fetch_quotes"]
        assert rig.coordinator.ranges_due(["BTC"]) == ["BTC"]

    def test_metadata_session_cap(self):
        p = FakeQuoteProvider("a")
        rig = PipelineRig([p], tracked=TRACKED, metadata_session_limit=1)
        _run(rig, ["BTC", "ETH"])
        _run(rig, ["ETH"])
        assert p.calls_to("fetch_metadata") == [("BTC",)]
        assert rig.pipeline.metadata_requested == 1

    def test_metadata_failure_does_not_fail_batch(self):
        class NoMetadata(FakeQuoteProvider):
            def before_call(self, method):
                if method == "fetch_metadata":
                    raise RateLimited("429", self.provider_name, retry_after=10.0)

        rig = PipelineRig([NoMetadata("a")], tracked=TRACKED)
        batch = _run(rig, ["BTC"])
        assert batch.state is BatchState.SUCCEEDED
        assert rig.metadata.get("BTC") is None
        assert not rig.coordinator.is_available("a")


class TestSearch:
    def test_uses_first_available_provider(self):
        a = FakeQuoteProvider("a")
        b = FakeQuoteProvider("b")
        rig = PipelineRig([a, b])
        rig.coordinator.record_failure("a", RateLimited("429", "a", retry_after=30.0))
        results = asyncio.run(rig.pipeline.search("BT"))
        assert [m.symbol for m in results] == ["BTC"]
        assert a.calls_to("search") == []
        assert b.calls_to("search") == [("BT",)]

    def test_falls_through_on_error_and_returns_empty(self):
        rig = PipelineRig([FakeProviderAlwaysFail("a"), FakeProviderAlwaysFail("b")])
        assert asyncio.run(rig.pipeline.search("btc")) == []
