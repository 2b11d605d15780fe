"""
Tests for the source watcher state machine.
"""

import asyncio
import time

import pytest

from conftest import (
    FakeEthereumSource,
    FakeMintClient,
    FakeSuiSource,
    StaticEventSource,
    eth_event,
    sui_event,
)
from ibt_relayer.db import ProcessedEventLedger
from ibt_relayer.errors import QueryError, SubmissionTimeoutError
from ibt_relayer.models import ChainId, Direction, FixedPoint, MintRequest
from ibt_relayer.retry import RetryPolicy
from ibt_relayer.sources import PollingEventSource
from ibt_relayer.watcher import EventState, SourceWatcher, build_mint_request


def make_eth_to_sui(ledger, retry, depths=None, dest=None, source=None, fail_reads=0):
    return SourceWatcher(
        direction=Direction.ETHEREUM_TO_SUI,
        source=source or StaticEventSource(),
        source_client=FakeEthereumSource(depths or {}, fail_times=fail_reads),
        destination_client=dest or FakeMintClient(ChainId.SUI),
        ledger=ledger,
        destination_scale=9,
        confirmations_required=5,
        retry=retry,
    )


def make_sui_to_eth(ledger, retry, known=None, dest=None, source=None):
    return SourceWatcher(
        direction=Direction.SUI_TO_ETHEREUM,
        source=source or StaticEventSource(),
        source_client=FakeSuiSource(known),
        destination_client=dest or FakeMintClient(ChainId.ETHEREUM),
        ledger=ledger,
        destination_scale=18,
        verify_source_tx=True,
        retry=retry,
    )


class TestBuildMintRequest:
    def test_scenario_one_token(self):
        """0xabc with 1e18 at scale 18 becomes a 1e9 mint at scale 9."""
        mint = build_mint_request(eth_event("0xabc", 10**18), 9)
        assert mint == MintRequest(
            destination_chain=ChainId.SUI,
            destination_address="0x" + "5" * 64,
            amount=FixedPoint(1_000_000_000, 9),
            source_event_id="0xabc",
        )


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_scenario_single_mint_then_replay(self, eth_to_sui_ledger, fast_retry):
        dest = FakeMintClient(ChainId.SUI)
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xabc": 5}, dest)

        first = await watcher.process_event(eth_event("0xabc", 10**18))
        replay = await watcher.process_event(eth_event("0xabc", 10**18))

        assert first.state is EventState.SETTLED
        assert first.mint.amount == FixedPoint(1_000_000_000, 9)
        assert replay.state is EventState.REJECTED
        assert replay.reason == "duplicate"
        assert dest.mints == [("0x" + "5" * 64, FixedPoint(1_000_000_000, 9))]
        assert eth_to_sui_ledger.is_processed("0xabc")

    @pytest.mark.asyncio
    async def test_duplicate_within_one_batch(self, eth_to_sui_ledger, fast_retry):
        dest = FakeMintClient(ChainId.SUI)
        source = StaticEventSource([[eth_event("0x1"), eth_event("0x2")], [eth_event("0x1")]])
        watcher = make_eth_to_sui(
            eth_to_sui_ledger, fast_retry, {"0x1": 9, "0x2": 9}, dest, source
        )

        await watcher.run_once()
        await watcher.run_once()

        assert len(dest.mints) == 2
        assert watcher.stats.settled == 2
        assert watcher.stats.duplicates == 1

    @pytest.mark.asyncio
    async def test_processed_event_skips_chain_reads(self, eth_to_sui_ledger, fast_retry):
        eth_to_sui_ledger.mark_processed("0xabc", 1)
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xabc": 9})

        await watcher.process_event(eth_event("0xabc"))

        assert watcher.source_client.calls == 0


class TestConfirmationGating:
    @pytest.mark.asyncio
    async def test_shallow_event_never_submits(self, eth_to_sui_ledger, fast_retry):
        dest = FakeMintClient(ChainId.SUI)
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xabc": 4}, dest)

        result = await watcher.process_event(eth_event("0xabc"))

        assert result.state is EventState.AWAITING_CONFIRMATION
        assert dest.attempts == 0
        assert not eth_to_sui_ledger.is_processed("0xabc")
        assert watcher.source.deferred_count == 1

    @pytest.mark.asyncio
    async def test_proceeds_exactly_once_at_threshold(self, eth_to_sui_ledger, fast_retry):
        dest = FakeMintClient(ChainId.SUI)
        source = StaticEventSource([[eth_event("0xabc")]])
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xabc": 1}, dest, source)

        first = await watcher.run_once()
        assert [r.state for r in first] == [EventState.AWAITING_CONFIRMATION]

        # The deferred event is re-offered with the next batch
        watcher.source_client.depths["0xabc"] = 5
        second = await watcher.run_once()
        assert [r.state for r in second] == [EventState.SETTLED]

        third = await watcher.run_once()
        assert third == []
        assert dest.attempts == 1

    @pytest.mark.asyncio
    async def test_stale_deferral_abandoned(self, eth_to_sui_ledger, fast_retry, monkeypatch):
        clock = [0.0]
        monkeypatch.setattr("ibt_relayer.watcher.monotonic", lambda: clock[0])
        dest = FakeMintClient(ChainId.SUI)
        source = StaticEventSource([[eth_event("0xreorged")]])
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xreorged": 0}, dest, source)
        watcher.max_deferral_age = 60.0

        first = await watcher.run_once()
        assert [r.state for r in first] == [EventState.AWAITING_CONFIRMATION]

        clock[0] = 30.0
        second = await watcher.run_once()
        assert [r.state for r in second] == [EventState.AWAITING_CONFIRMATION]

        clock[0] = 61.0
        third = await watcher.run_once()
        assert [r.reason for r in third] == ["abandoned"]
        assert watcher.source.deferred_count == 0
        assert await watcher.run_once() == []
        assert dest.attempts == 0

    @pytest.mark.asyncio
    async def test_read_failure_defers_event(self, eth_to_sui_ledger):
        retry = RetryPolicy(query_timeout=1.0, submit_timeout=1.0, retries=0, backoff=0.0)
        source = StaticEventSource([[eth_event("0xabc")]])
        watcher = make_eth_to_sui(
            eth_to_sui_ledger, retry, {"0xabc": 10}, source=source, fail_reads=1
        )

        assert await watcher.run_once() == []
        assert watcher.stats.errors == 1

        results = await watcher.run_once()
        assert [r.state for r in results] == [EventState.SETTLED]

    @pytest.mark.asyncio
    async def test_read_failure_retried_within_policy(self, eth_to_sui_ledger, fast_retry):
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xabc": 10}, fail_reads=1)

        result = await watcher.process_event(eth_event("0xabc"))

        assert result.state is EventState.SETTLED


class TestSubmission:
    @pytest.mark.asyncio
    async def test_failure_leaves_event_unrecorded(self, eth_to_sui_ledger, fast_retry):
        dest = FakeMintClient(ChainId.SUI, fail_times=1)
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xabc": 5}, dest)

        failed = await watcher.process_event(eth_event("0xabc"))
        assert failed.state is EventState.REJECTED
        assert failed.reason == "submission_failed"
        assert not eth_to_sui_ledger.is_processed("0xabc")

        # A redelivery goes through
        retried = await watcher.process_event(eth_event("0xabc"))
        assert retried.state is EventState.SETTLED
        assert len(dest.mints) == 1

    @pytest.mark.asyncio
    async def test_timeout_reported_as_unknown(self, eth_to_sui_ledger, fast_retry):
        class HangingClient:
            async def submit_mint(self, destination_address, amount):
                raise SubmissionTimeoutError("no receipt", tx_id="0xfeed")

        watcher = make_eth_to_sui(
            eth_to_sui_ledger, fast_retry, {"0xabc": 5}, dest=HangingClient()
        )

        result = await watcher.process_event(eth_event("0xabc"))

        assert result.reason == "submission_timeout"
        assert not eth_to_sui_ledger.is_processed("0xabc")


class TestRejections:
    @pytest.mark.asyncio
    async def test_wrong_destination_ignored(self, eth_to_sui_ledger, fast_retry):
        dest = FakeMintClient(ChainId.SUI)
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xabc": 9}, dest)
        event = eth_event("0xabc", destination=ChainId.ETHEREUM)

        first = await watcher.process_event(event)
        second = await watcher.process_event(event)

        assert first.reason == "wrong_destination"
        assert second.reason == "ignored"
        assert dest.attempts == 0

    @pytest.mark.asyncio
    async def test_dust_below_destination_precision(self, eth_to_sui_ledger, fast_retry):
        dest = FakeMintClient(ChainId.SUI)
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry, {"0xdust": 9}, dest)

        result = await watcher.process_event(eth_event("0xdust", amount=999_999_999))

        assert result.reason == "amount_below_destination_precision"
        assert dest.attempts == 0

    @pytest.mark.asyncio
    async def test_missing_source_transaction(self, sui_to_eth_ledger, fast_retry):
        dest = FakeMintClient(ChainId.ETHEREUM)
        watcher = make_sui_to_eth(sui_to_eth_ledger, fast_retry, known=set(), dest=dest)

        result = await watcher.process_event(sui_event("ghost"))

        assert result.reason == "source_tx_not_found"
        assert dest.attempts == 0


class TestPollVariant:
    @pytest.mark.asyncio
    async def test_sui_event_minted_on_ethereum(self, sui_to_eth_ledger, fast_retry):
        dest = FakeMintClient(ChainId.ETHEREUM)
        watcher = make_sui_to_eth(sui_to_eth_ledger, fast_retry, known={"d1"}, dest=dest)

        result = await watcher.process_event(sui_event("d1", amount=2_500_000_000))

        assert result.state is EventState.SETTLED
        assert dest.mints == [("0x" + "ab" * 20, FixedPoint(2_500_000_000 * 10**9, 18))]

    @pytest.mark.asyncio
    async def test_query_error_tick_followed_by_successful_tick(
        self, sui_to_eth_ledger, fast_retry
    ):
        calls = []

        async def query():
            calls.append(1)
            if len(calls) == 1:
                raise QueryError("fullnode unavailable")
            return [sui_event("d1")]

        dest = FakeMintClient(ChainId.ETHEREUM)
        source = PollingEventSource(query, interval=0)
        watcher = make_sui_to_eth(
            sui_to_eth_ledger, fast_retry, known={"d1"}, dest=dest, source=source
        )

        assert await watcher.run_once() == []
        results = await watcher.run_once()

        assert [r.state for r in results] == [EventState.SETTLED]
        assert watcher.stats.errors == 1
        assert len(dest.mints) == 1

    @pytest.mark.asyncio
    async def test_repeated_page_mints_once(self, sui_to_eth_ledger, fast_retry):
        async def query():
            return [sui_event("d2"), sui_event("d1")]

        dest = FakeMintClient(ChainId.ETHEREUM)
        source = PollingEventSource(query, interval=0)
        watcher = make_sui_to_eth(
            sui_to_eth_ledger, fast_retry, known={"d1", "d2"}, dest=dest, source=source
        )

        for _ in range(3):
            await watcher.run_once()

        assert dest.attempts == 2
        assert watcher.stats.duplicates == 4


def test_gating_requires_source_client(eth_to_sui_ledger):
    with pytest.raises(ValueError):
        SourceWatcher(
            direction=Direction.ETHEREUM_TO_SUI,
            source=StaticEventSource(),
            destination_client=FakeMintClient(ChainId.SUI),
            ledger=eth_to_sui_ledger,
            destination_scale=9,
            confirmations_required=5,
        )


class TestBoundedState:
    @pytest.mark.asyncio
    async def test_ignored_events_evicted_oldest_first(self, eth_to_sui_ledger, fast_retry):
        watcher = make_eth_to_sui(eth_to_sui_ledger, fast_retry)
        watcher.max_ignored = 2
        events = [eth_event(f"0x{i}", destination=ChainId.ETHEREUM) for i in range(3)]

        for event in events:
            await watcher.process_event(event)

        assert list(watcher._ignored) == ["0x1", "0x2"]
        assert (await watcher.process_event(events[2])).reason == "ignored"
        assert (await watcher.process_event(events[0])).reason == "wrong_destination"


class BlockingLedger(ProcessedEventLedger):
    """Ledger whose reads block the calling thread."""

    def is_processed(self, source_event_id: str) -> bool:
        time.sleep(0.2)
        return super().is_processed(source_event_id)


@pytest.mark.asyncio
async def test_ledger_reads_do_not_block_event_loop(fast_retry):
    ledger = BlockingLedger(Direction.ETHEREUM_TO_SUI, "sqlite:///:memory:")
    watcher = make_eth_to_sui(ledger, fast_retry, {"0xabc": 5})
    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            ticks += 1
            await asyncio.sleep(0.01)

    task = asyncio.create_task(ticker())
    try:
        result = await watcher.process_event(eth_event("0xabc"))
    finally:
        task.cancel()
        ledger.close()

    assert result.state is EventState.SETTLED
    assert ticks > 5
