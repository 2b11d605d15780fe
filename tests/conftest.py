"""
Shared fixtures and fake chain clients.
"""

from __future__ import annotations

from typing import Any, Optional

import pytest

from ibt_relayer.db import ProcessedEventLedger
from ibt_relayer.errors import QueryError, SubmissionError
from ibt_relayer.models import BridgeEvent, ChainId, Direction, FixedPoint, MintReceipt
from ibt_relayer.retry import RetryPolicy
from ibt_relayer.sources import EventSource


class FakeMintClient:
    """Destination chain that records mints and can be told to fail."""

    def __init__(self, chain: ChainId, fail_times: int = 0, always_fail: bool = False):
        self.chain = chain
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.mints: list[tuple[str, FixedPoint]] = []
        self.attempts = 0

    async def submit_mint(self, destination_address: str, amount: FixedPoint) -> MintReceipt:
        self.attempts += 1
        if self.always_fail or self.attempts <= self.fail_times:
            raise SubmissionError("insufficient gas")
        self.mints.append((destination_address, amount))
        return MintReceipt(chain=self.chain, tx_id=f"dest-{len(self.mints)}")


class FakeEthereumSource:
    """Source-side reads of a push-capable chain."""

    def __init__(self, depths: Optional[dict[str, int]] = None, fail_times: int = 0):
        self.depths = depths or {}
        self.fail_times = fail_times
        self.calls = 0

    async def get_confirmation_depth(self, tx_hash: str) -> int:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise QueryError("rpc disconnected")
        return self.depths.get(tx_hash, 0)


class FakeSuiSource:
    """Source-side reads of a poll-only chain."""

    def __init__(self, known: Optional[set[str]] = None):
        self.known = known if known is not None else set()

    async def get_transaction(self, digest: str) -> Optional[dict[str, Any]]:
        if digest in self.known:
            return {"digest": digest, "effects": {"status": {"status": "success"}}}
        return None


class StaticEventSource(EventSource):
    """Hands out pre-built batches, then empty batches."""

    def __init__(self, batches: Optional[list[list[BridgeEvent]]] = None):
        super().__init__("static")
        self.batches = list(batches or [])

    def push(self, *events: BridgeEvent) -> None:
        self.batches.append(list(events))

    async def next_batch(self) -> list[BridgeEvent]:
        fresh = self.batches.pop(0) if self.batches else []
        return self._merge_deferred(fresh)


def eth_event(
    event_id: str = "0xabc",
    amount: int = 10**18,
    destination: ChainId = ChainId.SUI,
    recipient: str = "0x" + "5" * 64,
) -> BridgeEvent:
    return BridgeEvent(
        source_chain=ChainId.ETHEREUM,
        from_address="0x" + "1" * 40,
        amount=FixedPoint(amount, 18),
        destination_chain=destination,
        destination_address=recipient,
        source_event_id=event_id,
        block_number=100,
    )


def sui_event(
    digest: str = "9xDigest",
    amount: int = 10**9,
    recipient: str = "0x" + "ab" * 20,
) -> BridgeEvent:
    return BridgeEvent(
        source_chain=ChainId.SUI,
        from_address="0x" + "2" * 64,
        amount=FixedPoint(amount, 9),
        destination_chain=ChainId.ETHEREUM,
        destination_address=recipient,
        source_event_id=digest,
    )


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy without real waiting."""
    return RetryPolicy(query_timeout=1.0, submit_timeout=1.0, retries=1, backoff=0.0)


@pytest.fixture
def eth_to_sui_ledger():
    ledger = ProcessedEventLedger(Direction.ETHEREUM_TO_SUI, "sqlite:///:memory:")
    yield ledger
    ledger.close()


@pytest.fixture
def sui_to_eth_ledger():
    ledger = ProcessedEventLedger(Direction.SUI_TO_ETHEREUM, "sqlite:///:memory:")
    yield ledger
    ledger.close()
