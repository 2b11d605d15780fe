"""
Source watcher - one relay direction.

Takes batches from an event source and, for each event in order:
1. Skips it if already relayed in this direction
2. Defers it until the source transaction is deep enough (if gated)
3. Checks the source transaction exists (if verified)
4. Rescales the amount to the destination chain's decimals
5. Submits the mint on the destination chain
6. Records it as processed once the mint is acknowledged

Events are handled strictly one at a time: the processed check and the
record are not atomic, so concurrent handling could double-mint.
"""

import asyncio
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from time import monotonic
from typing import Any, Optional, Protocol

import structlog

from .amount import to_destination_precision, truncated_remainder
from .db import ProcessedEventLedger
from .errors import QueryError, SubmissionError, SubmissionTimeoutError
from .models import BridgeEvent, Direction, FixedPoint, MintReceipt, MintRequest
from .retry import RetryPolicy
from .sources import EventSource

logger = structlog.get_logger()


class MintSubmitter(Protocol):
    async def submit_mint(self, destination_address: str, amount: FixedPoint) -> MintReceipt:
        ...


class EventState(str, Enum):
    """Per-event processing states."""

    DETECTED = "detected"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONVERTING = "converting"
    SUBMITTING = "submitting"
    SETTLED = "settled"
    REJECTED = "rejected"


@dataclass
class EventResult:
    """Where an event ended up after one pass through the watcher."""

    event: BridgeEvent
    state: EventState
    reason: Optional[str] = None
    mint: Optional[MintRequest] = None
    receipt: Optional[MintReceipt] = None


@dataclass
class WatcherStats:
    """Counters for one direction."""

    settled: int = 0
    duplicates: int = 0
    deferred: int = 0
    rejected: int = 0
    errors: int = 0
    batches: int = 0
    last_batch_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_batch_at"] = self.last_batch_at.isoformat() if self.last_batch_at else None
        return data


def build_mint_request(event: BridgeEvent, destination_scale: int) -> MintRequest:
    """Derive the destination mint for a bridge event."""
    return MintRequest(
        destination_chain=event.destination_chain,
        destination_address=event.destination_address,
        amount=to_destination_precision(event.amount, destination_scale),
        source_event_id=event.source_event_id,
    )


class SourceWatcher:
    """
    Relays bridge events for one direction.

    Owns its event source and its processed-event ledger. Chain clients
    are shared handles: `source_client` is only read, `destination_client`
    only receives mints.
    """

    def __init__(
        self,
        direction: Direction,
        source: EventSource,
        destination_client: MintSubmitter,
        ledger: ProcessedEventLedger,
        destination_scale: int,
        source_client: Any = None,
        confirmations_required: int = 0,
        verify_source_tx: bool = False,
        retry: Optional[RetryPolicy] = None,
        error_backoff: float = 1.0,
        max_deferral_age: float = 3600.0,
        max_ignored: int = 10_000,
    ):
        if confirmations_required and source_client is None:
            raise ValueError("Confirmation gating needs a source client")
        if verify_source_tx and source_client is None:
            raise ValueError("Source transaction checks need a source client")

        self.direction = direction
        self.source = source
        self.source_client = source_client
        self.destination_client = destination_client
        self.ledger = ledger
        self.destination_scale = destination_scale
        self.confirmations_required = confirmations_required
        self.verify_source_tx = verify_source_tx
        self.retry = retry or RetryPolicy()
        self.error_backoff = error_backoff
        self.max_deferral_age = max_deferral_age
        self.max_ignored = max_ignored
        self.stats = WatcherStats()
        self._running = False
        # Events that can never be relayed (wrong direction, dust); oldest evicted first
        self._ignored: "OrderedDict[str, None]" = OrderedDict()
        # When each currently deferred event was first deferred
        self._deferred_since: dict[str, float] = {}

    @property
    def name(self) -> str:
        return self.direction.value

    def _reject(self, event: BridgeEvent, reason: str, **extra: Any) -> EventResult:
        self.stats.rejected += 1
        logger.warning(
            "event_rejected",
            direction=self.name,
            source_event_id=event.source_event_id,
            reason=reason,
            **extra,
        )
        return EventResult(event=event, state=EventState.REJECTED, reason=reason)

    def _ignore(self, event: BridgeEvent, reason: str, **extra: Any) -> EventResult:
        self._ignored[event.source_event_id] = None
        self._ignored.move_to_end(event.source_event_id)
        while len(self._ignored) > self.max_ignored:
            self._ignored.popitem(last=False)
        return self._reject(event, reason, **extra)

    def _defer(self, event: BridgeEvent) -> bool:
        """
        Hand `event` back to the source for another pass.

        Returns False (and drops the event) once it has been waiting longer
        than `max_deferral_age`, e.g. a transaction that was reorged out.
        """
        event_id = event.source_event_id
        now = monotonic()
        since = self._deferred_since.setdefault(event_id, now)
        if now - since > self.max_deferral_age:
            del self._deferred_since[event_id]
            logger.warning(
                "event_abandoned",
                direction=self.name,
                source_event_id=event_id,
                waited_seconds=round(now - since, 1),
            )
            return False
        self.source.defer(event)
        return True

    async def process_event(self, event: BridgeEvent) -> EventResult:
        """
        Run one event through the state machine.

        Raises:
            QueryError: a source-chain read failed; the event is untouched
        """
        event_id = event.source_event_id
        log = logger.bind(direction=self.name, source_event_id=event_id)

        # DETECTED
        if await asyncio.to_thread(self.ledger.is_processed, event_id):
            self._deferred_since.pop(event_id, None)
            self.stats.duplicates += 1
            log.debug("event_already_processed")
            return EventResult(event=event, state=EventState.REJECTED, reason="duplicate")

        if event_id in self._ignored:
            return EventResult(event=event, state=EventState.REJECTED, reason="ignored")

        if event.destination_chain != self.direction.destination:
            return self._ignore(
                event, "wrong_destination", destination_chain=event.destination_chain.value
            )

        log.info(
            "processing_bridge_event",
            sender=event.from_address,
            recipient=event.destination_address,
            amount=event.amount.value,
            scale=event.amount.scale,
        )

        # AWAITING_CONFIRMATION
        if self.confirmations_required:
            depth = await self.retry.query(
                "confirmation_depth", self.source_client.get_confirmation_depth, event_id
            )
            if depth < self.confirmations_required:
                if not self._defer(event):
                    return self._reject(event, "abandoned", confirmations=depth)
                self.stats.deferred += 1
                log.info(
                    "awaiting_confirmations",
                    confirmations=depth,
                    required=self.confirmations_required,
                )
                return EventResult(
                    event=event,
                    state=EventState.AWAITING_CONFIRMATION,
                    reason=f"{depth}/{self.confirmations_required} confirmations",
                )

        if self.verify_source_tx:
            tx = await self.retry.query(
                "source_transaction", self.source_client.get_transaction, event_id
            )
            if tx is None:
                return self._reject(event, "source_tx_not_found")

        self._deferred_since.pop(event_id, None)

        # CONVERTING
        mint = build_mint_request(event, self.destination_scale)
        remainder = truncated_remainder(
            event.amount.value, event.amount.scale, self.destination_scale
        )
        if remainder:
            log.warning("amount_truncated", remainder=remainder, minted=mint.amount.value)
        if mint.amount.value == 0:
            return self._ignore(event, "amount_below_destination_precision")

        # SUBMITTING
        try:
            receipt = await self.retry.submit(
                "submit_mint",
                self.destination_client.submit_mint,
                mint.destination_address,
                mint.amount,
            )
        except SubmissionTimeoutError as e:
            self.stats.errors += 1
            log.error("mint_outcome_unknown", error=str(e), tx_id=e.tx_id)
            return EventResult(
                event=event, state=EventState.REJECTED, reason="submission_timeout", mint=mint
            )
        except SubmissionError as e:
            self.stats.errors += 1
            log.error("mint_failed", error=str(e), tx_id=e.tx_id)
            return EventResult(
                event=event, state=EventState.REJECTED, reason="submission_failed", mint=mint
            )

        # SETTLED
        await asyncio.to_thread(
            self.ledger.mark_processed, event_id, mint.amount.value, receipt.tx_id
        )
        self.stats.settled += 1
        log.info(
            "event_settled",
            destination_chain=mint.destination_chain.value,
            destination_tx=receipt.tx_id,
            minted=mint.amount.value,
        )
        return EventResult(event=event, state=EventState.SETTLED, mint=mint, receipt=receipt)

    async def run_once(self) -> list[EventResult]:
        """Wait for one batch and process it sequentially."""
        try:
            batch = await self.source.next_batch()
        except QueryError as e:
            self.stats.errors += 1
            logger.error("batch_query_error", direction=self.name, error=str(e))
            return []

        self.stats.batches += 1
        self.stats.last_batch_at = datetime.now()

        results = []
        for event in batch:
            try:
                results.append(await self.process_event(event))
            except QueryError as e:
                self.stats.errors += 1
                self._defer(event)
                logger.error(
                    "event_query_error",
                    direction=self.name,
                    source_event_id=event.source_event_id,
                    error=str(e),
                )
        return results

    async def run(self) -> None:
        """Process batches until stopped. Errors never end the loop."""
        self._running = True
        logger.info(
            "watcher_starting",
            direction=self.name,
            source=self.source.name,
            confirmations_required=self.confirmations_required,
        )

        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.errors += 1
                logger.error(
                    "watcher_loop_error", direction=self.name, error=str(e), exc_info=True
                )
                await asyncio.sleep(self.error_backoff)

        logger.info("watcher_stopped", direction=self.name)

    def stop(self) -> None:
        """Stop after the current batch."""
        self._running = False
