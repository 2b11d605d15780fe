"""
Relayer service - runs both relay directions side by side.

Ethereum -> Sui: BridgeInitiated events delivered by subscription,
    gated on confirmation depth, minted on Sui.
Sui -> Ethereum: BridgeEvent events polled every few seconds,
    checked against the transaction record, minted on Ethereum.
"""

import asyncio
import signal
from functools import partial
from typing import Any, Optional

import structlog
import uvicorn

from .config import RelayerConfig
from .db import ProcessedEventLedger
from .errors import QueryError
from .evm import EthereumClient
from .health import create_app
from .models import Direction
from .retry import RetryPolicy
from .sources import PollingEventSource, SubscriptionEventSource
from .sui import SuiClient
from .watcher import SourceWatcher

logger = structlog.get_logger()


class RelayerService:
    """
    Owns the two watchers and their lifecycle.

    Each watcher runs as its own task and catches its own errors, so a
    failure in one direction never stops the other. There is no drain on
    shutdown: in-flight submissions are cancelled with their task.
    """

    def __init__(
        self,
        eth_to_sui: SourceWatcher,
        sui_to_eth: SourceWatcher,
        health_host: Optional[str] = None,
        health_port: int = 3001,
        status_interval: float = 60.0,
    ):
        self.watchers = {w.name: w for w in (eth_to_sui, sui_to_eth)}
        self.health_host = health_host
        self.health_port = health_port
        self.status_interval = status_interval
        self.running = False
        self.shutdown_event = asyncio.Event()
        self._tasks: dict[str, asyncio.Task] = {}
        self._closers: list[Any] = []
        self.eth_client: Optional[EthereumClient] = None
        self.sui_client: Optional[SuiClient] = None
        self.connect_timeout = 10.0

    @classmethod
    def from_config(
        cls,
        config: RelayerConfig,
        eth_client: Optional[EthereumClient] = None,
        sui_client: Optional[SuiClient] = None,
        health: bool = True,
    ) -> "RelayerService":
        """Wire clients, ledgers and watchers from configuration."""
        settings = config.settings

        eth = eth_client or EthereumClient(
            rpc_url=settings.eth_rpc_url,
            contract_address=settings.eth_contract_address,
            private_key=settings.eth_private_key,
            chain_id=settings.eth_chain_id,
            decimals=settings.eth_decimals,
            gas_limit=settings.eth_gas_limit,
            lookback_blocks=settings.lookback_blocks,
            receipt_timeout=settings.receipt_timeout_seconds,
            request_timeout=settings.rpc_timeout_seconds,
        )
        sui = sui_client or SuiClient(
            rpc_url=settings.sui_rpc_url,
            package_id=settings.sui_package_id,
            bridge_auth_id=settings.sui_bridge_auth_id,
            keypair=config.sui_keypair,
            module=settings.sui_module,
            decimals=settings.sui_decimals,
            gas_budget=settings.sui_gas_budget,
            timeout=settings.rpc_timeout_seconds,
        )

        retry = RetryPolicy(
            query_timeout=settings.rpc_timeout_seconds,
            submit_timeout=settings.submit_timeout_seconds,
            retries=settings.query_retries,
            backoff=settings.retry_backoff_seconds,
        )

        eth_to_sui = SourceWatcher(
            direction=Direction.ETHEREUM_TO_SUI,
            source=SubscriptionEventSource(
                partial(eth.subscribe_bridge_events, settings.subscription_interval_seconds),
                name="eth_bridge_initiated",
                max_batch=settings.event_page_size,
                recheck_interval=settings.deferred_recheck_seconds,
            ),
            source_client=eth,
            destination_client=sui,
            ledger=ProcessedEventLedger(Direction.ETHEREUM_TO_SUI, settings.database_url),
            destination_scale=settings.sui_decimals,
            confirmations_required=settings.confirmations_required,
            retry=retry,
            max_deferral_age=settings.deferred_max_age_seconds,
        )
        sui_to_eth = SourceWatcher(
            direction=Direction.SUI_TO_ETHEREUM,
            source=PollingEventSource(
                partial(
                    retry.query,
                    "query_bridge_events",
                    sui.query_recent_bridge_events,
                    settings.event_page_size,
                ),
                interval=settings.poll_interval_seconds,
                name="sui_bridge_event",
            ),
            source_client=sui,
            destination_client=eth,
            ledger=ProcessedEventLedger(Direction.SUI_TO_ETHEREUM, settings.database_url),
            destination_scale=settings.eth_decimals,
            verify_source_tx=True,
            retry=retry,
            max_deferral_age=settings.deferred_max_age_seconds,
        )

        service = cls(
            eth_to_sui,
            sui_to_eth,
            health_host=settings.host if health else None,
            health_port=settings.port,
            status_interval=settings.status_interval_seconds,
        )
        service._closers.extend([eth, sui])
        service.eth_client = eth
        service.sui_client = sui
        service.connect_timeout = settings.rpc_timeout_seconds
        return service

    def stats(self) -> dict[str, dict[str, Any]]:
        """Per-direction counters."""
        return {name: w.stats.to_dict() for name, w in self.watchers.items()}

    def _on_task_done(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("task_failed", task=name, error=str(error), exc_info=error)
        elif self.running and name in self.watchers:
            logger.warning("watcher_exited", task=name)

    async def _periodic_status_logger(self) -> None:
        """Log counters periodically while running."""
        while self.running:
            await asyncio.sleep(self.status_interval)
            for name, stats in self.stats().items():
                logger.info("relayer_status", direction=name, **stats)

    async def _serve_health(self) -> None:
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(self),
                host=self.health_host,
                port=self.health_port,
                log_level="warning",
            )
        )
        try:
            await server.serve()
        except SystemExit:
            # uvicorn exits the process when it cannot bind; keep relaying
            logger.error("health_server_failed", host=self.health_host, port=self.health_port)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform/thread; KeyboardInterrupt still works
                pass

    async def start(self) -> None:
        """Start both watchers (and the health server) as independent tasks."""
        self.running = True
        self.shutdown_event.clear()

        for name, watcher in self.watchers.items():
            self._tasks[name] = asyncio.create_task(watcher.run(), name=name)
        self._tasks["status"] = asyncio.create_task(self._periodic_status_logger())
        if self.health_host:
            self._tasks["health"] = asyncio.create_task(self._serve_health())

        for name, task in self._tasks.items():
            task.add_done_callback(partial(self._on_task_done, name))

        logger.info(
            "relayer_started",
            directions=list(self.watchers),
            health=f"{self.health_host}:{self.health_port}" if self.health_host else None,
        )

    async def check_connectivity(self) -> dict[str, bool]:
        """
        Query the head of each configured chain once.

        Unreachable chains are logged but not fatal: the watchers keep
        retrying on their own.
        """
        checks = {}
        if self.eth_client is not None:
            checks["ethereum"] = self.eth_client.get_block_number
        if self.sui_client is not None:
            checks["sui"] = self.sui_client.get_latest_checkpoint

        reachable = {}
        for chain, head in checks.items():
            try:
                height = await asyncio.wait_for(head(), self.connect_timeout)
            except (QueryError, asyncio.TimeoutError) as e:
                reachable[chain] = False
                logger.warning("chain_unreachable", chain=chain, error=str(e) or repr(e))
            else:
                reachable[chain] = True
                logger.info("chain_reachable", chain=chain, height=height)
        return reachable

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Run until a shutdown signal or stop()."""
        if install_signal_handlers:
            self._install_signal_handlers()
        await self.check_connectivity()
        await self.start()
        try:
            await self.shutdown_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Cancel every task without draining, then release resources."""
        self.running = False
        for watcher in self.watchers.values():
            watcher.stop()

        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

        for watcher in self.watchers.values():
            await watcher.source.close()
            watcher.ledger.close()
        for closer in self._closers:
            await closer.close()

        logger.info("relayer_stopped")

    def stop(self) -> None:
        """Request shutdown."""
        logger.info("relayer_stopping")
        self.shutdown_event.set()
