"""
IBT Bridge Relayer

Watches the IBT token on Ethereum and the IBT package on Sui for bridge
events and mints the equivalent amount on the opposite chain.

Usage:
    # Run the relayer
    ibt-relayer run --config .env

    # List recent Sui bridge events
    ibt-relayer events -n 20

    # Preview a conversion from 18 to 9 decimals
    ibt-relayer convert 1500000000000000000
"""

__version__ = "0.1.0"

from .amount import rescale, to_destination_precision
from .config import RelayerConfig, Settings
from .db import ProcessedEventLedger
from .errors import QueryError, StartupConfigError, SubmissionError
from .evm import EthereumClient
from .models import BridgeEvent, ChainId, Direction, FixedPoint, MintReceipt, MintRequest
from .relayer import RelayerService
from .sources import PollingEventSource, SubscriptionEventSource
from .sui import SuiClient
from .watcher import SourceWatcher

__all__ = [
    "__version__",
    "BridgeEvent",
    "ChainId",
    "Direction",
    "EthereumClient",
    "FixedPoint",
    "MintReceipt",
    "MintRequest",
    "PollingEventSource",
    "ProcessedEventLedger",
    "QueryError",
    "RelayerConfig",
    "RelayerService",
    "Settings",
    "SourceWatcher",
    "StartupConfigError",
    "SubmissionError",
    "SubscriptionEventSource",
    "SuiClient",
    "rescale",
    "to_destination_precision",
]
