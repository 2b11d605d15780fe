"""
Shared data models for the bridge relayer.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class ChainId(str, Enum):
    """Ledgers the relayer bridges between."""

    ETHEREUM = "ethereum"
    SUI = "sui"

    @classmethod
    def from_label(cls, label: str) -> "ChainId":
        """
        Map a free-form destination-chain label to a ChainId.

        Contracts emit whatever string the user passed, so "SUI",
        "sui-localnet" and "Sui Network" all resolve to SUI.

        Raises:
            ValueError: if the label names no known chain
        """
        tokens = set(re.split(r"[^a-z0-9]+", label.lower()))
        if "sui" in tokens:
            return cls.SUI
        if tokens & {"eth", "evm", "ethereum"}:
            return cls.ETHEREUM
        raise ValueError(f"Unknown chain label: {label!r}")


class Direction(str, Enum):
    """Relay direction. Each direction owns a disjoint processed set."""

    ETHEREUM_TO_SUI = "eth_to_sui"
    SUI_TO_ETHEREUM = "sui_to_eth"

    @property
    def source(self) -> ChainId:
        return ChainId.ETHEREUM if self is Direction.ETHEREUM_TO_SUI else ChainId.SUI

    @property
    def destination(self) -> ChainId:
        return ChainId.SUI if self is Direction.ETHEREUM_TO_SUI else ChainId.ETHEREUM


@dataclass(frozen=True)
class FixedPoint:
    """Token amount as an integer plus an implied number of decimals."""

    value: int
    scale: int

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError(f"Amount must be non-negative: {self.value}")
        if self.scale < 0:
            raise ValueError(f"Scale must be non-negative: {self.scale}")

    def to_decimal(self) -> Decimal:
        """Human-readable amount (e.g. 1.5 for 1_500_000_000 at scale 9)."""
        return Decimal(self.value).scaleb(-self.scale)

    def __str__(self) -> str:
        return f"{self.to_decimal()} (raw={self.value}, scale={self.scale})"


@dataclass(frozen=True)
class BridgeEvent:
    """A bridge initiation observed on the source chain."""

    source_chain: ChainId
    from_address: str
    amount: FixedPoint
    destination_chain: ChainId
    destination_address: str
    source_event_id: str  # Ethereum tx hash or Sui tx digest
    block_number: Optional[int] = None


@dataclass(frozen=True)
class MintRequest:
    """Mint to perform on the destination chain for one BridgeEvent."""

    destination_chain: ChainId
    destination_address: str
    amount: FixedPoint
    source_event_id: str


@dataclass
class MintReceipt:
    """Acknowledgment of a submitted mint transaction."""

    chain: ChainId
    tx_id: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
