"""
Sui fullnode JSON-RPC client: bridge event queries and custodian mints.
"""

import base64
from typing import Any, Optional

import httpx
import structlog

from .errors import DeadlineExceededError, QueryError, SubmissionError, SubmissionTimeoutError
from .models import BridgeEvent, ChainId, FixedPoint, MintReceipt
from .signer import SuiKeypair, eth_address_from_bytes, transaction_digest

logger = structlog.get_logger()

U64_MAX = 2**64 - 1
DEFAULT_GAS_BUDGET = 10_000_000


class SuiRPCError(QueryError):
    """Error returned by a Sui JSON-RPC call."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


class SuiRPCTimeoutError(DeadlineExceededError):
    """A Sui JSON-RPC call got no response within the HTTP timeout."""


def parse_bridge_event(event: dict[str, Any], scale: int = 9) -> BridgeEvent:
    """
    Parse a suix_queryEvents entry into a BridgeEvent.

    parsedJson carries {from, amount, eth_address}; eth_address is the
    raw 20-byte recipient as a vector<u8>.

    Raises:
        ValueError: if the event is malformed
    """
    try:
        digest = event["id"]["txDigest"]
        fields = event["parsedJson"]
        sender = fields["from"]
        amount = int(fields["amount"])
        raw_address = fields["eth_address"]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed bridge event: missing {e}") from e

    if isinstance(raw_address, str):
        # Some fullnodes render vector<u8> as base64
        raw_address = base64.b64decode(raw_address)

    return BridgeEvent(
        source_chain=ChainId.SUI,
        from_address=sender,
        amount=FixedPoint(amount, scale),
        destination_chain=ChainId.ETHEREUM,
        destination_address=eth_address_from_bytes(raw_address),
        source_event_id=digest,
    )


class SuiClient:
    """
    Async client for a Sui fullnode.

    Reads BridgeEvent events of the bridge package and submits
    `{package}::{module}::mint` calls signed by the custodian key.
    """

    def __init__(
        self,
        rpc_url: str,
        package_id: str,
        bridge_auth_id: str,
        keypair: Optional[SuiKeypair] = None,
        module: str = "IBT",
        decimals: int = 9,
        gas_budget: int = DEFAULT_GAS_BUDGET,
        timeout: float = 30.0,
    ):
        self.rpc_url = rpc_url
        self.package_id = package_id
        self.bridge_auth_id = bridge_auth_id
        self.keypair = keypair
        self.module = module
        self.decimals = decimals
        self.gas_budget = gas_budget
        self.client = httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

        logger.info(
            "sui_client_initialized",
            rpc_url=rpc_url,
            package=package_id,
            custodian=keypair.address if keypair else None,
        )

    @property
    def event_type(self) -> str:
        return f"{self.package_id}::{self.module}::BridgeEvent"

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """Make RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.TimeoutException as e:
            raise SuiRPCTimeoutError(f"{method} timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise QueryError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise QueryError(f"{method} returned invalid JSON: {e}") from e

        if result.get("error"):
            error = result["error"]
            raise SuiRPCError(error.get("code", -1), error.get("message", "Unknown error"))

        return result.get("result")

    async def query_recent_bridge_events(
        self, limit: int = 50, descending: bool = True
    ) -> list[BridgeEvent]:
        """
        Fetch the most recent bridge events (one page).

        Malformed events are logged and skipped.
        """
        page = await self._call(
            "suix_queryEvents",
            [{"MoveEventType": self.event_type}, None, limit, descending],
        )

        events = []
        for raw in (page or {}).get("data", []):
            try:
                events.append(parse_bridge_event(raw, self.decimals))
            except ValueError as e:
                logger.warning(
                    "malformed_sui_bridge_event",
                    tx_digest=(raw.get("id") or {}).get("txDigest"),
                    error=str(e),
                )
        return events

    async def get_transaction(self, digest: str) -> Optional[dict[str, Any]]:
        """Fetch a transaction block with effects, or None if unknown."""
        try:
            return await self._call(
                "sui_getTransactionBlock", [digest, {"showEffects": True}]
            )
        except SuiRPCError as e:
            if "not find" in e.message.lower() or "not found" in e.message.lower():
                return None
            raise

    async def get_latest_checkpoint(self) -> int:
        """Latest checkpoint sequence number (connectivity check)."""
        result = await self._call("sui_getLatestCheckpointSequenceNumber")
        try:
            return int(result)
        except (TypeError, ValueError) as e:
            raise QueryError(f"Unexpected checkpoint sequence number: {result!r}") from e

    async def submit_mint(self, destination_address: str, amount: FixedPoint) -> MintReceipt:
        """
        Mint `amount` to `destination_address` via the bridge module.

        Waits for local execution of the transaction, not for checkpoint
        finality.
        """
        if self.keypair is None:
            raise SubmissionError("No Sui custodian key configured")
        if amount.scale != self.decimals:
            raise SubmissionError(
                f"Amount scale {amount.scale} does not match Sui decimals {self.decimals}"
            )
        if amount.value > U64_MAX:
            raise SubmissionError(f"Amount {amount.value} exceeds u64")

        # Build: nothing has been submitted yet, so every failure is definitive
        try:
            built = await self._call(
                "unsafe_moveCall",
                [
                    self.keypair.address,
                    self.package_id,
                    self.module,
                    "mint",
                    [],
                    [self.bridge_auth_id, str(amount.value), destination_address],
                    None,
                    str(self.gas_budget),
                ],
            )
            tx_bytes = built["txBytes"]
            raw_tx = base64.b64decode(tx_bytes)
        except QueryError as e:
            raise SubmissionError(f"Sui mint failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise SubmissionError(f"Unexpected unsafe_moveCall response: {e}") from e

        expected_digest = transaction_digest(raw_tx)
        signature = self.keypair.sign_transaction(raw_tx)

        # Execute
        try:
            result = await self._call(
                "sui_executeTransactionBlock",
                [tx_bytes, [signature], {"showEffects": True}, "WaitForLocalExecution"],
            )
        except SuiRPCTimeoutError as e:
            logger.error("sui_mint_outcome_unknown", digest=expected_digest, error=str(e))
            raise SubmissionTimeoutError(
                f"Sui mint {expected_digest} timed out: {e}", tx_id=expected_digest
            ) from e
        except QueryError as e:
            raise SubmissionError(f"Sui mint failed: {e}", tx_id=expected_digest) from e

        if not isinstance(result, dict):
            raise SubmissionError(
                f"Unexpected sui_executeTransactionBlock response: {result!r}",
                tx_id=expected_digest,
            )

        digest = result.get("digest") or expected_digest
        status = ((result.get("effects") or {}).get("status") or {})
        if status.get("status") != "success":
            logger.error(
                "sui_mint_failed",
                digest=digest,
                error=status.get("error"),
            )
            raise SubmissionError(
                f"Sui mint failed: {status.get('error', 'unknown status')}", tx_id=digest
            )

        checkpoint = result.get("checkpoint")
        logger.info(
            "sui_mint_executed",
            digest=digest,
            recipient=destination_address,
            amount=amount.value,
        )
        return MintReceipt(
            chain=ChainId.SUI,
            tx_id=digest,
            block_number=int(checkpoint) if checkpoint is not None else None,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
