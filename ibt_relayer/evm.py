"""
EVM interaction: BridgeInitiated event delivery and custodian mints.
"""

import asyncio
from typing import Any, AsyncIterator, Mapping, Optional

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from .errors import QueryError, SubmissionError, SubmissionTimeoutError
from .models import BridgeEvent, ChainId, FixedPoint, MintReceipt

logger = structlog.get_logger()


# IBT token ABI (minimal for mint + bridge events)
IBT_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "mint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "destinationChain", "type": "string"},
            {"indexed": False, "name": "destinationAddress", "type": "string"},
        ],
        "name": "BridgeInitiated",
        "type": "event",
    },
]


def parse_bridge_log(log: Mapping[str, Any], scale: int = 18) -> BridgeEvent:
    """
    Parse a decoded BridgeInitiated log into a BridgeEvent.

    Raises:
        ValueError: if the destination chain label is unknown
    """
    args = log["args"]
    return BridgeEvent(
        source_chain=ChainId.ETHEREUM,
        from_address=args["from"],
        amount=FixedPoint(int(args["amount"]), scale),
        destination_chain=ChainId.from_label(args["destinationChain"]),
        destination_address=args["destinationAddress"].strip(),
        source_event_id=Web3.to_hex(log["transactionHash"]).lower(),
        block_number=log.get("blockNumber"),
    )


class EthereumClient:
    """Async client for the IBT token contract."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        decimals: int = 18,
        gas_limit: int = 200_000,
        lookback_blocks: int = 100,
        receipt_timeout: float = 120.0,
        request_timeout: float = 30.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key) if private_key else None
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=IBT_ABI,
        )
        self.chain_id = chain_id
        self.decimals = decimals
        self.gas_limit = gas_limit
        self.lookback_blocks = lookback_blocks
        self.receipt_timeout = receipt_timeout
        self.request_timeout = request_timeout

        logger.info(
            "evm_client_initialized",
            rpc_url=rpc_url,
            contract=contract_address,
            sender=self.account.address if self.account else None,
        )

    async def get_block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            raise QueryError(f"eth_blockNumber failed: {e}") from e

    async def get_bridge_events(self, from_block: int, to_block: int) -> list[BridgeEvent]:
        """
        Fetch BridgeInitiated events in a block range (inclusive).

        Logs with an unrecognized destination chain are logged and skipped.
        """
        try:
            logs = await self.contract.events.BridgeInitiated.get_logs(
                from_block=from_block, to_block=to_block
            )
        except Exception as e:
            raise QueryError(f"eth_getLogs {from_block}-{to_block} failed: {e}") from e

        events = []
        for log in logs:
            try:
                events.append(parse_bridge_log(log, self.decimals))
            except ValueError as e:
                logger.warning(
                    "malformed_eth_bridge_event",
                    tx_hash=Web3.to_hex(log["transactionHash"]),
                    error=str(e),
                )
        return events

    async def subscribe_bridge_events(self, interval: float = 2.0) -> AsyncIterator[BridgeEvent]:
        """
        Deliver BridgeInitiated events as they are mined.

        Each subscription first replays the last `lookback_blocks` blocks,
        then follows the chain head every `interval` seconds. Read failures
        end the subscription with a QueryError; re-subscribing redelivers
        the lookback window.
        """
        head = await self.get_block_number()
        next_block = max(0, head - self.lookback_blocks)

        logger.info("eth_subscription_started", from_block=next_block, head=head)

        while True:
            head = await self.get_block_number()
            if head >= next_block:
                for event in await self.get_bridge_events(next_block, head):
                    yield event
                next_block = head + 1
            await asyncio.sleep(interval)

    async def get_confirmation_depth(self, tx_hash: str) -> int:
        """Confirmations of a transaction; 0 if unknown or still pending."""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return 0
        except Exception as e:
            raise QueryError(f"eth_getTransactionReceipt {tx_hash} failed: {e}") from e

        block_number = receipt.get("blockNumber")
        if block_number is None:
            return 0
        head = await self.get_block_number()
        return max(0, head - block_number + 1)

    async def _get_chain_id(self) -> int:
        if self.chain_id is None:
            self.chain_id = await self.w3.eth.chain_id
        return self.chain_id

    async def _sign_mint(self, recipient: str, value: int) -> Any:
        nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
        tx = await self.contract.functions.mint(recipient, value).build_transaction(
            {
                "from": self.account.address,
                "nonce": nonce,
                "chainId": await self._get_chain_id(),
                "gas": self.gas_limit,
                "gasPrice": await self.w3.eth.gas_price,
            }
        )
        return self.account.sign_transaction(tx)

    async def submit_mint(self, destination_address: str, amount: FixedPoint) -> MintReceipt:
        """
        Call mint(to, amount) and wait for the transaction receipt.

        Does not wait for further confirmations.
        """
        if self.account is None:
            raise SubmissionError("No Ethereum custodian key configured")
        if amount.scale != self.decimals:
            raise SubmissionError(
                f"Amount scale {amount.scale} does not match token decimals {self.decimals}"
            )
        try:
            recipient = Web3.to_checksum_address(destination_address)
        except ValueError as e:
            raise SubmissionError(f"Invalid recipient {destination_address!r}: {e}") from e

        # Build and sign: nothing has been broadcast yet
        try:
            signed_tx = await asyncio.wait_for(
                self._sign_mint(recipient, amount.value), self.request_timeout
            )
        except asyncio.TimeoutError as e:
            raise SubmissionError(
                f"Building mint timed out after {self.request_timeout}s"
            ) from e
        except Exception as e:
            logger.error("mint_submission_error", recipient=recipient, error=str(e))
            raise SubmissionError(f"Ethereum mint failed: {e}") from e

        # The hash is known before broadcast
        tx_hex = Web3.to_hex(signed_tx.hash)

        try:
            tx_hash = await asyncio.wait_for(
                self.w3.eth.send_raw_transaction(signed_tx.raw_transaction),
                self.request_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("mint_send_outcome_unknown", tx_hash=tx_hex)
            raise SubmissionTimeoutError(
                f"Sending {tx_hex} timed out after {self.request_timeout}s", tx_id=tx_hex
            ) from e
        except Exception as e:
            logger.error("mint_submission_error", recipient=recipient, error=str(e))
            raise SubmissionError(f"Ethereum mint failed: {e}", tx_id=tx_hex) from e

        logger.info(
            "mint_tx_sent",
            tx_hash=tx_hex,
            recipient=recipient,
            amount=amount.value,
        )

        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as e:
            raise SubmissionTimeoutError(
                f"No receipt for {tx_hex} after {self.receipt_timeout}s", tx_id=tx_hex
            ) from e
        except Exception as e:
            raise SubmissionError(f"Waiting for {tx_hex} failed: {e}", tx_id=tx_hex) from e

        if receipt["status"] != 1:
            logger.error("mint_tx_reverted", tx_hash=tx_hex)
            raise SubmissionError("Transaction reverted", tx_id=tx_hex)

        logger.info(
            "mint_tx_confirmed",
            tx_hash=tx_hex,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )
        return MintReceipt(
            chain=ChainId.ETHEREUM,
            tx_id=tx_hex,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )

    async def close(self) -> None:
        """Close the provider session."""
        provider = self.w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()
