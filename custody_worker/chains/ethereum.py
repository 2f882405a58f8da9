"""
Ethereum adapter: ERC-20 Transfer logs, balances and transfers over JSON-RPC.
"""

from decimal import Decimal
from typing import Optional

import structlog
from eth_account import Account
from web3 import Web3
from web3.types import TxReceipt

from ..config import WorkerConfig
from ..errors import ProviderError, TransferError, UnsupportedNetworkError
from ..keys import SigningKey
from ..models import Asset, ChainTransfer, Network, from_base_units, to_base_units
from ..ratelimit import TokenBucket
from .base import ChainAdapter

logger = structlog.get_logger()


# ERC-20 ABI (minimal for deposits and sweeps)
ERC20_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

NATIVE_TRANSFER_GAS = 21_000


class EthereumAdapter(ChainAdapter):
    """USDT-ERC20 deposits and sweeps on Ethereum."""

    network = Network.ETHEREUM
    provider_name = "ethereum-rpc"

    def __init__(
        self,
        config: WorkerConfig,
        w3: Optional[Web3] = None,
        limiter: Optional[TokenBucket] = None,
        receipt_timeout: int = 120,
    ):
        settings = config.settings
        self.config = config
        self.chain_id = settings.ethereum_chain_id
        self.lookback_blocks = settings.ethereum_lookback_blocks
        self.receipt_timeout = receipt_timeout
        self.w3 = w3 or Web3(
            Web3.HTTPProvider(settings.ethereum_rpc_url, request_kwargs={"timeout": 30})
        )
        self.limiter = limiter or TokenBucket(
            capacity=settings.provider_burst,
            fill_rate=settings.ethereum_requests_per_second,
            name="ethereum",
        )

        logger.info(
            "ethereum_adapter_initialized",
            chain_id=self.chain_id,
            lookback_blocks=self.lookback_blocks,
        )

    def supports(self, asset: Asset) -> bool:
        return asset == Asset.USDT_ERC20

    def _token(self, asset: Asset):
        if not self.supports(asset):
            raise UnsupportedNetworkError(f"{self.network.value}/{asset.value}")
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(self.config.contract_address(asset)),
            abi=ERC20_ABI,
        )

    def get_current_block(self) -> int:
        self.limiter.acquire()
        try:
            return self.w3.eth.block_number
        except Exception as e:
            raise ProviderError(self.provider_name, f"block_number: {e}") from e

    def get_incoming_transfers(self, address: str, asset: Asset) -> list[ChainTransfer]:
        """
        Transfer logs into ``address`` over the last ``lookback_blocks`` blocks.

        A transaction emitting several matching logs is reported once, using its
        first log.
        """
        token = self._token(asset)
        decimals = self.config.asset(asset).decimals
        recipient = Web3.to_checksum_address(address)

        current = self.get_current_block()
        from_block = max(current - self.lookback_blocks, 0)

        self.limiter.acquire()
        try:
            logs = token.events.Transfer().get_logs(
                from_block=from_block,
                to_block=current,
                argument_filters={"to": recipient},
            )
        except Exception as e:
            raise ProviderError(self.provider_name, f"Transfer logs for {address}: {e}") from e

        seen: set[str] = set()
        transfers = []
        for log in logs:
            tx_hash = Web3.to_hex(log["transactionHash"])
            if tx_hash in seen:
                continue
            seen.add(tx_hash)

            block_number = log["blockNumber"]
            transfers.append(
                ChainTransfer(
                    tx_hash=tx_hash,
                    from_address=log["args"]["from"],
                    to_address=log["args"]["to"],
                    amount=from_base_units(log["args"]["value"], decimals),
                    confirmations=max(current - block_number, 0),
                    block_number=block_number,
                )
            )

        transfers.reverse()
        logger.debug("ethereum_transfers_fetched", address=address, count=len(transfers))
        return transfers

    def get_token_balance(self, address: str, asset: Asset) -> Decimal:
        token = self._token(asset)
        self.limiter.acquire()
        try:
            raw = token.functions.balanceOf(Web3.to_checksum_address(address)).call()
        except Exception as e:
            raise ProviderError(self.provider_name, f"balanceOf {address}: {e}") from e
        return from_base_units(raw, self.config.asset(asset).decimals)

    def get_native_balance(self, address: str) -> int:
        """ETH balance in wei."""
        self.limiter.acquire()
        try:
            return self.w3.eth.get_balance(Web3.to_checksum_address(address))
        except Exception as e:
            raise ProviderError(self.provider_name, f"balance {address}: {e}") from e

    def estimate_transfer_cost(
        self, from_address: str, to_address: str, amount: Decimal, asset: Asset
    ) -> int:
        """Worst-case wei needed for one token transfer at the current gas price."""
        token = self._token(asset)
        value = to_base_units(amount, self.config.asset(asset).decimals)
        self.limiter.acquire()
        try:
            gas = token.functions.transfer(
                Web3.to_checksum_address(to_address), value
            ).estimate_gas({"from": Web3.to_checksum_address(from_address)})
            gas_price = self.w3.eth.gas_price
        except Exception as e:
            raise ProviderError(self.provider_name, f"gas estimate: {e}") from e
        return gas * gas_price

    def _send(self, tx: dict, private_key: bytes, action: str) -> str:
        """Sign, send and wait for ``tx``. Raises TransferError on revert."""
        try:
            signed_tx = Account.sign_transaction(tx, private_key)
            self.limiter.acquire()
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except Exception as e:
            raise TransferError(self.provider_name, f"{action} failed: {e}") from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.info("ethereum_tx_sent", tx_hash=tx_hex, action=action)

        try:
            receipt: TxReceipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except Exception as e:
            raise TransferError(self.provider_name, f"awaiting {tx_hex}: {e}") from e

        if receipt["status"] != 1:
            logger.error("ethereum_tx_reverted", tx_hash=tx_hex, action=action)
            raise TransferError(self.provider_name, f"{action} {tx_hex} reverted")

        logger.info("ethereum_tx_confirmed", tx_hash=tx_hex, gas_used=receipt["gasUsed"])
        return tx_hex

    def transfer_token(
        self, key: SigningKey, to_address: str, amount: Decimal, asset: Asset
    ) -> str:
        token = self._token(asset)
        value = to_base_units(amount, self.config.asset(asset).decimals)
        sender = Web3.to_checksum_address(key.address)

        self.limiter.acquire()
        try:
            nonce = self.w3.eth.get_transaction_count(sender)
            gas_price = self.w3.eth.gas_price
            call = token.functions.transfer(Web3.to_checksum_address(to_address), value)
            gas = call.estimate_gas({"from": sender})
            tx = call.build_transaction(
                {
                    "from": sender,
                    "nonce": nonce,
                    "gasPrice": gas_price,
                    "gas": gas,
                    "chainId": self.chain_id,
                }
            )
        except Exception as e:
            raise TransferError(self.provider_name, f"building ERC-20 transfer: {e}") from e

        return self._send(tx, key.secret(), "ERC-20 transfer")

    def send_native(self, private_key: str, to_address: str, amount_wei: int) -> str:
        """Plain ETH payment from a master account."""
        sender = Account.from_key(private_key)
        self.limiter.acquire()
        try:
            tx = {
                "from": sender.address,
                "to": Web3.to_checksum_address(to_address),
                "value": amount_wei,
                "nonce": self.w3.eth.get_transaction_count(sender.address),
                "gasPrice": self.w3.eth.gas_price,
                "gas": NATIVE_TRANSFER_GAS,
                "chainId": self.chain_id,
            }
        except Exception as e:
            raise TransferError(self.provider_name, f"building ETH transfer: {e}") from e
        return self._send(tx, sender.key, "ETH transfer")
