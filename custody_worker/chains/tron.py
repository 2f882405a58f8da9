"""
TRON adapter: TronGrid REST for transfer listings, tronpy for contract calls,
signing and resource delegation.
"""

import time
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
import structlog
from tronpy import Tron
from tronpy.exceptions import AddressNotFound
from tronpy.keys import PrivateKey
from tronpy.providers import HTTPProvider

from ..config import WorkerConfig
from ..errors import ProviderError, TransferError, UnsupportedNetworkError
from ..keys import SigningKey
from ..models import Asset, ChainTransfer, Network, from_base_units, to_base_units
from ..ratelimit import TokenBucket
from .base import ChainAdapter

logger = structlog.get_logger()

SUN_PER_TRX = 1_000_000
DEFAULT_FEE_LIMIT_SUN = 100_000_000  # 100 TRX ceiling per contract call


def master_account(private_key_hex: str) -> tuple[str, bytes]:
    """Base58 address and raw key bytes for a hex master key."""
    raw = bytes.fromhex(private_key_hex.removeprefix("0x"))
    return PrivateKey(raw).public_key.to_base58check_address(), raw


class TronAdapter(ChainAdapter):
    """TRC-20 deposits and sweeps on TRON."""

    network = Network.TRON
    provider_name = "trongrid"

    def __init__(
        self,
        config: WorkerConfig,
        tron: Optional[Tron] = None,
        limiter: Optional[TokenBucket] = None,
        fee_limit: int = DEFAULT_FEE_LIMIT_SUN,
        max_retries: int = 3,
        retry_backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = config.settings
        self.config = config
        self.base_url = settings.tron_full_host.rstrip("/")
        self.required_confirmations = config.required_confirmations(Network.TRON)
        self.page_limit = settings.tron_transfer_page_limit
        self.fee_limit = fee_limit
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep

        headers = {"Accept": "application/json"}
        if settings.tron_api_key:
            headers["TRON-PRO-API-KEY"] = settings.tron_api_key
        self.client = httpx.Client(timeout=30.0, headers=headers)

        self.tron = tron or Tron(
            provider=HTTPProvider(self.base_url, api_key=settings.tron_api_key or None)
        )
        self.limiter = limiter or TokenBucket(
            capacity=settings.provider_burst,
            fill_rate=settings.tron_requests_per_second,
            name="tron",
        )

        logger.info(
            "tron_adapter_initialized",
            full_host=self.base_url,
            required_confirmations=self.required_confirmations,
            api_key_configured=bool(settings.tron_api_key),
        )

    def supports(self, asset: Asset) -> bool:
        return asset == Asset.USDT_TRC20

    def _contract_for(self, asset: Asset) -> str:
        if not self.supports(asset):
            raise UnsupportedNetworkError(f"{self.network.value}/{asset.value}")
        return self.config.contract_address(asset)

    # TronGrid REST

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        Call TronGrid, retrying HTTP 429 with linear backoff.

        Raises ProviderError on transport failure or a non-2xx response.
        """
        url = f"{self.base_url}{path}"
        send = self.client.get if method == "GET" else self.client.post

        for attempt in range(self.max_retries + 1):
            self.limiter.acquire()
            try:
                response = send(url, **kwargs)
            except httpx.HTTPError as e:
                raise ProviderError(self.provider_name, f"{method} {path}: {e}") from e

            if response.status_code == 429 and attempt < self.max_retries:
                wait = self.retry_backoff_seconds * (attempt + 1)
                logger.warning(
                    "trongrid_rate_limited",
                    path=path,
                    attempt=attempt + 1,
                    retry_in=wait,
                )
                self._sleep(wait)
                continue
            break

        if response.status_code >= 400:
            raise ProviderError(
                self.provider_name,
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    def get_current_block(self) -> int:
        data = self._request("POST", "/wallet/getnowblock")
        try:
            return int(data["block_header"]["raw_data"]["number"])
        except (KeyError, TypeError, ValueError):
            raise ProviderError(self.provider_name, "malformed getnowblock response") from None

    def get_incoming_transfers(self, address: str, asset: Asset) -> list[ChainTransfer]:
        """
        Recent TRC-20 transfers into ``address``.

        Listings carrying a block number get tip - block confirmations. Listings
        with only a block timestamp are already solidified and are reported at
        the required count.
        """
        contract = self._contract_for(asset)
        decimals = self.config.asset(asset).decimals

        payload = self._request(
            "GET",
            f"/v1/accounts/{address}/transactions/trc20",
            params={
                "limit": self.page_limit,
                "contract_address": contract,
                "only_to": "true",
            },
        )
        items = payload.get("data") or []

        current_block: Optional[int] = None
        transfers = []
        for item in items:
            if item.get("to") != address:
                continue
            if item.get("type", "Transfer") != "Transfer":
                continue

            block_number = item.get("block_number") or item.get("blockNumber")
            if block_number is not None:
                if current_block is None:
                    current_block = self.get_current_block()
                confirmations = max(current_block - int(block_number), 0)
            elif item.get("block_timestamp"):
                confirmations = self.required_confirmations
            else:
                confirmations = 0

            transfers.append(
                ChainTransfer(
                    tx_hash=item["transaction_id"],
                    from_address=item.get("from", ""),
                    to_address=item["to"],
                    amount=from_base_units(int(item["value"]), decimals),
                    confirmations=confirmations,
                    block_number=int(block_number) if block_number is not None else None,
                    timestamp=item.get("block_timestamp"),
                )
            )

        logger.debug("tron_transfers_fetched", address=address, count=len(transfers))
        return transfers

    # tronpy

    def get_token_balance(self, address: str, asset: Asset) -> Decimal:
        contract_address = self._contract_for(asset)
        decimals = self.config.asset(asset).decimals
        self.limiter.acquire()
        try:
            contract = self.tron.get_contract(contract_address)
            raw = contract.functions.balanceOf(address)
        except Exception as e:
            raise ProviderError(self.provider_name, f"balanceOf {address}: {e}") from e
        return from_base_units(int(raw), decimals)

    def get_trx_balance(self, address: str) -> Decimal:
        """Native TRX balance; unactivated accounts hold nothing."""
        self.limiter.acquire()
        try:
            return Decimal(self.tron.get_account_balance(address))
        except AddressNotFound:
            return Decimal(0)
        except Exception as e:
            raise ProviderError(self.provider_name, f"balance {address}: {e}") from e

    def get_account_resource(self, address: str) -> dict:
        self.limiter.acquire()
        try:
            return self.tron.get_account_resource(address)
        except Exception as e:
            raise ProviderError(self.provider_name, f"account resource {address}: {e}") from e

    def _broadcast(self, builder, key: bytes, action: str) -> str:
        self.limiter.acquire()
        try:
            txn = builder.build().sign(PrivateKey(key))
            txn.broadcast()
        except Exception as e:
            raise TransferError(self.provider_name, f"{action} failed: {e}") from e
        return txn.txid

    def transfer_token(
        self, key: SigningKey, to_address: str, amount: Decimal, asset: Asset
    ) -> str:
        contract_address = self._contract_for(asset)
        value = to_base_units(amount, self.config.asset(asset).decimals)

        self.limiter.acquire()
        try:
            contract = self.tron.get_contract(contract_address)
            builder = (
                contract.functions.transfer(to_address, value)
                .with_owner(key.address)
                .fee_limit(self.fee_limit)
            )
            txn = builder.build().sign(PrivateKey(key.secret()))
            result = txn.broadcast()
        except Exception as e:
            raise TransferError(self.provider_name, f"TRC-20 transfer failed: {e}") from e

        logger.info(
            "tron_transfer_sent",
            tx_hash=txn.txid,
            from_address=key.address,
            to_address=to_address,
            amount=str(amount),
        )

        try:
            info = result.wait()
        except Exception as e:
            raise TransferError(self.provider_name, f"awaiting {txn.txid}: {e}") from e

        outcome = (info.get("receipt") or {}).get("result", "SUCCESS")
        if outcome != "SUCCESS":
            logger.error("tron_transfer_failed", tx_hash=txn.txid, result=outcome)
            raise TransferError(self.provider_name, f"transfer {txn.txid} ended with {outcome}")

        return txn.txid

    def send_trx(self, owner_key: str, to_address: str, amount_sun: int) -> str:
        """Plain TRX payment from a master account."""
        owner, key = master_account(owner_key)
        builder = self.tron.trx.transfer(owner, to_address, amount_sun)
        return self._broadcast(builder, key, "TRX transfer")

    def delegate_energy(self, owner_key: str, receiver: str, balance_sun: int) -> str:
        owner, key = master_account(owner_key)
        builder = self.tron.trx.delegate_resource(owner, receiver, balance_sun, resource="ENERGY")
        return self._broadcast(builder, key, "energy delegation")

    def undelegate_energy(self, owner_key: str, receiver: str, balance_sun: int) -> str:
        owner, key = master_account(owner_key)
        builder = self.tron.trx.undelegate_resource(owner, receiver, balance_sun, resource="ENERGY")
        return self._broadcast(builder, key, "energy reclaim")

    def close(self) -> None:
        self.client.close()
