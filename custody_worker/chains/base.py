"""
Common interface for blockchain adapters.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from ..keys import SigningKey
from ..models import Asset, ChainTransfer, Network


class ChainAdapter(ABC):
    """
    Read inbound transfers and balances, and submit token transfers, on one
    network.

    Provider failures surface as ``ProviderError``; a rejected or reverted
    transfer as ``TransferError``.
    """

    network: Network
    provider_name: str = "chain"

    @abstractmethod
    def supports(self, asset: Asset) -> bool:
        """Whether this adapter can watch and sweep ``asset``."""

    @abstractmethod
    def get_incoming_transfers(self, address: str, asset: Asset) -> list[ChainTransfer]:
        """Recent inbound transfers of ``asset`` to ``address``, newest first."""

    @abstractmethod
    def get_token_balance(self, address: str, asset: Asset) -> Decimal:
        """Live balance of ``asset`` held by ``address``."""

    @abstractmethod
    def transfer_token(
        self, key: SigningKey, to_address: str, amount: Decimal, asset: Asset
    ) -> str:
        """Send ``amount`` of ``asset`` from ``key.address``. Returns the tx hash."""

    def close(self) -> None:
        """Release network resources."""
