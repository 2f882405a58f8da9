"""
Domain types shared by the monitor, sweeper and store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


class Network(str, Enum):
    TRON = "TRON"
    ETHEREUM = "ETHEREUM"
    BITCOIN = "BITCOIN"


class Asset(str, Enum):
    USDT_TRC20 = "USDT_TRC20"
    USDT_ERC20 = "USDT_ERC20"
    ETH = "ETH"
    BTC = "BTC"


class DepositStatus(str, Enum):
    """Deposit lifecycle. Order matters: status only ever moves forward."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CREDITED = "CREDITED"
    SWEPT = "SWEPT"


class ReclaimStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    ABANDONED = "ABANDONED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_base_units(value: int, decimals: int) -> Decimal:
    """
    Convert an integer amount in the smallest unit to a Decimal.

    Trailing zeros are dropped: 100_500_000 with 6 decimals is 100.5.
    """
    return Decimal(int(value)) / (Decimal(10) ** decimals)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """
    Convert a Decimal amount to the smallest unit.

    Raises ValueError if the amount carries more precision than the asset.
    """
    scaled = Decimal(amount) * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def format_amount(amount: Decimal) -> str:
    """Plain decimal string (no exponent) for payloads and storage."""
    return f"{amount:f}"


@dataclass
class CustodialAddress:
    """Deposit address held on behalf of a merchant."""

    id: str
    merchant_id: str
    network: Network
    asset: Asset
    address: str
    derivation_index: int
    active: bool = True


@dataclass
class ChainTransfer:
    """Inbound token transfer as reported by a chain adapter."""

    tx_hash: str
    from_address: str
    to_address: str
    amount: Decimal
    confirmations: int
    block_number: Optional[int] = None
    timestamp: Optional[int] = None


@dataclass
class Deposit:
    """A detected inbound transfer to a custodial address."""

    id: str
    address_id: str
    tx_hash: str
    network: Network
    asset: Asset
    amount: Decimal
    confirmations: int
    status: DepositStatus
    detected_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None
    swept_at: Optional[datetime] = None
    sweep_tx_hash: Optional[str] = None


@dataclass
class SweepRecord:
    """Hot-wallet inbound ledger entry for one consolidation transaction."""

    network: Network
    asset: Asset
    tx_hash: str
    amount: Decimal
    address_id: str
    direction: str = "IN"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DelegationGrant:
    """Fee capacity lent by a master account that must be taken back."""

    network: Network
    receiver: str
    resource: str
    amount: int
    tx_hash: Optional[str] = None


@dataclass
class ReclaimTask:
    """Persisted request to reclaim a delegation grant."""

    id: int
    network: Network
    receiver: str
    resource: str
    amount: int
    status: ReclaimStatus
    attempts: int
    next_attempt_at: datetime
    last_error: Optional[str] = None


@dataclass
class PriceQuote:
    asset: Asset
    price_usd: Decimal
    price_mxn: Decimal
    source: str
    recorded_at: datetime = field(default_factory=utcnow)
