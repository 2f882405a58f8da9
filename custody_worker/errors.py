"""
Error taxonomy for the custody worker.

Transient provider failures are retried on the next cycle; configuration
errors disable the affected operation until fixed; a bad master seed is
fatal at startup.
"""

from typing import Optional


class CustodyError(Exception):
    """Base class for all worker errors."""


class ConfigurationError(CustodyError):
    """Required setting missing or unusable."""


class SeedError(ConfigurationError):
    """Master seed present but not a valid mnemonic."""


class UnsupportedNetworkError(CustodyError):
    """Network has no derivation path or adapter. Programming error."""

    def __init__(self, network: str):
        self.network = network
        super().__init__(f"Unsupported network: {network}")


class ProviderError(CustodyError):
    """Blockchain provider call failed (timeout, rate limit, RPC error)."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class TransferError(ProviderError):
    """Token transfer was rejected, reverted or could not pay its fee."""


class DelegationError(CustodyError):
    """Lending fee capacity to a custodial address failed."""


class InsufficientMasterCapacity(DelegationError):
    """Master account cannot spare the capacity needed for one transfer."""

    def __init__(self, available: int, required: int, unit: str = "energy"):
        self.available = available
        self.required = required
        self.unit = unit
        super().__init__(
            f"insufficient master capacity: {available} {unit} available, {required} required"
        )
