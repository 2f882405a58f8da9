"""
Custody Worker

Watches custodial deposit addresses on TRON and Ethereum, reports deposit
state changes to the ledger, and sweeps credited balances into the hot wallet
using energy delegation (TRON) or gas top-ups (Ethereum) from a master account.

Every custodial key is derived on demand from one BIP-39 master seed; no
private key is ever stored.

Usage:
    # Mint a deposit address for a merchant
    custody-worker new-address merchant-42 USDT_TRC20

    # See what the monitor would see for an address
    custody-worker check T... --asset USDT_TRC20

    # Run the worker
    custody-worker run

    # Run one cycle (for testing)
    custody-worker run --once
"""

__version__ = "0.1.0"

from .config import Settings, WorkerConfig
from .db import CustodyStore
from .keys import KeyDerivationService, SigningKey
from .monitor import WalletMonitor
from .notifier import NotificationClient
from .sweeper import SweepProcessor
from .worker import CustodyWorker

__all__ = [
    "__version__",
    "Settings",
    "WorkerConfig",
    "CustodyStore",
    "KeyDerivationService",
    "SigningKey",
    "WalletMonitor",
    "NotificationClient",
    "SweepProcessor",
    "CustodyWorker",
]
