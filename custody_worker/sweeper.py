"""
Sweep processor - consolidates credited custodial balances into the hot wallet.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import structlog

from .chains.base import ChainAdapter
from .config import WorkerConfig
from .db import CustodyStore
from .delegation import ReclaimQueue, ResourceDelegator
from .errors import ConfigurationError, DelegationError, ProviderError
from .keys import KeyDerivationService
from .models import CustodialAddress, DelegationGrant, Network, SweepRecord, format_amount
from .notifier import NotificationClient
from .ratelimit import TokenBucket

logger = structlog.get_logger()


@dataclass
class SweepOutcome:
    """Result of one sweep attempt."""

    address: str
    success: bool
    skipped: bool = False
    tx_hash: Optional[str] = None
    amount: Optional[Decimal] = None
    deposits_swept: int = 0
    error: Optional[str] = None


@dataclass
class SweepReport:
    """Outcome of one sweep pass."""

    candidates: int = 0
    swept: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: list[SweepOutcome] = field(default_factory=list)

    def add(self, outcome: SweepOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.success:
            self.swept += 1
        elif outcome.skipped:
            self.skipped += 1
        else:
            self.failed += 1


class SweepProcessor:
    """
    Sweeps every address holding CREDITED deposits:
    1. Read the live token balance
    2. Skip when it is zero or below the asset's minimum sweep
    3. Arrange fee capacity, then transfer the whole balance to the hot wallet
    4. Record the sweep and mark the address's CREDITED deposits SWEPT
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: CustodyStore,
        adapters: dict[Network, ChainAdapter],
        keys: KeyDerivationService,
        delegators: dict[Network, ResourceDelegator],
        reclaims: ReclaimQueue,
        notifier: NotificationClient,
        spacing: Optional[TokenBucket] = None,
    ):
        self.config = config
        self.store = store
        self.adapters = adapters
        self.keys = keys
        self.delegators = delegators
        self.reclaims = reclaims
        self.notifier = notifier

        spacing_seconds = config.settings.sweep_spacing_seconds
        if spacing is None and spacing_seconds > 0:
            spacing = TokenBucket.spacing(spacing_seconds, name="sweeps")
        self.spacing = spacing

    def run_once(self) -> SweepReport:
        report = SweepReport()
        candidates = self.store.list_sweep_candidates()
        report.candidates = len(candidates)

        for address in candidates:
            try:
                outcome = self.sweep_address(address)
            except Exception as e:
                logger.error("sweep_error", address=address.address, error=str(e))
                outcome = SweepOutcome(address=address.address, success=False, error=str(e))
            report.add(outcome)

        return report

    def sweep_address(
        self, address: CustodialAddress, enforce_minimum: bool = True
    ) -> SweepOutcome:
        """
        Sweep one address's entire balance if it qualifies.

        ``enforce_minimum=False`` is for operator-initiated sweeps.
        """
        adapter = self.adapters.get(address.network)
        if adapter is None or not adapter.supports(address.asset):
            logger.info("sweep_skipped_no_adapter", address=address.address, network=address.network.value)
            return SweepOutcome(address=address.address, success=False, skipped=True)

        hot_wallet = self.config.hot_wallet(address.network)
        if not hot_wallet:
            logger.error("hot_wallet_not_configured", network=address.network.value)
            return SweepOutcome(
                address=address.address,
                success=False,
                error=f"hot wallet not configured for {address.network.value}",
            )

        if not self.keys.configured:
            logger.critical("sweep_disabled_no_seed", address=address.address)
            return SweepOutcome(address=address.address, success=False, error="master seed not configured")

        balance = adapter.get_token_balance(address.address, address.asset)
        if balance <= 0:
            return SweepOutcome(address=address.address, success=False, skipped=True, amount=balance)

        minimum = self.config.min_sweep(address.asset)
        if enforce_minimum and balance < minimum:
            logger.info(
                "sweep_below_minimum",
                address=address.address,
                balance=format_amount(balance),
                minimum=format_amount(minimum),
            )
            return SweepOutcome(address=address.address, success=False, skipped=True, amount=balance)

        if self.spacing is not None:
            self.spacing.acquire()

        return self._transfer(address, adapter, balance, hot_wallet)

    def _transfer(
        self,
        address: CustodialAddress,
        adapter: ChainAdapter,
        balance: Decimal,
        hot_wallet: str,
    ) -> SweepOutcome:
        delegator = self.delegators.get(address.network)
        grant: Optional[DelegationGrant] = None

        logger.info(
            "sweep_starting",
            address=address.address,
            asset=address.asset.value,
            amount=format_amount(balance),
            hot_wallet=hot_wallet,
        )

        with self.keys.signing_material(address.network, address.derivation_index) as key:
            if not self.keys.verify_address(
                address.network, address.derivation_index, address.address
            ):
                raise ConfigurationError(
                    f"address {address.address} does not match derivation index {address.derivation_index}"
                )

            if delegator is not None:
                try:
                    grant = delegator.prepare(address.address, address.asset, balance, hot_wallet)
                except DelegationError as e:
                    logger.warning("delegation_failed", address=address.address, error=str(e))

            try:
                tx_hash = adapter.transfer_token(key, hot_wallet, balance, address.asset)
            except ProviderError as e:
                logger.error(
                    "sweep_transfer_failed",
                    address=address.address,
                    amount=format_amount(balance),
                    error=str(e),
                )
                return SweepOutcome(
                    address=address.address, success=False, amount=balance, error=str(e)
                )
            finally:
                if grant is not None:
                    self.reclaims.schedule(grant)

        swept = self.store.record_sweep(
            SweepRecord(
                network=address.network,
                asset=address.asset,
                tx_hash=tx_hash,
                amount=balance,
                address_id=address.id,
            )
        )

        logger.info(
            "sweep_completed",
            address=address.address,
            tx_hash=tx_hash,
            amount=format_amount(balance),
            deposits=len(swept),
        )

        for deposit in swept:
            self.notifier.deposit_swept(deposit, tx_hash)

        return SweepOutcome(
            address=address.address,
            success=True,
            tx_hash=tx_hash,
            amount=balance,
            deposits_swept=len(swept),
        )
