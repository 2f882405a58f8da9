"""
Fee capacity for sweeps.

Custodial addresses hold no native coin of their own. Before a sweep the master
account lends them what one token transfer costs: staked energy on TRON
(reclaimed afterwards through the persisted reclaim queue) or a small ETH
top-up on Ethereum (nothing to reclaim).
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional

import structlog
from eth_account import Account

from .chains.ethereum import EthereumAdapter
from .chains.tron import SUN_PER_TRX, TronAdapter, master_account
from .config import Settings, WorkerConfig
from .db import CustodyStore
from .errors import DelegationError, InsufficientMasterCapacity, ProviderError
from .models import Asset, DelegationGrant, Network, ReclaimTask, utcnow

logger = structlog.get_logger()

ENERGY_RESOURCE = "ENERGY"


class ResourceDelegator(ABC):
    """Lends fee capacity to a custodial address for one transfer."""

    network: Network

    @abstractmethod
    def prepare(
        self, receiver: str, asset: Asset, amount: Decimal, destination: str
    ) -> Optional[DelegationGrant]:
        """
        Make sure ``receiver`` can pay for transferring ``amount`` to
        ``destination``.

        Returns a grant that must be reclaimed later, or None. Raises
        DelegationError when no capacity could be arranged.
        """

    def reclaim(self, task: ReclaimTask) -> Optional[str]:
        """Take back a grant. Returns the reclaim tx hash."""
        raise DelegationError(f"{self.network.value} grants cannot be reclaimed")


class TronEnergyDelegator(ResourceDelegator):
    """
    Delegates staked energy from the master account.

    1. Check the master has enough free energy
    2. Delegate energy_per_transfer * margin, converted to staked SUN
    3. Wait for the delegation to propagate
    4. (caller transfers, then schedules the reclaim)

    If delegation is impossible, falls back to sending TRX for fees when the
    custodial address is short of it.
    """

    network = Network.TRON

    def __init__(
        self,
        adapter: TronAdapter,
        master_private_key: Optional[str],
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.adapter = adapter
        self.master_private_key = master_private_key
        self.energy_needed = settings.energy_per_transfer * settings.delegation_margin
        self.propagation_seconds = settings.delegation_propagation_seconds
        self.fallback_trx = settings.tron_fee_fallback_trx
        self.fallback_min_trx = settings.tron_fee_fallback_min_trx
        self._sleep = sleep

        self.master_address: Optional[str] = None
        if master_private_key:
            self.master_address, _ = master_account(master_private_key)
        else:
            logger.warning("tron_master_key_missing", detail="energy delegation disabled")

    def energy_to_sun(self, energy: int, resources: dict) -> int:
        """
        Staked SUN that yields ``energy`` at the network's current ratio.

        energy per TRX = TotalEnergyLimit / TotalEnergyWeight
        """
        total_limit = resources.get("TotalEnergyLimit")
        total_weight = resources.get("TotalEnergyWeight")
        if not total_limit or not total_weight:
            raise DelegationError("network energy totals unavailable")
        trx = Decimal(energy) * Decimal(total_weight) / Decimal(total_limit)
        return math.ceil(trx * SUN_PER_TRX)

    def delegate(self, receiver: str) -> DelegationGrant:
        """Delegate energy for one transfer, without any fallback."""
        if not self.master_private_key:
            raise DelegationError("TRON master key not configured")

        try:
            resources = self.adapter.get_account_resource(self.master_address)
        except ProviderError as e:
            raise DelegationError(f"reading master resources: {e}") from e

        available = resources.get("EnergyLimit", 0) - resources.get("EnergyUsed", 0)
        if available < self.energy_needed:
            raise InsufficientMasterCapacity(available, self.energy_needed)

        balance_sun = self.energy_to_sun(self.energy_needed, resources)
        try:
            tx_hash = self.adapter.delegate_energy(self.master_private_key, receiver, balance_sun)
        except ProviderError as e:
            raise DelegationError(f"delegating energy: {e}") from e

        logger.info(
            "energy_delegated",
            receiver=receiver,
            energy=self.energy_needed,
            balance_sun=balance_sun,
            tx_hash=tx_hash,
        )
        self._sleep(self.propagation_seconds)

        return DelegationGrant(
            network=self.network,
            receiver=receiver,
            resource=ENERGY_RESOURCE,
            amount=balance_sun,
            tx_hash=tx_hash,
        )

    def fund_fees(self, receiver: str) -> Optional[str]:
        """Send TRX for fees if ``receiver`` holds less than the floor."""
        balance = self.adapter.get_trx_balance(receiver)
        if balance >= self.fallback_min_trx:
            logger.info("tron_fee_funding_skipped", receiver=receiver, trx_balance=str(balance))
            return None

        amount_sun = int(self.fallback_trx * SUN_PER_TRX)
        tx_hash = self.adapter.send_trx(self.master_private_key, receiver, amount_sun)
        logger.info(
            "tron_fees_funded",
            receiver=receiver,
            amount_trx=str(self.fallback_trx),
            previous_balance=str(balance),
            tx_hash=tx_hash,
        )
        self._sleep(self.propagation_seconds)
        return tx_hash

    def prepare(
        self, receiver: str, asset: Asset, amount: Decimal, destination: str
    ) -> Optional[DelegationGrant]:
        try:
            return self.delegate(receiver)
        except DelegationError as e:
            if not self.master_private_key or self.fallback_trx <= 0:
                raise
            logger.warning("energy_delegation_unavailable", receiver=receiver, error=str(e))
            try:
                self.fund_fees(receiver)
            except ProviderError as fund_error:
                raise DelegationError(
                    f"{e}; TRX fee funding failed: {fund_error}"
                ) from fund_error
            return None

    def reclaim(self, task: ReclaimTask) -> Optional[str]:
        if not self.master_private_key:
            raise DelegationError("TRON master key not configured")
        try:
            return self.adapter.undelegate_energy(
                self.master_private_key, task.receiver, task.amount
            )
        except ProviderError as e:
            raise DelegationError(f"undelegating energy: {e}") from e


class EvmGasFunder(ResourceDelegator):
    """
    Tops up ETH for gas when a custodial address cannot pay for its own
    token transfer.
    """

    network = Network.ETHEREUM

    def __init__(self, adapter: EthereumAdapter, master_private_key: Optional[str], margin: int = 2):
        self.adapter = adapter
        self.master_private_key = master_private_key
        self.margin = margin

        self.master_address: Optional[str] = None
        if master_private_key:
            self.master_address = Account.from_key(master_private_key).address
        else:
            logger.warning("ethereum_master_key_missing", detail="gas funding disabled")

    def prepare(
        self, receiver: str, asset: Asset, amount: Decimal, destination: str
    ) -> Optional[DelegationGrant]:
        try:
            cost = self.adapter.estimate_transfer_cost(receiver, destination, amount, asset)
            have = self.adapter.get_native_balance(receiver)
        except ProviderError as e:
            raise DelegationError(f"estimating gas: {e}") from e

        if have >= cost:
            return None

        if not self.master_private_key:
            raise DelegationError("Ethereum master key not configured")

        top_up = cost * self.margin
        try:
            master_balance = self.adapter.get_native_balance(self.master_address)
        except ProviderError as e:
            raise DelegationError(f"reading master balance: {e}") from e
        if master_balance < top_up:
            raise InsufficientMasterCapacity(master_balance, top_up, unit="wei")

        try:
            tx_hash = self.adapter.send_native(self.master_private_key, receiver, top_up)
        except ProviderError as e:
            raise DelegationError(f"funding gas: {e}") from e

        logger.info(
            "gas_funded",
            receiver=receiver,
            amount_wei=top_up,
            previous_balance_wei=have,
            tx_hash=tx_hash,
        )
        return None


@dataclass
class ReclaimReport:
    """Outcome of one pass over due reclaim tasks."""

    done: int = 0
    retried: int = 0
    abandoned: int = 0


class ReclaimQueue:
    """
    Persisted queue of delegation grants to take back.

    Failed reclaims are retried with exponential backoff and abandoned after
    ``reclaim_max_attempts``; an abandoned grant is logged, never raised.
    """

    def __init__(
        self,
        store: CustodyStore,
        delegators: dict[Network, ResourceDelegator],
        settings: Settings,
    ):
        self.store = store
        self.delegators = delegators
        self.delay = timedelta(seconds=settings.reclaim_delay_seconds)
        self.backoff_seconds = settings.reclaim_backoff_seconds
        self.max_attempts = settings.reclaim_max_attempts

    def schedule(self, grant: DelegationGrant) -> int:
        task_id = self.store.enqueue_reclaim(grant, not_before=utcnow() + self.delay)
        logger.info(
            "reclaim_scheduled",
            task_id=task_id,
            network=grant.network.value,
            receiver=grant.receiver,
            amount=grant.amount,
        )
        return task_id

    def process_due(self) -> ReclaimReport:
        report = ReclaimReport()

        for task in self.store.due_reclaims(utcnow()):
            delegator = self.delegators.get(task.network)
            try:
                if delegator is None:
                    raise DelegationError(f"no delegator for {task.network.value}")
                tx_hash = delegator.reclaim(task)
            except Exception as e:
                attempts = task.attempts + 1
                if attempts >= self.max_attempts:
                    self.store.fail_reclaim(task.id, str(e), retry_in=None)
                    report.abandoned += 1
                    logger.warning(
                        "reclaim_abandoned",
                        task_id=task.id,
                        receiver=task.receiver,
                        attempts=attempts,
                        error=str(e),
                    )
                else:
                    retry_in = timedelta(seconds=self.backoff_seconds * 2 ** task.attempts)
                    self.store.fail_reclaim(task.id, str(e), retry_in=retry_in)
                    report.retried += 1
                    logger.error(
                        "reclaim_failed",
                        task_id=task.id,
                        receiver=task.receiver,
                        attempts=attempts,
                        retry_in=retry_in.total_seconds(),
                        error=str(e),
                    )
                continue

            self.store.complete_reclaim(task.id)
            report.done += 1
            logger.info(
                "reclaim_completed",
                task_id=task.id,
                receiver=task.receiver,
                amount=task.amount,
                tx_hash=tx_hash,
            )

        return report


def build_delegators(config: WorkerConfig, adapters: dict) -> dict[Network, ResourceDelegator]:
    """Delegator per network that has an adapter."""
    delegators: dict[Network, ResourceDelegator] = {}
    tron = adapters.get(Network.TRON)
    if tron is not None:
        delegators[Network.TRON] = TronEnergyDelegator(
            tron, config.master_private_key(Network.TRON), config.settings
        )
    ethereum = adapters.get(Network.ETHEREUM)
    if ethereum is not None:
        delegators[Network.ETHEREUM] = EvmGasFunder(
            ethereum,
            config.master_private_key(Network.ETHEREUM),
            margin=config.settings.delegation_margin,
        )
    return delegators
