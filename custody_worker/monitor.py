"""
Wallet monitor - turns on-chain transfers into deposit records.
"""

import uuid
from dataclasses import dataclass

import structlog

from .chains.base import ChainAdapter
from .config import WorkerConfig
from .db import CustodyStore
from .models import (
    ChainTransfer,
    CustodialAddress,
    Deposit,
    DepositStatus,
    Network,
    format_amount,
    utcnow,
)
from .notifier import NotificationClient

logger = structlog.get_logger()


@dataclass
class MonitorReport:
    """Outcome of one detection pass."""

    addresses_scanned: int = 0
    detected: int = 0
    confirmed: int = 0
    skipped: int = 0
    errors: int = 0


class WalletMonitor:
    """
    Reconciles recent inbound transfers against stored deposits:
    1. New transfers at or above the minimum become PENDING or CONFIRMED deposits
    2. PENDING deposits gain confirmations until they reach the network threshold
    3. Anything past PENDING is left alone
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: CustodyStore,
        adapters: dict[Network, ChainAdapter],
        notifier: NotificationClient,
    ):
        self.config = config
        self.store = store
        self.adapters = adapters
        self.notifier = notifier

    def run_once(self) -> MonitorReport:
        report = MonitorReport()

        for address in self.store.list_active_addresses():
            adapter = self.adapters.get(address.network)
            if adapter is None or not adapter.supports(address.asset):
                report.skipped += 1
                logger.info(
                    "address_skipped_no_adapter",
                    address=address.address,
                    network=address.network.value,
                    asset=address.asset.value,
                )
                continue

            try:
                self._scan_address(address, adapter, report)
                report.addresses_scanned += 1
            except Exception as e:
                report.errors += 1
                logger.error(
                    "address_scan_error",
                    address=address.address,
                    network=address.network.value,
                    error=str(e),
                )

        return report

    def _scan_address(
        self, address: CustodialAddress, adapter: ChainAdapter, report: MonitorReport
    ) -> None:
        logger.debug("checking_address", address=address.address, network=address.network.value)

        transfers = adapter.get_incoming_transfers(address.address, address.asset)
        required = self.config.required_confirmations(address.network)

        for transfer in transfers:
            existing = self.store.get_deposit_by_tx_hash(transfer.tx_hash)
            if existing is None:
                self._record_deposit(address, transfer, required, report)
            elif existing.status == DepositStatus.PENDING:
                self._advance_deposit(existing, transfer, required, report)

    def _record_deposit(
        self,
        address: CustodialAddress,
        transfer: ChainTransfer,
        required: int,
        report: MonitorReport,
    ) -> None:
        minimum = self.config.min_deposit(address.asset)
        if transfer.amount < minimum:
            logger.debug(
                "deposit_below_minimum",
                tx_hash=transfer.tx_hash,
                amount=format_amount(transfer.amount),
                minimum=format_amount(minimum),
            )
            return

        confirmed = transfer.confirmations >= required
        deposit = Deposit(
            id=str(uuid.uuid4()),
            address_id=address.id,
            tx_hash=transfer.tx_hash,
            network=address.network,
            asset=address.asset,
            amount=transfer.amount,
            confirmations=transfer.confirmations,
            status=DepositStatus.CONFIRMED if confirmed else DepositStatus.PENDING,
        )
        if confirmed:
            deposit.confirmed_at = utcnow()

        if not self.store.create_deposit(deposit):
            return

        report.detected += 1
        logger.info(
            "deposit_detected",
            deposit_id=deposit.id,
            tx_hash=deposit.tx_hash,
            address=address.address,
            asset=deposit.asset.value,
            amount=format_amount(deposit.amount),
            confirmations=deposit.confirmations,
            status=deposit.status.value,
        )
        self.notifier.deposit_detected(deposit, address.address)

        if confirmed:
            report.confirmed += 1
            logger.info("deposit_confirmed", deposit_id=deposit.id, tx_hash=deposit.tx_hash)
            self.notifier.deposit_confirmed(deposit)

    def _advance_deposit(
        self,
        deposit: Deposit,
        transfer: ChainTransfer,
        required: int,
        report: MonitorReport,
    ) -> None:
        if transfer.confirmations < deposit.confirmations:
            logger.warning(
                "confirmations_regressed",
                tx_hash=deposit.tx_hash,
                stored=deposit.confirmations,
                observed=transfer.confirmations,
            )
            return

        confirmed = transfer.confirmations >= required
        if transfer.confirmations == deposit.confirmations and not confirmed:
            return

        if not self.store.update_confirmations(deposit.id, transfer.confirmations, confirmed):
            return

        deposit.confirmations = transfer.confirmations
        if not confirmed:
            logger.debug(
                "deposit_confirmations_updated",
                tx_hash=deposit.tx_hash,
                confirmations=deposit.confirmations,
                required=required,
            )
            return

        deposit.status = DepositStatus.CONFIRMED
        report.confirmed += 1
        logger.info(
            "deposit_confirmed",
            deposit_id=deposit.id,
            tx_hash=deposit.tx_hash,
            confirmations=deposit.confirmations,
        )
        self.notifier.deposit_confirmed(deposit)
