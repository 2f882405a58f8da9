"""
Main worker loop - prices, deposit detection, sweeps and reclaims.
"""

import signal
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from .chains import build_adapters
from .chains.base import ChainAdapter
from .config import WorkerConfig
from .db import CustodyStore
from .delegation import ReclaimQueue, ReclaimReport, ResourceDelegator, build_delegators
from .keys import KeyDerivationService
from .models import Network
from .monitor import MonitorReport, WalletMonitor
from .notifier import NotificationClient
from .prices import PriceUpdater
from .sweeper import SweepProcessor, SweepReport

logger = structlog.get_logger()


@dataclass
class WorkerState:
    """Current worker state."""

    is_running: bool = False
    last_cycle_time: Optional[datetime] = None
    cycles: int = 0
    deposits_detected: int = 0
    deposits_confirmed: int = 0
    sweeps_completed: int = 0
    sweeps_failed: int = 0
    cycle_errors: int = 0


@dataclass
class CycleReport:
    """Everything one iteration of the loop did."""

    prices_updated: bool
    monitor: MonitorReport
    sweeps: SweepReport
    reclaims: ReclaimReport


class CustodyWorker:
    """
    Single control loop. Each iteration runs, in order:
    1. Price refresh (when due)
    2. Deposit detection across all active addresses
    3. Sweeps of addresses holding credited deposits
    4. Due delegation reclaims

    then waits out the rest of the poll interval. Exactly one worker may run
    against a given database.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: Optional[CustodyStore] = None,
        adapters: Optional[dict[Network, ChainAdapter]] = None,
        keys: Optional[KeyDerivationService] = None,
        notifier: Optional[NotificationClient] = None,
        delegators: Optional[dict[Network, ResourceDelegator]] = None,
        prices: Optional[PriceUpdater] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.state = WorkerState()
        self._stop_event = threading.Event()
        self._clock = clock

        settings = config.settings

        # Use database URL directly (supports SQLite and PostgreSQL)
        self.store = store or CustodyStore(settings.database_url)

        # Raises SeedError on a malformed mnemonic: fatal at startup
        self.keys = keys or KeyDerivationService(settings.master_seed, self.store)

        self.adapters = adapters if adapters is not None else build_adapters(config)
        self.notifier = notifier or NotificationClient(
            settings.ledger_api_url,
            settings.internal_api_key,
            timeout=settings.notify_timeout_seconds,
        )
        self.delegators = (
            delegators if delegators is not None else build_delegators(config, self.adapters)
        )
        self.prices = prices or PriceUpdater(self.store, settings)

        self.reclaims = ReclaimQueue(self.store, self.delegators, settings)
        self.monitor = WalletMonitor(config, self.store, self.adapters, self.notifier)
        self.sweeper = SweepProcessor(
            config,
            self.store,
            self.adapters,
            self.keys,
            self.delegators,
            self.reclaims,
            self.notifier,
        )

        logger.info(
            "worker_initialized",
            networks=[n.value for n in self.adapters],
            poll_interval=settings.poll_interval_seconds,
            seed_configured=self.keys.configured,
            ledger_configured=self.notifier.configured,
        )

    def run_once(self) -> CycleReport:
        """
        Run one cycle of the worker.

        Returns a report of what each phase did.
        """
        prices_updated = self.prices.update_if_needed()
        monitor_report = self.monitor.run_once()
        sweep_report = self.sweeper.run_once()
        reclaim_report = self.reclaims.process_due()

        self.state.cycles += 1
        self.state.last_cycle_time = datetime.now()
        self.state.deposits_detected += monitor_report.detected
        self.state.deposits_confirmed += monitor_report.confirmed
        self.state.sweeps_completed += sweep_report.swept
        self.state.sweeps_failed += sweep_report.failed

        return CycleReport(
            prices_updated=prices_updated,
            monitor=monitor_report,
            sweeps=sweep_report,
            reclaims=reclaim_report,
        )

    def run(self) -> None:
        """Run the worker until ``stop`` is called."""
        self.state.is_running = True
        settings = self.config.settings

        logger.info("worker_starting", poll_interval=settings.poll_interval_seconds)

        try:
            while not self._stop_event.is_set():
                started = self._clock()
                try:
                    report = self.run_once()
                    logger.info(
                        "poll_cycle_complete",
                        detected=report.monitor.detected,
                        confirmed=report.monitor.confirmed,
                        swept=report.sweeps.swept,
                        sweep_failures=report.sweeps.failed,
                        reclaimed=report.reclaims.done,
                        scan_errors=report.monitor.errors,
                    )
                    wait = max(settings.poll_interval_seconds - (self._clock() - started), 0.0)
                except Exception as e:
                    self.state.cycle_errors += 1
                    logger.error("poll_cycle_error", error=str(e))
                    wait = settings.error_backoff_seconds

                self._stop_event.wait(wait)
        finally:
            self.shutdown()

    def stop(self) -> None:
        """Stop after the current cycle; interrupts the wait."""
        self.state.is_running = False
        self._stop_event.set()
        logger.info("worker_stopping")

    def install_signal_handlers(self) -> None:
        """SIGINT and SIGTERM stop the loop gracefully."""

        def _handle(signum, frame):
            logger.info("signal_received", signal=signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    def shutdown(self) -> None:
        """Drain due reclaims once and release clients."""
        self.state.is_running = False
        try:
            report = self.reclaims.process_due()
            logger.info("shutdown_reclaims_processed", done=report.done, retried=report.retried)
        except Exception as e:
            logger.error("shutdown_reclaim_error", error=str(e))

        for adapter in self.adapters.values():
            adapter.close()
        self.notifier.close()
        self.prices.close()
        self.store.close()
        logger.info("worker_stopped", cycles=self.state.cycles)
