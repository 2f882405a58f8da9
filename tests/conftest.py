from __future__ import annotations

from decimal import Decimal
from typing import Callable, Optional

import pytest

from custody_worker.chains.base import ChainAdapter
from custody_worker.config import Settings, WorkerConfig
from custody_worker.db import CustodyStore, deposits
from custody_worker.delegation import ReclaimQueue, ResourceDelegator
from custody_worker.keys import KeyDerivationService, SigningKey
from custody_worker.models import (
    Asset,
    ChainTransfer,
    CustodialAddress,
    DelegationGrant,
    DepositStatus,
    Network,
    ReclaimTask,
    utcnow,
)
from custody_worker.notifier import LedgerEvent, NotificationClient

# Well-known development mnemonic (Hardhat / Foundry default accounts).
TEST_MNEMONIC = "test test test test test test test test test test test junk"
HOT_WALLET_TRON = "TLsV52sRDL79HXGGm9yzwKibb6BeruhUzy"
HOT_WALLET_ETHEREUM = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


class FakeAdapter(ChainAdapter):
    """In-memory chain: scripted transfers and balances, recorded sends."""

    provider_name = "fake"

    def __init__(self, network: Network = Network.TRON, assets: tuple = (Asset.USDT_TRC20,)):
        self.network = network
        self.assets = set(assets)
        self.transfers: dict[str, list[ChainTransfer]] = {}
        self.balances: dict[str, Decimal] = {}
        self.errors: dict[str, Exception] = {}
        self.transfer_error: Optional[Exception] = None
        self.next_tx_hash = "sweep789"
        self.sent: list[tuple] = []
        self.closed = False

    def supports(self, asset: Asset) -> bool:
        return asset in self.assets

    def get_incoming_transfers(self, address: str, asset: Asset) -> list[ChainTransfer]:
        if address in self.errors:
            raise self.errors[address]
        return list(self.transfers.get(address, []))

    def get_token_balance(self, address: str, asset: Asset) -> Decimal:
        return self.balances.get(address, Decimal(0))

    def transfer_token(
        self, key: SigningKey, to_address: str, amount: Decimal, asset: Asset
    ) -> str:
        assert not key.wiped
        self.sent.append((key.address, to_address, amount, asset))
        if self.transfer_error is not None:
            raise self.transfer_error
        self.balances[key.address] = Decimal(0)
        if len(self.sent) == 1:
            return self.next_tx_hash
        return f"{self.next_tx_hash}-{len(self.sent)}"

    def close(self) -> None:
        self.closed = True


class FakeDelegator(ResourceDelegator):
    """Delegator returning a scripted grant or error, with reclaim bookkeeping."""

    def __init__(self, network: Network = Network.TRON):
        self.network = network
        self.error: Optional[Exception] = None
        self.grant_amount: Optional[int] = 1_000_000
        self.reclaim_error: Optional[Exception] = None
        self.prepared: list[str] = []
        self.reclaimed: list[int] = []

    def prepare(
        self, receiver: str, asset: Asset, amount: Decimal, destination: str
    ) -> Optional[DelegationGrant]:
        self.prepared.append(receiver)
        if self.error is not None:
            raise self.error
        if self.grant_amount is None:
            return None
        return DelegationGrant(
            network=self.network,
            receiver=receiver,
            resource="ENERGY",
            amount=self.grant_amount,
            tx_hash="delegate-tx",
        )

    def reclaim(self, task: ReclaimTask) -> Optional[str]:
        if self.reclaim_error is not None:
            raise self.reclaim_error
        self.reclaimed.append(task.id)
        return "reclaim-tx"


class RecordingNotifier(NotificationClient):
    """Notification client that records events instead of posting them."""

    def __init__(self) -> None:
        super().__init__("http://ledger.test", "test-secret")
        self.events: list[LedgerEvent] = []

    def send(self, event: LedgerEvent) -> bool:
        self.events.append(event)
        return True

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]


class FakePrices:
    def __init__(self) -> None:
        self.calls = 0
        self.closed = False

    def update_if_needed(self) -> bool:
        self.calls += 1
        return True

    def close(self) -> None:
        self.closed = True


def make_settings(**overrides) -> Settings:
    values = dict(
        master_seed=TEST_MNEMONIC,
        hot_wallet_tron=HOT_WALLET_TRON,
        hot_wallet_ethereum=HOT_WALLET_ETHEREUM,
        internal_api_key="test-secret",
        sweep_spacing_seconds=0,
        delegation_propagation_seconds=0,
        poll_interval_seconds=0,
        error_backoff_seconds=0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def config(settings: Settings) -> WorkerConfig:
    return WorkerConfig(settings=settings)


@pytest.fixture
def store(tmp_path) -> CustodyStore:
    db = CustodyStore(f"sqlite:///{tmp_path / 'custody.db'}")
    yield db
    db.close()


@pytest.fixture
def keys(store: CustodyStore) -> KeyDerivationService:
    return KeyDerivationService(TEST_MNEMONIC, store)


@pytest.fixture
def tron_adapter() -> FakeAdapter:
    return FakeAdapter(Network.TRON, (Asset.USDT_TRC20,))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def delegator() -> FakeDelegator:
    return FakeDelegator(Network.TRON)


@pytest.fixture
def reclaims(store: CustodyStore, delegator: FakeDelegator, settings: Settings) -> ReclaimQueue:
    return ReclaimQueue(store, {Network.TRON: delegator}, settings)


@pytest.fixture
def register(store: CustodyStore, keys: KeyDerivationService) -> Callable[..., CustodialAddress]:
    """Mint a custodial address the way the wallet registry does."""

    def _register(merchant_id: str = "merchant-1", asset: Asset = Asset.USDT_TRC20) -> CustodialAddress:
        network = {
            Asset.USDT_TRC20: Network.TRON,
            Asset.USDT_ERC20: Network.ETHEREUM,
            Asset.ETH: Network.ETHEREUM,
            Asset.BTC: Network.BITCOIN,
        }[asset]
        index = keys.allocate_index()
        if network == Network.BITCOIN:
            address = f"bc1qtest{index:04d}"
        else:
            address = keys.derive_address(network, index)
        return store.register_address(merchant_id, network, asset, address, index)

    return _register


@pytest.fixture
def credit(store: CustodyStore) -> Callable[[str], None]:
    """Mark a deposit CREDITED, as the external ledger would."""

    def _credit(deposit_id: str) -> None:
        with store._get_engine().begin() as conn:
            conn.execute(
                deposits.update()
                .where(deposits.c.id == deposit_id)
                .values(status=DepositStatus.CREDITED.value, credited_at=utcnow())
            )

    return _credit

