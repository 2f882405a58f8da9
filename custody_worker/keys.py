"""
HD key derivation for custodial addresses.

Every custodial address is a pure function of (master seed, network, index).
Private keys are derived on demand for a single signing operation and wiped
afterwards; none is ever persisted, cached or logged.
"""

from contextlib import contextmanager
from typing import Iterator, Optional, Union

import structlog
from eth_account import Account
from pydantic import SecretStr
from tronpy.keys import PrivateKey as TronPrivateKey

from .config import NETWORKS
from .errors import ConfigurationError, SeedError, UnsupportedNetworkError
from .models import Network

logger = structlog.get_logger()

Account.enable_unaudited_hdwallet_features()

# Networks with an address encoding implemented here.
DERIVABLE_NETWORKS = (Network.TRON, Network.ETHEREUM)


class SigningKey:
    """
    Ephemeral private key for one custodial address.

    Only valid inside ``KeyDerivationService.signing_material``; the bytes are
    zeroed when the block exits.
    """

    __slots__ = ("network", "index", "address", "_key", "_wiped")

    def __init__(self, network: Network, index: int, address: str, key: bytes):
        self.network = network
        self.index = index
        self.address = address
        self._key = bytearray(key)
        self._wiped = False

    @property
    def wiped(self) -> bool:
        return self._wiped

    def secret(self) -> bytes:
        if self.wiped:
            raise ConfigurationError("signing key used outside its signing scope")
        return bytes(self._key)

    def hex(self) -> str:
        return self.secret().hex()

    def wipe(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0
        self._wiped = True

    def __repr__(self) -> str:
        return f"SigningKey(network={self.network.value}, index={self.index}, address={self.address}, key=***)"

    __str__ = __repr__


class KeyDerivationService:
    """
    Derives addresses and signing keys from the master mnemonic.

    Constructed once at startup and handed to every component that needs it.
    Without a seed the service is unconfigured: detection keeps running but
    derive/sign calls raise ``ConfigurationError``.
    """

    def __init__(
        self,
        master_seed: Union[SecretStr, str, None],
        store=None,
    ):
        if isinstance(master_seed, SecretStr):
            master_seed = master_seed.get_secret_value()
        self._seed = (master_seed or "").strip() or None
        self.store = store

        if self._seed is None:
            logger.critical("master_seed_missing", detail="address derivation and sweeps disabled")
            return

        try:
            self._account_at(f"{NETWORKS[Network.ETHEREUM].derivation_path}/0")
        except Exception:
            raise SeedError("master seed is not a valid BIP-39 mnemonic") from None

        logger.info("key_derivation_ready", networks=[n.value for n in DERIVABLE_NETWORKS])

    @property
    def configured(self) -> bool:
        return self._seed is not None

    def path_for(self, network: Network, index: int) -> str:
        if network not in DERIVABLE_NETWORKS:
            raise UnsupportedNetworkError(getattr(network, "value", str(network)))
        if index < 0:
            raise ValueError(f"derivation index must be non-negative, got {index}")
        return f"{NETWORKS[network].derivation_path}/{index}"

    def _account_at(self, path: str):
        return Account.from_mnemonic(self._seed, account_path=path)

    def _derive(self, network: Network, index: int):
        path = self.path_for(network, index)
        if self._seed is None:
            raise ConfigurationError("master seed not configured")
        return self._account_at(path)

    @staticmethod
    def _encode_address(network: Network, account) -> str:
        if network == Network.TRON:
            return TronPrivateKey(bytes(account.key)).public_key.to_base58check_address()
        return account.address

    def derive_address(self, network: Network, index: int) -> str:
        """Public address at ``index`` on ``network``. Pure for a given seed."""
        account = self._derive(network, index)
        return self._encode_address(network, account)

    @contextmanager
    def signing_material(self, network: Network, index: int) -> Iterator[SigningKey]:
        """
        Yield the private key for one custodial address.

        Usage:
            with keys.signing_material(Network.TRON, 7) as key:
                adapter.transfer_token(key, ...)
        """
        account = self._derive(network, index)
        key = SigningKey(
            network=network,
            index=index,
            address=self._encode_address(network, account),
            key=bytes(account.key),
        )
        del account
        try:
            yield key
        finally:
            key.wipe()

    def verify_address(self, network: Network, index: int, address: str) -> bool:
        """Check that a registered address really sits at ``index``."""
        derived = self.derive_address(network, index)
        if network == Network.ETHEREUM:
            return derived.lower() == address.lower()
        return derived == address

    def allocate_index(self) -> int:
        """Reserve a fresh derivation index from the store's atomic counter."""
        if self.store is None:
            raise ConfigurationError("no store configured for index allocation")
        index = self.store.allocate_derivation_index()
        logger.debug("derivation_index_allocated", index=index)
        return index
