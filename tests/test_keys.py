"""
Tests for HD key derivation.

Reference vector: the well-known development mnemonic
"test test ... junk" at m/44'/60'/0'/0/0 is 0xf39F...2266.
"""

import threading

import pytest
from eth_account import Account

from custody_worker.errors import ConfigurationError, SeedError, UnsupportedNetworkError
from custody_worker.keys import KeyDerivationService
from custody_worker.models import Network

from conftest import TEST_MNEMONIC


class TestDeriveAddress:
    """Tests for address derivation."""

    def test_ethereum_reference_vector(self) -> None:
        """Index 0 on Ethereum matches the published development account."""
        keys = KeyDerivationService(TEST_MNEMONIC)

        assert keys.derive_address(Network.ETHEREUM, 0) == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
        assert keys.derive_address(Network.ETHEREUM, 1) == "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

    def test_derivation_is_pure(self) -> None:
        """Two services built from the same seed derive the same addresses."""
        first = KeyDerivationService(TEST_MNEMONIC)
        second = KeyDerivationService(TEST_MNEMONIC)

        for index in (0, 7, 1234):
            assert first.derive_address(Network.TRON, index) == second.derive_address(Network.TRON, index)

    def test_distinct_indices_give_distinct_addresses(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)

        tron = {keys.derive_address(Network.TRON, i) for i in range(5)}
        ethereum = {keys.derive_address(Network.ETHEREUM, i) for i in range(5)}

        assert len(tron) == 5
        assert len(ethereum) == 5

    def test_tron_address_format(self) -> None:
        """TRON addresses are base58check, 34 characters, starting with T."""
        address = KeyDerivationService(TEST_MNEMONIC).derive_address(Network.TRON, 0)

        assert address.startswith("T")
        assert len(address) == 34

    def test_tron_uses_its_own_coin_type(self) -> None:
        """TRON (coin 195) and Ethereum (coin 60) keys differ at the same index."""
        keys = KeyDerivationService(TEST_MNEMONIC)

        with keys.signing_material(Network.TRON, 0) as tron_key:
            tron_secret = tron_key.secret()
        with keys.signing_material(Network.ETHEREUM, 0) as eth_key:
            eth_secret = eth_key.secret()

        assert tron_secret != eth_secret

    def test_paths(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)

        assert keys.path_for(Network.TRON, 5) == "m/44'/195'/0'/0/5"
        assert keys.path_for(Network.ETHEREUM, 5) == "m/44'/60'/0'/0/5"

    def test_unsupported_network(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)

        with pytest.raises(UnsupportedNetworkError):
            keys.derive_address(Network.BITCOIN, 0)

    def test_negative_index_rejected(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)

        with pytest.raises(ValueError):
            keys.derive_address(Network.TRON, -1)

    def test_verify_address(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)
        address = keys.derive_address(Network.ETHEREUM, 3)

        assert keys.verify_address(Network.ETHEREUM, 3, address.lower())
        assert not keys.verify_address(Network.ETHEREUM, 4, address)


class TestSeedHandling:
    """Tests for missing and malformed master seeds."""

    def test_missing_seed_is_unconfigured(self) -> None:
        """Without a seed the service exists but refuses to derive."""
        keys = KeyDerivationService(None)

        assert not keys.configured
        with pytest.raises(ConfigurationError):
            keys.derive_address(Network.TRON, 0)
        with pytest.raises(ConfigurationError):
            with keys.signing_material(Network.TRON, 0):
                pass

    def test_blank_seed_is_unconfigured(self) -> None:
        assert not KeyDerivationService("   ").configured

    def test_invalid_seed_fails_at_construction(self) -> None:
        with pytest.raises(SeedError):
            KeyDerivationService("definitely not a valid bip39 mnemonic phrase at all")


class TestSigningMaterial:
    """Tests for ephemeral signing keys."""

    def test_key_matches_derived_address(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)

        with keys.signing_material(Network.ETHEREUM, 2) as key:
            assert Account.from_key(key.secret()).address == keys.derive_address(Network.ETHEREUM, 2)
            assert key.address == keys.derive_address(Network.ETHEREUM, 2)

    def test_key_is_wiped_on_exit(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)

        with keys.signing_material(Network.TRON, 0) as key:
            assert not key.wiped

        assert key.wiped
        with pytest.raises(ConfigurationError):
            key.secret()

    def test_key_is_wiped_when_block_raises(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)

        with pytest.raises(RuntimeError):
            with keys.signing_material(Network.TRON, 0) as key:
                raise RuntimeError("transfer exploded")

        assert key.wiped

    def test_repr_never_shows_secret(self) -> None:
        keys = KeyDerivationService(TEST_MNEMONIC)

        with keys.signing_material(Network.ETHEREUM, 0) as key:
            secret_hex = key.hex()
            text = repr(key) + str(key)

        assert secret_hex not in text
        assert "***" in text


class TestAllocateIndex:
    """Tests for derivation index allocation."""

    def test_sequential_allocation(self, keys: KeyDerivationService) -> None:
        assert [keys.allocate_index() for _ in range(3)] == [0, 1, 2]

    def test_concurrent_allocation_is_unique(self, keys: KeyDerivationService) -> None:
        """Threads racing on the counter never receive the same index."""
        allocated: list[int] = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(5):
                index = keys.allocate_index()
                with lock:
                    allocated.append(index)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(allocated) == 20
        assert sorted(allocated) == list(range(20))

    def test_allocation_requires_store(self) -> None:
        with pytest.raises(ConfigurationError):
            KeyDerivationService(TEST_MNEMONIC).allocate_index()
