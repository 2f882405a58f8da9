"""
Tests for the command line interface.
"""

import pytest
from typer.testing import CliRunner

from custody_worker import __version__
from custody_worker.cli import app
from custody_worker.db import CustodyStore
from custody_worker.models import Asset

from conftest import TEST_MNEMONIC

runner = CliRunner()


@pytest.fixture
def env(tmp_path, monkeypatch) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("MASTER_SEED", TEST_MNEMONIC)
    return url


def test_version() -> None:
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_derive_prints_path_and_address(env) -> None:
    result = runner.invoke(app, ["derive", "ETHEREUM", "0"])

    assert result.exit_code == 0
    assert "m/44'/60'/0'/0/0" in result.output
    assert "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266" in result.output


def test_new_address_is_idempotent(env) -> None:
    first = runner.invoke(app, ["new-address", "merchant-1", "USDT_TRC20"])
    second = runner.invoke(app, ["new-address", "merchant-1", "USDT_TRC20"])

    assert first.exit_code == 0
    assert second.exit_code == 0
    assert "existing" in second.output

    store = CustodyStore(env)
    record = store.find_address("merchant-1", Asset.USDT_TRC20)
    store.close()
    assert record.derivation_index == 0
    assert record.address in first.output


def test_new_address_for_underivable_network_keeps_index(env) -> None:
    result = runner.invoke(app, ["new-address", "merchant-1", "BTC"])

    assert result.exit_code == 1
    assert "BITCOIN" in result.output

    store = CustodyStore(env)
    assert store.peek_derivation_index() == 0
    assert store.find_address("merchant-1", Asset.BTC) is None
    store.close()


def test_new_address_without_seed_fails_cleanly(env, monkeypatch) -> None:
    monkeypatch.setenv("MASTER_SEED", "")

    result = runner.invoke(app, ["new-address", "merchant-1", "USDT_TRC20"])

    assert result.exit_code == 1
    assert "MASTER_SEED" in result.output

    store = CustodyStore(env)
    assert store.peek_derivation_index() == 0
    store.close()
