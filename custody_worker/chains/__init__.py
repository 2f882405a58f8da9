"""
Blockchain adapters, one per supported network.
"""

import structlog

from ..config import WorkerConfig
from ..models import Network
from .base import ChainAdapter
from .ethereum import EthereumAdapter
from .tron import TronAdapter

logger = structlog.get_logger()


def build_adapters(config: WorkerConfig) -> dict[Network, ChainAdapter]:
    """Create an adapter for every network with a configured provider."""
    settings = config.settings
    adapters: dict[Network, ChainAdapter] = {}

    if settings.tron_full_host:
        adapters[Network.TRON] = TronAdapter(config)
    else:
        logger.warning("tron_adapter_disabled", reason="TRON_FULL_HOST not set")

    if settings.ethereum_rpc_url:
        adapters[Network.ETHEREUM] = EthereumAdapter(config)
    else:
        logger.warning("ethereum_adapter_disabled", reason="ETHEREUM_RPC_URL not set")

    return adapters


__all__ = ["ChainAdapter", "EthereumAdapter", "TronAdapter", "build_adapters"]
