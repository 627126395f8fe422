"""Chain gateway - redundant blockchain data providers."""

from pnl_indexer.gateway.gateway import (
    DEFAULT_DECIMALS,
    DEFAULT_SYMBOL,
    ChainGateway,
    TokenMetadata,
)
from pnl_indexer.gateway.providers import (
    ChainDataProvider,
    GatewayError,
    ProviderError,
    ProviderHealth,
    ProviderUnavailable,
    Web3ChainProvider,
)
from pnl_indexer.gateway.strategies import (
    PriorityFallbackStrategy,
    ProviderStrategy,
    RaceAllStrategy,
    strategy_for,
)

__all__ = [
    "DEFAULT_DECIMALS",
    "DEFAULT_SYMBOL",
    "ChainDataProvider",
    "ChainGateway",
    "GatewayError",
    "PriorityFallbackStrategy",
    "ProviderError",
    "ProviderHealth",
    "ProviderStrategy",
    "ProviderUnavailable",
    "RaceAllStrategy",
    "TokenMetadata",
    "Web3ChainProvider",
    "strategy_for",
]
