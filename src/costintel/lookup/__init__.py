"""Online price lookup cascade and its tiers."""

from .base import LookupStrategy, NetworkStrategy, TierQuote
from .cascade import CatalogCacheStrategy, OnlineLookupCascade, default_strategies
from .commodity import CommodityFeedStrategy
from .config import LookupConfig, RetryPolicy, SearchProviderConfig
from .reference import DEFAULT_REFERENCE_PRICES, ReferencePrice, ReferenceTableStrategy
from .search import FreeSearchStrategy, KeyedSearchStrategy

__all__ = [
    "CatalogCacheStrategy",
    "CommodityFeedStrategy",
    "DEFAULT_REFERENCE_PRICES",
    "FreeSearchStrategy",
    "KeyedSearchStrategy",
    "LookupConfig",
    "LookupStrategy",
    "NetworkStrategy",
    "OnlineLookupCascade",
    "ReferencePrice",
    "ReferenceTableStrategy",
    "RetryPolicy",
    "SearchProviderConfig",
    "TierQuote",
    "default_strategies",
]
