"""Common shape of an online lookup tier."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..models import LookupTier, PriceTag
from .config import RetryPolicy
from .http import fetch_json
from .retry import CircuitBreaker, call_provider

LOGGER = logging.getLogger(__name__)

Fetcher = Callable[..., Any]


@dataclass(frozen=True)
class TierQuote:
    """A price produced by one tier, before it is cached in the catalog."""

    unit_price: float
    confidence: float
    tag: PriceTag
    raw: Optional[str] = None


class LookupStrategy:
    """
    One stage of the cascade.

    ``is_available`` answers "is this tier configured and healthy"; an
    unavailable tier is skipped, not counted as a failure.  ``lookup``
    returns ``None`` on a miss and may raise on provider errors.
    """

    tier: LookupTier
    name: str = "tier"
    # Whether a hit should be written back to the catalog as an ONLINE observation.
    persists: bool = True

    def is_available(self) -> bool:
        return True

    def lookup(self, material_name: str, unit: str) -> Optional[TierQuote]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class NetworkStrategy(LookupStrategy):
    """A tier backed by an HTTP provider with a timeout and circuit breaker."""

    def __init__(self, retry: RetryPolicy, fetcher: Fetcher | None = None) -> None:
        self.retry = retry
        self.fetcher = fetcher or fetch_json
        self.breaker = CircuitBreaker(retry.circuit_breaker_failures)

    def is_available(self) -> bool:
        if self.breaker.is_open:
            LOGGER.debug("%s skipped; circuit breaker open", self.name)
            return False
        return self.is_configured()

    def is_configured(self) -> bool:
        return True

    def get_json(self, url: str, params: dict | None = None, headers: dict | None = None, *, retry: RetryPolicy | None = None) -> Any:
        policy = retry or self.retry
        return call_provider(
            lambda timeout: self.fetcher(url, timeout, params=params, headers=headers),
            policy=policy,
            provider=self.name,
            logger=LOGGER,
            breaker=self.breaker,
        )


__all__ = ["Fetcher", "LookupStrategy", "NetworkStrategy", "TierQuote"]
