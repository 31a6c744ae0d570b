"""Web-search tiers: pull a currency amount out of result snippets."""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Iterator, List, Optional, Sequence

from ..models import LookupTier, PriceTag
from .base import Fetcher, NetworkStrategy, TierQuote
from .config import FreeSearchConfig, LookupConfig, SearchProviderConfig

LOGGER = logging.getLogger(__name__)

FREE_SEARCH_CONFIDENCE = 0.5
KEYED_SEARCH_CONFIDENCE = 0.55
SNIPPET_LIMIT = 120

_AMOUNT = r"(\d[\d,]*(?:\.\d+)?)"


def currency_pattern(markers: Sequence[str]) -> re.Pattern:
    """Match ``<marker> 12.5`` or ``12.5 <marker>`` for any of ``markers``."""

    alternatives = "|".join(re.escape(m) for m in sorted(markers, key=len, reverse=True))
    return re.compile(
        rf"(?<![A-Za-z])(?:{alternatives})\s*{_AMOUNT}|{_AMOUNT}\s*(?:{alternatives})(?![A-Za-z])",
        re.IGNORECASE,
    )


def extract_price(
    snippets: Iterable[str],
    pattern: re.Pattern,
    min_price: float = 0.0,
    max_price: float = 50000.0,
) -> Optional[tuple]:
    """Return ``(price, snippet)`` for the first amount strictly inside the range."""

    for snippet in snippets:
        if not snippet:
            continue
        for match in pattern.finditer(snippet):
            text = match.group(1) or match.group(2)
            try:
                price = float(text.replace(",", ""))
            except ValueError:
                continue
            if min_price < price < max_price:
                return price, snippet[:SNIPPET_LIMIT]
    return None


class _SnippetSearch(NetworkStrategy):
    confidence = FREE_SEARCH_CONFIDENCE

    def __init__(self, lookup_config: LookupConfig, retry, fetcher: Fetcher | None = None) -> None:
        super().__init__(retry, fetcher)
        self.lookup_config = lookup_config
        self.pattern = currency_pattern(lookup_config.currency_markers)

    def query(self, material_name: str, unit: str) -> str:
        cfg = self.lookup_config
        return f"{material_name} price {cfg.search_region} {cfg.currency} per {unit or 'unit'}"

    def snippets(self, material_name: str, unit: str) -> List[str]:
        raise NotImplementedError

    def lookup(self, material_name: str, unit: str) -> Optional[TierQuote]:
        found = extract_price(
            self.snippets(material_name, unit),
            self.pattern,
            self.lookup_config.min_price,
            self.lookup_config.max_price,
        )
        if found is None:
            return None
        price, snippet = found
        return TierQuote(unit_price=price, confidence=self.confidence, tag=PriceTag(self.tier, self.name), raw=snippet)


def _related_topics(topics: Any) -> Iterator[str]:
    for topic in topics or []:
        if not isinstance(topic, dict):
            continue
        if "Topics" in topic:
            yield from _related_topics(topic["Topics"])
        elif topic.get("Text"):
            yield str(topic["Text"])


class FreeSearchStrategy(_SnippetSearch):
    """Keyless instant-answer API (DuckDuckGo format)."""

    tier = LookupTier.FREE_SEARCH
    name = "duckduckgo"
    confidence = FREE_SEARCH_CONFIDENCE

    def __init__(self, config: FreeSearchConfig, lookup_config: LookupConfig, fetcher: Fetcher | None = None) -> None:
        super().__init__(lookup_config, config.retry, fetcher)
        self.config = config

    def is_configured(self) -> bool:
        return self.config.enabled and bool(self.config.endpoint)

    def snippets(self, material_name: str, unit: str) -> List[str]:
        payload = self.get_json(
            self.config.endpoint,
            params={"q": self.query(material_name, unit), "format": "json", "no_html": 1, "skip_disambig": 1},
        )
        if not isinstance(payload, dict):
            return []
        texts = [str(payload.get(key) or "") for key in ("Answer", "AbstractText", "Definition")]
        texts.extend(_related_topics(payload.get("RelatedTopics")))
        return [t for t in texts if t]


class KeyedSearchStrategy(_SnippetSearch):
    """A search API that needs credentials; unavailable until they are set."""

    tier = LookupTier.KEYED_SEARCH
    confidence = KEYED_SEARCH_CONFIDENCE

    def __init__(self, provider: SearchProviderConfig, lookup_config: LookupConfig, fetcher: Fetcher | None = None) -> None:
        super().__init__(lookup_config, provider.retry, fetcher)
        self.provider = provider
        self.name = provider.name

    def is_configured(self) -> bool:
        return self.provider.configured and bool(self.provider.endpoint)

    def snippets(self, material_name: str, unit: str) -> List[str]:
        query = self.query(material_name, unit)
        provider = self.provider
        if provider.name == "serpapi":
            payload = self.get_json(
                provider.endpoint,
                params={"engine": "google", "q": query, "api_key": provider.api_key, "num": 5},
            )
            results, text_keys = (payload or {}).get("organic_results"), ("title", "snippet")
        elif provider.name == "brave":
            payload = self.get_json(
                provider.endpoint,
                params={"q": query, "count": 5},
                headers={"X-Subscription-Token": provider.api_key},
            )
            results, text_keys = ((payload or {}).get("web") or {}).get("results"), ("title", "description")
        elif provider.name == "google_cse":
            payload = self.get_json(
                provider.endpoint,
                params={"key": provider.api_key, "cx": provider.engine_id, "q": query, "num": 5},
            )
            results, text_keys = (payload or {}).get("items"), ("title", "snippet")
        else:
            raise ValueError(f"Unsupported search provider: {provider.name}")

        texts: List[str] = []
        for item in results or []:
            if isinstance(item, dict):
                texts.append(" ".join(str(item.get(key) or "") for key in text_keys).strip())
        return texts


__all__ = [
    "FreeSearchStrategy",
    "KeyedSearchStrategy",
    "currency_pattern",
    "extract_price",
]
