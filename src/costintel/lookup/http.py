"""Minimal JSON-over-HTTP helper shared by the lookup tiers."""
from __future__ import annotations

import json
from typing import Any, Mapping, Optional
from urllib.parse import urlencode
from urllib.request import Request, urlopen

USER_AGENT = "Mozilla/5.0 (compatible; costintel-price-lookup)"


class MalformedResponse(ValueError):
    """Raised when a provider answers with something that is not JSON."""


def build_request(url: str, params: Optional[Mapping[str, Any]] = None, headers: Optional[Mapping[str, str]] = None) -> Request:
    if params:
        query = urlencode({k: v for k, v in params.items() if v is not None})
        url = f"{url}{'&' if '?' in url else '?'}{query}"
    merged = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    merged.update(headers or {})
    return Request(url, headers=merged)


def fetch_json(
    url: str,
    timeout: float,
    params: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> Any:
    request = build_request(url, params, headers)
    with urlopen(request, timeout=timeout) as response:
        body = response.read().decode("utf-8", errors="ignore")
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedResponse(f"Non-JSON response from {url}: {body[:80]!r}") from exc


__all__ = ["MalformedResponse", "build_request", "fetch_json"]
