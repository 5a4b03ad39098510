from __future__ import annotations

import json
import logging
import math
import urllib.error
import urllib.request
from datetime import datetime
from typing import Any

from .config import FeedSettings
from .models import PricePoint
from .state import now_iso

logger = logging.getLogger(__name__)


class MarketFeedError(RuntimeError):
    pass


def read_path(data: Any, path: str) -> Any:
    if not path:
        return data
    current = data
    for part in (p for p in path.split(".") if p):
        if isinstance(current, list):
            if not part.isdigit() or int(part) >= len(current):
                return None
            current = current[int(part)]
            continue
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def fetch_price(url: str, field: str, timeout_seconds: float = 10.0) -> float:
    req = urllib.request.Request(url=url, method="GET")
    req.add_header("Accept", "application/json")
    req.add_header("User-Agent", "autobot/1.0")
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as response:
            raw = response.read()
    except urllib.error.HTTPError as exc:
        raise MarketFeedError(f"Price feed error ({exc.code})") from exc
    except (urllib.error.URLError, TimeoutError) as exc:
        reason = getattr(exc, "reason", exc)
        raise MarketFeedError(f"Price feed network error: {reason}") from exc

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MarketFeedError(f"Price feed returned invalid JSON from {url}") from exc

    price = as_number(read_path(data, field))
    if price is None or price <= 0:
        raise MarketFeedError(f"Invalid price from feed at field '{field}'")
    return price


class HttpMarketFeed:
    def __init__(self, settings: FeedSettings):
        self.settings = settings

    def fetch_point(self, now: datetime | None = None) -> PricePoint:
        s = self.settings
        price = fetch_price(s.price_feed_url, s.price_field, s.timeout_seconds)
        index_price = None
        if s.index_feed_url and s.index_price_field:
            index_price = fetch_price(s.index_feed_url, s.index_price_field, s.timeout_seconds)
        logger.debug("Sampled price=%s index=%s", price, index_price)
        return PricePoint(price=price, index_price=index_price, fetched_at=now_iso(now))
