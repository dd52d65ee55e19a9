from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from stockpulse.errors import AuthError, FetchError
from stockpulse.schemas.quote import PriceSnapshot, QuoteRecord
from stockpulse.schemas.session import Session

logger = logging.getLogger(__name__)

_QUOTE_MODULES = "quoteType,summaryDetail,assetProfile"


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value) or default
    except (TypeError, ValueError):
        return default


def _to_int_or_none(value: Any) -> int | None:
    try:
        if value is None or value == "":
            return None
        return int(value) or None
    except (TypeError, ValueError):
        return None


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


def _section(container: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = container.get(key)
    return value if isinstance(value, dict) else {}


def _first_result(payload: Any, root: str) -> Dict[str, Any]:
    container = payload.get(root) if isinstance(payload, dict) else None
    results = container.get("result") if isinstance(container, dict) else None
    if not isinstance(results, list) or not results or not isinstance(results[0], dict):
        raise FetchError("unexpected response format")
    return results[0]


def extract_name(quote_type: Dict[str, Any]) -> str:
    """longName, else shortName, else empty string."""
    return _first_text(quote_type.get("longName"), quote_type.get("shortName")) or ""


def extract_timezone(quote_type: Dict[str, Any], meta: Dict[str, Any]) -> str:
    """timeZoneFullName, else the chart's exchange timezone, else empty string."""
    return _first_text(quote_type.get("timeZoneFullName"), meta.get("exchangeTimezoneName")) or ""


def extract_currency(summary: Dict[str, Any]) -> str | None:
    return _first_text(summary.get("currency"))


def extract_exchange(meta: Dict[str, Any]) -> str | None:
    """fullExchangeName, else exchangeName, else None."""
    return _first_text(meta.get("fullExchangeName"), meta.get("exchangeName"))


def extract_sector(profile: Dict[str, Any]) -> str | None:
    return _first_text(profile.get("sector"))


def extract_updated_at(meta: Dict[str, Any]) -> datetime | None:
    seconds = _to_int_or_none(meta.get("regularMarketTime"))
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_snapshot(quote_payload: Any, chart_payload: Any, symbol: str) -> QuoteRecord:
    """Build one QuoteRecord out of the quoteSummary and chart payloads."""
    quote_result = _first_result(quote_payload, "quoteSummary")
    chart_result = _first_result(chart_payload, "chart")

    quote_type = _section(quote_result, "quoteType")
    summary = _section(quote_result, "summaryDetail")
    profile = _section(quote_result, "assetProfile")
    meta = _section(chart_result, "meta")

    return QuoteRecord(
        type=_first_text(quote_type.get("quoteType")) or "",
        symbol=symbol.strip().upper(),
        name=extract_name(quote_type),
        timezone=extract_timezone(quote_type, meta),
        currency=extract_currency(summary),
        exchange=extract_exchange(meta),
        sector=extract_sector(profile),
        price=PriceSnapshot(
            current=_to_float(meta.get("regularMarketPrice")),
            day_high=_to_float(summary.get("dayHigh")),
            day_low=_to_float(summary.get("dayLow")),
            previous_close=_to_float(summary.get("regularMarketPreviousClose")),
            day_volume=_to_int_or_none(meta.get("regularMarketVolume")),
            updated_at=extract_updated_at(meta),
        ),
    )


class YahooSnapshotClient:
    """quoteSummary + chart snapshot client. Returns None for unknown symbols."""

    def __init__(
        self,
        *,
        http: Optional[Any] = None,
        quote_url: str = "https://query2.finance.yahoo.com/v10/finance/quoteSummary/",
        chart_url: str = "https://query2.finance.yahoo.com/v8/finance/chart/",
        user_agent: str = "Mozilla/5.0",
        timeout: float = 5.0,
    ) -> None:
        self.http = http or requests
        self.quote_url = quote_url
        self.chart_url = chart_url
        self.user_agent = user_agent
        self.timeout = timeout

    def _get_json(self, url: str, session: Session, params: Dict[str, str]) -> Any:
        response = self.http.get(
            url,
            headers={"Cookie": session.session_token, "User-Agent": self.user_agent},
            params={"crumb": session.crumb, **params},
            timeout=self.timeout,
        )
        status = response.status_code
        if status == 404:
            return None
        if status in (401, 403):
            raise AuthError(f"request rejected: status={status}")
        if status == 429 or status >= 500:
            raise requests.HTTPError(f"transient status {status}", response=response)
        if not 200 <= status < 300:
            raise FetchError(f"unexpected status {status}")

        try:
            return response.json()
        except ValueError as exc:
            raise FetchError("unexpected response format") from exc

    def fetch_quote_summary(self, session: Session, symbol: str) -> Any:
        return self._get_json(
            f"{self.quote_url}{symbol}",
            session,
            {
                "modules": _QUOTE_MODULES,
                "corsDomain": "finance.yahoo.com",
                "formatted": "false",
                "symbol": symbol,
            },
        )

    def fetch_chart(self, session: Session, symbol: str) -> Any:
        return self._get_json(
            f"{self.chart_url}{symbol}",
            session,
            {"range": "1d", "interval": "1d", "includePrePost": "false"},
        )

    def fetch_snapshot(self, session: Session, symbol: str) -> QuoteRecord | None:
        symbol = symbol.strip().upper()

        quote_payload = self.fetch_quote_summary(session, symbol)
        if quote_payload is None:
            logger.info("[REST][not_found] symbol=%s endpoint=quoteSummary", symbol)
            return None

        chart_payload = self.fetch_chart(session, symbol)
        if chart_payload is None:
            logger.info("[REST][not_found] symbol=%s endpoint=chart", symbol)
            return None

        record = parse_snapshot(quote_payload, chart_payload, symbol)
        logger.info("[REST][snapshot] symbol=%s price=%s", record.symbol, record.price.current)
        return record
