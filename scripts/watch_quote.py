from __future__ import annotations

import argparse
from pathlib import Path
import sys
import threading

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from stockpulse.config.logging_config import setup_logging
from stockpulse.config.settings import get_settings
from stockpulse.errors import FeedConnectionError, QuoteFeedError
from stockpulse.schemas.quote import QuoteRecord
from stockpulse.services.quote_service import build_quote_service

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CNY": "¥",
    "INR": "₹",
    "RUB": "₽",
    "KRW": "₩",
}


def format_status_line(record: QuoteRecord) -> str:
    price = record.price
    if record.type == "INDEX":
        currency = ""
    else:
        currency = CURRENCY_SYMBOLS.get(record.currency or "", record.currency or "")

    change_pct = price.change_pct()
    if change_pct is None:
        percent_text = "-"
    elif change_pct > 0:
        percent_text = f"+{change_pct:.2f}"
    else:
        percent_text = f"{change_pct:.2f}"

    return f"{record.symbol} {currency}{price.current:.2f} ({percent_text}%)"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Track one symbol's live quote.")
    parser.add_argument("symbol", help="ticker symbol, e.g. AAPL")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.STOCKPULSE_LOG_LEVEL)
    service = build_quote_service(settings)
    dropped = threading.Event()

    def _on_feed_error(exc: FeedConnectionError) -> None:
        print(f"feed error: {exc}", file=sys.stderr, flush=True)
        dropped.set()

    service.on_update(lambda record: print(format_status_line(record), flush=True))
    service.on_feed_error(_on_feed_error)

    try:
        record = service.get_snapshot(args.symbol)
        if record is None:
            print(f"symbol not found: {args.symbol.upper()}", file=sys.stderr)
            return 1
        dropped.wait()
        return 1
    except QuoteFeedError as exc:
        print(f"failed to fetch {args.symbol.upper()}: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    finally:
        service.dispose()


if __name__ == "__main__":
    sys.exit(main())
