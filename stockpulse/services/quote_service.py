from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

import requests

from stockpulse.errors import (
    AuthError,
    FeedConnectionError,
    ServiceDisposedError,
    SnapshotUnavailableError,
)
from stockpulse.integrations.yahoo_rest import YahooSnapshotClient
from stockpulse.integrations.yahoo_session import YahooSessionBootstrapper
from stockpulse.integrations.yahoo_ws import FeedState, YahooLiveFeed
from stockpulse.schemas.quote import PriceSnapshot, PriceUpdateFrame, QuoteRecord
from stockpulse.schemas.session import Session

logger = logging.getLogger(__name__)

# streamer timestamps are epoch milliseconds; anything below this is read as seconds
_MILLISECONDS_THRESHOLD = 10**11


def frame_timestamp(value: int) -> datetime | None:
    if not value:
        return None
    seconds = value / 1000 if abs(value) >= _MILLISECONDS_THRESHOLD else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def merge_price_update(price: PriceSnapshot, frame: PriceUpdateFrame) -> PriceSnapshot:
    """
    Apply one streaming frame to a price snapshot.

    Zero values in the frame are read as "absent" and keep the last known
    value, including a genuine zero price.
    """
    updates: dict = {}
    if frame.price:
        updates["current"] = frame.price
    if frame.day_high:
        updates["day_high"] = frame.day_high
    if frame.day_low:
        updates["day_low"] = frame.day_low
    if frame.previous_close:
        updates["previous_close"] = frame.previous_close
    if frame.day_volume:
        updates["day_volume"] = frame.day_volume

    updated_at = frame_timestamp(frame.time)
    if updated_at is not None:
        updates["updated_at"] = updated_at

    return price.model_copy(update=updates)


class QuoteService:
    """Session bootstrap -> snapshot -> live feed, for one tracked symbol."""

    def __init__(
        self,
        *,
        bootstrapper,
        snapshot_client,
        live_feed,
        max_attempts: int = 3,
        retry_delay_sec: float = 0.0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.bootstrapper = bootstrapper
        self.snapshot_client = snapshot_client
        self.live_feed = live_feed
        self.max_attempts = max_attempts
        self.retry_delay_sec = retry_delay_sec
        self.sleep_fn = sleep_fn

        self._lock = threading.RLock()
        self._feed_lock = threading.RLock()
        self._session: Session | None = None
        self._record: QuoteRecord | None = None
        self._update_listeners: list[Callable[[QuoteRecord], None]] = []
        self._error_listeners: list[Callable[[FeedConnectionError], None]] = []
        self._disposed = False

        self.bootstraps = 0
        self.retries = 0
        self.merges = 0
        self.not_found = 0

        self.live_feed.set_on_state_change(self.sync_feed_state)

    @property
    def current(self) -> QuoteRecord | None:
        return self._record

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _ensure_session(self) -> Session:
        with self._lock:
            if self._session is not None:
                return self._session

        session = self.bootstrapper.acquire()
        with self._lock:
            if self._disposed:
                raise ServiceDisposedError("quote service disposed")
            self._session = session
            self.bootstraps += 1
        return session

    def invalidate_session(self) -> None:
        with self._lock:
            self._session = None

    def fetch_snapshot(self, symbol: str) -> QuoteRecord | None:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            if self._disposed:
                raise ServiceDisposedError("quote service disposed")
            try:
                session = self._ensure_session()
                return self.snapshot_client.fetch_snapshot(session, symbol)
            except AuthError as exc:
                last_error = exc
                self.invalidate_session()
                logger.warning(
                    "[QUOTE][auth_retry] symbol=%s attempt=%d/%d error=%s",
                    symbol, attempt, self.max_attempts, exc,
                )
            except requests.RequestException as exc:
                last_error = exc
                logger.warning(
                    "[QUOTE][network_retry] symbol=%s attempt=%d/%d error=%s",
                    symbol, attempt, self.max_attempts, exc,
                )

            if attempt < self.max_attempts:
                self.retries += 1
                if self.retry_delay_sec:
                    self.sleep_fn(self.retry_delay_sec)

        logger.error("[QUOTE][snapshot_failed] symbol=%s attempts=%d", symbol, self.max_attempts)
        raise SnapshotUnavailableError(
            f"failed to fetch {symbol} after {self.max_attempts} attempts"
        ) from last_error

    def get_snapshot(self, symbol: str) -> QuoteRecord | None:
        symbol = str(symbol).strip().upper()
        if not symbol:
            raise ValueError("symbol is required")
        if self._disposed:
            raise ServiceDisposedError("quote service disposed")

        record = self.fetch_snapshot(symbol)
        if record is None:
            self.not_found += 1
            logger.warning("[QUOTE][symbol_not_found] symbol=%s", symbol)
            return None

        with self._lock:
            if self._disposed:
                logger.info("[QUOTE][snapshot_discarded] symbol=%s", symbol)
                return None
            self._record = record

        self._notify(record)

        # subscribe and dispose() teardown never interleave
        with self._feed_lock:
            if self._disposed:
                logger.info("[QUOTE][feed_skipped] symbol=%s reason=disposed", symbol)
                return None
            self.live_feed.subscribe(symbol, self._on_frame)
        return record

    def _on_frame(self, frame: PriceUpdateFrame) -> None:
        with self._lock:
            record = self._record
            if self._disposed or record is None or record.symbol != frame.id:
                return
            record = record.model_copy(update={"price": merge_price_update(record.price, frame)})
            self._record = record
            self.merges += 1
        self._notify(record)

    def _notify(self, record: QuoteRecord) -> None:
        with self._lock:
            listeners = list(self._update_listeners)
        for listener in listeners:
            listener(record)

    def on_update(self, callback: Callable[[QuoteRecord], None]) -> Callable[[], None]:
        with self._lock:
            self._update_listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._update_listeners:
                    self._update_listeners.remove(callback)

        return _unsubscribe

    def on_feed_error(self, callback: Callable[[FeedConnectionError], None]) -> Callable[[], None]:
        with self._lock:
            self._error_listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._error_listeners:
                    self._error_listeners.remove(callback)

        return _unsubscribe

    def sync_feed_state(self, *, state: FeedState, symbol: str | None, last_error: str | None) -> None:
        if state != FeedState.DISCONNECTED or not last_error or self._disposed:
            return
        error = FeedConnectionError(f"live feed for {symbol} dropped: {last_error}")
        with self._lock:
            listeners = list(self._error_listeners)
        for listener in listeners:
            listener(error)

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            self._session = None
            self._update_listeners.clear()
            self._error_listeners.clear()
        with self._feed_lock:
            self.live_feed.dispose()
        logger.info("[QUOTE][disposed]")

    def metrics(self) -> dict:
        record = self._record
        metrics = {
            "tracked_symbol": record.symbol if record else None,
            "session_active": self._session is not None,
            "bootstraps": self.bootstraps,
            "retries": self.retries,
            "merges": self.merges,
            "not_found": self.not_found,
            "disposed": self._disposed,
        }
        metrics.update(self.live_feed.metrics())
        return metrics


def build_quote_service(settings) -> QuoteService:
    http = requests.Session()
    return QuoteService(
        bootstrapper=YahooSessionBootstrapper(
            http=http,
            cookie_url=settings.STOCKPULSE_COOKIE_URL,
            crumb_url=settings.STOCKPULSE_CRUMB_URL,
            user_agent=settings.STOCKPULSE_USER_AGENT,
            timeout=settings.STOCKPULSE_HTTP_TIMEOUT_SEC,
        ),
        snapshot_client=YahooSnapshotClient(
            http=http,
            quote_url=settings.STOCKPULSE_QUOTE_URL,
            chart_url=settings.STOCKPULSE_CHART_URL,
            user_agent=settings.STOCKPULSE_USER_AGENT,
            timeout=settings.STOCKPULSE_HTTP_TIMEOUT_SEC,
        ),
        live_feed=YahooLiveFeed(
            ws_url=settings.STOCKPULSE_WS_URL,
            user_agent=settings.STOCKPULSE_USER_AGENT,
        ),
        max_attempts=settings.STOCKPULSE_MAX_ATTEMPTS,
        retry_delay_sec=settings.STOCKPULSE_RETRY_DELAY_SEC,
    )
