from __future__ import annotations

import json
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from stockpulse.errors import DecodeError
from stockpulse.integrations.pricing_proto import decode_message
from stockpulse.schemas.quote import PriceUpdateFrame

logger = logging.getLogger(__name__)


class FeedState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"


class YahooLiveFeed:
    """
    Single-symbol Yahoo streamer connection.

    DISCONNECTED -> subscribe() -> CONNECTING -> open -> SUBSCRIBED
    -> close/error -> DISCONNECTED. A new subscribe() replaces the current
    connection; nothing reconnects on its own.
    """

    def __init__(
        self,
        *,
        ws_url: str = "wss://streamer.finance.yahoo.com/",
        user_agent: str = "Mozilla/5.0",
        websocket_app_factory: Optional[Callable[..., Any]] = None,
        on_state_change: Optional[Callable[..., None]] = None,
        close_timeout_sec: float = 2.0,
    ) -> None:
        self.ws_url = ws_url
        self.user_agent = user_agent
        self.close_timeout_sec = close_timeout_sec
        self._websocket_app_factory = websocket_app_factory or self._default_websocket_app_factory
        self._on_state_change = on_state_change

        self._lock = threading.RLock()
        self._generation = 0
        self._ws_app: Any = None
        self._thread: threading.Thread | None = None
        self._on_update: Callable[[PriceUpdateFrame], None] | None = None

        self.state = FeedState.DISCONNECTED
        self.symbol: str | None = None
        self.last_error: str | None = None
        self.messages = 0
        self.decode_errors = 0
        self.dropped_frames = 0
        self.last_message_ts: int | None = None

    def _default_websocket_app_factory(self, *args: Any, **kwargs: Any) -> Any:
        from websocket import WebSocketApp

        return WebSocketApp(*args, **kwargs)

    def set_on_state_change(self, callback: Callable[..., None]) -> None:
        self._on_state_change = callback

    def _emit_state(self) -> None:
        if self._on_state_change is None:
            return
        self._on_state_change(state=self.state, symbol=self.symbol, last_error=self.last_error)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _transition(self, generation: int, state: FeedState, error: str | None = None) -> None:
        with self._lock:
            if not self._is_current(generation) or self.state == state:
                return
            self.state = state
            if error is not None:
                self.last_error = error
        self._emit_state()

    @staticmethod
    def build_subscribe_message(symbol: str) -> Dict[str, Any]:
        return {"subscribe": [symbol]}

    def handle_raw_message(self, payload: str | bytes) -> PriceUpdateFrame | None:
        self.messages += 1
        self.last_message_ts = int(time.time())
        try:
            frame = decode_message(payload)
        except DecodeError as exc:
            self.decode_errors += 1
            logger.warning("[WS][ws_message_skip] reason=%s", exc)
            return None

        if frame.id != self.symbol:
            self.dropped_frames += 1
            logger.debug("[WS][ws_frame_drop] id=%s subscribed=%s", frame.id, self.symbol)
            return None

        if self._on_update is not None:
            self._on_update(frame)
        return frame

    def subscribe(
        self,
        symbol: str,
        on_update: Callable[[PriceUpdateFrame], None],
        *,
        background: bool = True,
    ) -> Any:
        self.dispose()

        with self._lock:
            self._generation += 1
            generation = self._generation
            self.symbol = symbol
            self._on_update = on_update
            self.last_error = None
            self.state = FeedState.CONNECTING
        self._emit_state()
        logger.info("[WS][ws_connect] url=%s symbol=%s", self.ws_url, symbol)

        def _on_open(ws: Any) -> None:
            if not self._is_current(generation):
                return
            ws.send(json.dumps(self.build_subscribe_message(symbol)))
            logger.info("[WS][ws_subscribe] symbol=%s", symbol)
            self._transition(generation, FeedState.SUBSCRIBED)

        def _on_message(_: Any, raw_message: Any) -> None:
            if not self._is_current(generation):
                return
            self.handle_raw_message(raw_message)

        def _on_error(_: Any, error: Any) -> None:
            if not self._is_current(generation):
                return
            logger.error("[WS][ws_error] symbol=%s error=%s", symbol, error)
            self._transition(generation, FeedState.DISCONNECTED, error=str(error))

        def _on_close(_: Any, code: Any, reason: Any) -> None:
            if not self._is_current(generation):
                return
            logger.warning("[WS][ws_close] symbol=%s code=%s reason=%s", symbol, code, reason)
            self._transition(generation, FeedState.DISCONNECTED, error=f"closed code={code} reason={reason}")

        ws_app = self._websocket_app_factory(
            self.ws_url,
            header={"User-Agent": self.user_agent},
            on_open=_on_open,
            on_message=_on_message,
            on_error=_on_error,
            on_close=_on_close,
        )

        def _run() -> None:
            try:
                ws_app.run_forever()
            except Exception as exc:
                logger.exception("[WS][ws_run_failed] symbol=%s", symbol)
                self._transition(generation, FeedState.DISCONNECTED, error=str(exc))
                return
            self._transition(generation, FeedState.DISCONNECTED, error="connection ended")

        with self._lock:
            self._ws_app = ws_app
            if background:
                self._thread = threading.Thread(target=_run, daemon=True, name=f"yahoo-ws-{symbol}")

        if background:
            self._thread.start()
        else:
            _run()
        return ws_app

    def dispose(self) -> None:
        with self._lock:
            ws_app, thread = self._ws_app, self._thread
            was_active = self.state != FeedState.DISCONNECTED
            self._ws_app = None
            self._thread = None
            self._generation += 1
            self.state = FeedState.DISCONNECTED

        if ws_app is not None:
            ws_app.close()
            logger.info("[WS][ws_dispose] symbol=%s", self.symbol)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.close_timeout_sec)
        if was_active:
            self._emit_state()

    def metrics(self) -> dict:
        return {
            "feed_state": self.state.value,
            "feed_symbol": self.symbol,
            "feed_messages": self.messages,
            "feed_decode_errors": self.decode_errors,
            "feed_dropped_frames": self.dropped_frames,
            "feed_last_error": self.last_error,
            "feed_last_message_ts": self.last_message_ts,
        }
