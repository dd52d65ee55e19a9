from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI

from stockpulse.api.routes import router
from stockpulse.config.logging_config import setup_logging
from stockpulse.config.settings import get_settings
from stockpulse.errors import QuoteFeedError
from stockpulse.services.quote_service import build_quote_service

logger = logging.getLogger(__name__)


def _track_startup_symbol(app: FastAPI, symbol: str) -> None:
    try:
        record = app.state.quote_service.get_snapshot(symbol)
    except QuoteFeedError as exc:
        logger.error("[QUOTE][startup_track_failed] symbol=%s error=%s", symbol, exc)
        return
    if record is None:
        logger.warning("[QUOTE][startup_symbol_not_found] symbol=%s", symbol)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.get_settings()
    setup_logging(settings.STOCKPULSE_LOG_LEVEL)

    worker = None
    if settings.STOCKPULSE_SYMBOL:
        worker = threading.Thread(
            target=_track_startup_symbol,
            args=(app, settings.STOCKPULSE_SYMBOL),
            daemon=True,
            name='quote-startup',
        )
        app.state.startup_worker_thread = worker
        logger.info("[QUOTE][startup_track] symbol=%s", settings.STOCKPULSE_SYMBOL)
        worker.start()

    try:
        yield
    finally:
        app.state.quote_service.dispose()
        if worker is not None:
            worker.join(timeout=1.0)


app = FastAPI(title="StockPulse Quote Feed", version="0.1.0", lifespan=lifespan)
app.include_router(router, prefix="/v1")

app.state.get_settings = get_settings
app.state.quote_service = build_quote_service(get_settings())
