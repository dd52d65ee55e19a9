from fastapi import APIRouter, HTTPException, Request

from stockpulse.errors import FetchError, ServiceDisposedError, SnapshotUnavailableError
from stockpulse.schemas.quote import QuoteRecord

router = APIRouter()


def _quote_payload(record: QuoteRecord) -> dict:
    payload = record.model_dump(mode='json')
    payload['change'] = record.price.change()
    payload['change_pct'] = record.price.change_pct()
    return payload


@router.get('/quotes/current')
def get_current_quote(request: Request):
    record = request.app.state.quote_service.current
    if record is None:
        raise HTTPException(status_code=404, detail='NO_TRACKED_SYMBOL')
    return _quote_payload(record)


@router.get('/quotes/{symbol}')
def get_quote(symbol: str, request: Request):
    service = request.app.state.quote_service
    try:
        record = service.get_snapshot(symbol)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='SYMBOL_REQUIRED') from exc
    except SnapshotUnavailableError as exc:
        raise HTTPException(status_code=503, detail='SNAPSHOT_UNAVAILABLE') from exc
    except FetchError as exc:
        raise HTTPException(status_code=502, detail='UNEXPECTED_RESPONSE_FORMAT') from exc
    except ServiceDisposedError as exc:
        raise HTTPException(status_code=503, detail='QUOTE_SERVICE_DISPOSED') from exc

    if record is None:
        raise HTTPException(status_code=404, detail='SYMBOL_NOT_FOUND')
    return _quote_payload(record)


@router.get('/metrics/quote')
def quote_metrics(request: Request):
    return request.app.state.quote_service.metrics()
