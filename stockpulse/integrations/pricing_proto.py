"""
Decoder for the Yahoo streamer's ``PricingData`` protobuf frames.

The schema is small and fixed, so it is described here and registered into a
private descriptor pool at import time instead of shipping generated code.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError as ProtobufDecodeError

from stockpulse.errors import DecodeError
from stockpulse.schemas.quote import MarketHoursType, OptionType, PriceUpdateFrame, QuoteType

_PACKAGE = "stockpulse"
_MESSAGE = "PricingData"

_F = descriptor_pb2.FieldDescriptorProto

# (wire name, field number, proto type, frame attribute, enum)
_FIELDS = (
    ("id", 1, _F.TYPE_STRING, "id", None),
    ("price", 2, _F.TYPE_FLOAT, "price", None),
    ("time", 3, _F.TYPE_SINT64, "time", None),
    ("currency", 4, _F.TYPE_STRING, "currency", None),
    ("exchange", 5, _F.TYPE_STRING, "exchange", None),
    ("quoteType", 6, _F.TYPE_ENUM, "quote_type", QuoteType),
    ("marketHours", 7, _F.TYPE_ENUM, "market_hours", MarketHoursType),
    ("changePercent", 8, _F.TYPE_FLOAT, "change_percent", None),
    ("dayVolume", 9, _F.TYPE_SINT64, "day_volume", None),
    ("dayHigh", 10, _F.TYPE_FLOAT, "day_high", None),
    ("dayLow", 11, _F.TYPE_FLOAT, "day_low", None),
    ("change", 12, _F.TYPE_FLOAT, "change", None),
    ("shortName", 13, _F.TYPE_STRING, "short_name", None),
    ("expireDate", 14, _F.TYPE_SINT64, "expire_date", None),
    ("openPrice", 15, _F.TYPE_FLOAT, "open_price", None),
    ("previousClose", 16, _F.TYPE_FLOAT, "previous_close", None),
    ("strikePrice", 17, _F.TYPE_FLOAT, "strike_price", None),
    ("underlyingSymbol", 18, _F.TYPE_STRING, "underlying_symbol", None),
    ("openInterest", 19, _F.TYPE_SINT64, "open_interest", None),
    ("optionsType", 20, _F.TYPE_ENUM, "options_type", OptionType),
    ("miniOption", 21, _F.TYPE_SINT64, "mini_option", None),
    ("lastSize", 22, _F.TYPE_SINT64, "last_size", None),
    ("bid", 23, _F.TYPE_FLOAT, "bid", None),
    ("bidSize", 24, _F.TYPE_SINT64, "bid_size", None),
    ("ask", 25, _F.TYPE_FLOAT, "ask", None),
    ("askSize", 26, _F.TYPE_SINT64, "ask_size", None),
    ("priceHint", 27, _F.TYPE_SINT64, "price_hint", None),
    ("vol_24hr", 28, _F.TYPE_SINT64, "vol_24hr", None),
    ("volAllCurrencies", 29, _F.TYPE_SINT64, "vol_all_currencies", None),
    ("fromcurrency", 30, _F.TYPE_STRING, "from_currency", None),
    ("lastMarket", 31, _F.TYPE_STRING, "last_market", None),
    ("circulatingSupply", 32, _F.TYPE_DOUBLE, "circulating_supply", None),
    ("marketcap", 33, _F.TYPE_DOUBLE, "market_cap", None),
)


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="stockpulse/pricing_data.proto",
        package=_PACKAGE,
        syntax="proto3",
    )
    message = file_proto.message_type.add(name=_MESSAGE)

    for enum_cls in (QuoteType, OptionType, MarketHoursType):
        enum_proto = message.enum_type.add(name=enum_cls.__name__)
        for member in enum_cls:
            enum_proto.value.add(name=member.name, number=member.value)

    for wire_name, number, proto_type, _, enum_cls in _FIELDS:
        field = message.field.add(
            name=wire_name,
            number=number,
            type=proto_type,
            label=_F.LABEL_OPTIONAL,
        )
        if enum_cls is not None:
            field.type_name = f".{_PACKAGE}.{_MESSAGE}.{enum_cls.__name__}"

    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file_descriptor().SerializeToString())
PricingData = message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{_PACKAGE}.{_MESSAGE}"))


def _float32(value: float) -> float:
    # float fields come back widened from float32; trim the noise (229.1, not 229.10000610351562)
    return float(f"{value:.7g}")


def _base64_text(raw: str | bytes) -> str:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("ascii")
        except UnicodeDecodeError as exc:
            raise DecodeError("frame is not ASCII text") from exc
    if not isinstance(raw, str):
        raise DecodeError("frame must be str or bytes")

    text = raw.strip()
    if text.startswith("{"):
        try:
            envelope = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DecodeError("invalid JSON envelope") from exc
        message = envelope.get("message") if isinstance(envelope, dict) else None
        if not isinstance(message, str):
            raise DecodeError("JSON envelope has no message")
        text = message.strip()
    return text


def frame_from_message(message: Any) -> PriceUpdateFrame:
    values: Dict[str, Any] = {}
    for wire_name, _, proto_type, attribute, _ in _FIELDS:
        value = getattr(message, wire_name)
        if proto_type == _F.TYPE_FLOAT:
            value = _float32(value)
        values[attribute] = value
    return PriceUpdateFrame(**values)


def decode_message(raw: str | bytes) -> PriceUpdateFrame:
    """Decode one base64 streaming frame into a PriceUpdateFrame."""
    text = _base64_text(raw)
    try:
        payload = base64.b64decode(text, validate=True)
    except ValueError as exc:
        raise DecodeError(f"invalid base64 frame: {exc}") from exc

    message = PricingData()
    try:
        message.ParseFromString(payload)
    except ProtobufDecodeError as exc:
        raise DecodeError(f"invalid pricing payload: {exc}") from exc
    return frame_from_message(message)
