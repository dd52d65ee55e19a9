from datetime import datetime
from enum import IntEnum

from pydantic import BaseModel


class QuoteType(IntEnum):
    NONE = 0
    ALTSYMBOL = 5
    HEARTBEAT = 7
    EQUITY = 8
    INDEX = 9
    MUTUALFUND = 11
    MONEYMARKET = 12
    OPTION = 13
    CURRENCY = 14
    WARRANT = 15
    BOND = 17
    FUTURE = 18
    ETF = 20
    COMMODITY = 23
    ECNQUOTE = 28
    CRYPTOCURRENCY = 41
    INDICATOR = 42
    INDUSTRY = 1000


class OptionType(IntEnum):
    CALL = 0
    PUT = 1


class MarketHoursType(IntEnum):
    PRE_MARKET = 0
    REGULAR_MARKET = 1
    POST_MARKET = 2
    EXTENDED_HOURS_MARKET = 3


class PriceSnapshot(BaseModel):
    current: float = 0.0
    day_high: float = 0.0
    day_low: float = 0.0
    previous_close: float = 0.0
    day_volume: int | None = None
    updated_at: datetime | None = None

    def change(self) -> float | None:
        if not self.previous_close:
            return None
        return self.current - self.previous_close

    def change_pct(self) -> float | None:
        if not self.previous_close:
            return None
        return self.current / self.previous_close * 100 - 100


class QuoteRecord(BaseModel):
    type: str
    symbol: str
    name: str
    timezone: str
    currency: str | None = None
    exchange: str | None = None
    sector: str | None = None
    price: PriceSnapshot


class PriceUpdateFrame(BaseModel):
    """One decoded streaming message. Absent fields keep their zero value."""

    id: str = ""
    price: float = 0.0
    time: int = 0
    currency: str = ""
    exchange: str = ""
    quote_type: int = QuoteType.NONE
    market_hours: int = MarketHoursType.PRE_MARKET
    change_percent: float = 0.0
    day_volume: int = 0
    day_high: float = 0.0
    day_low: float = 0.0
    change: float = 0.0
    short_name: str = ""
    expire_date: int = 0
    open_price: float = 0.0
    previous_close: float = 0.0
    strike_price: float = 0.0
    underlying_symbol: str = ""
    open_interest: int = 0
    options_type: int = OptionType.CALL
    mini_option: int = 0
    last_size: int = 0
    bid: float = 0.0
    bid_size: int = 0
    ask: float = 0.0
    ask_size: int = 0
    price_hint: int = 0
    vol_24hr: int = 0
    vol_all_currencies: int = 0
    from_currency: str = ""
    last_market: str = ""
    circulating_supply: float = 0.0
    market_cap: float = 0.0
