import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field

_DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_10_1) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/39.0.2171.95 Safari/537.36"
)


class Settings(BaseModel):
    STOCKPULSE_COOKIE_URL: str = "https://fc.yahoo.com/"
    STOCKPULSE_CRUMB_URL: str = "https://query1.finance.yahoo.com/v1/test/getcrumb"
    STOCKPULSE_QUOTE_URL: str = "https://query2.finance.yahoo.com/v10/finance/quoteSummary/"
    STOCKPULSE_CHART_URL: str = "https://query2.finance.yahoo.com/v8/finance/chart/"
    STOCKPULSE_WS_URL: str = "wss://streamer.finance.yahoo.com/"
    STOCKPULSE_USER_AGENT: str = _DEFAULT_USER_AGENT
    STOCKPULSE_HTTP_TIMEOUT_SEC: float = Field(default=5.0, gt=0)
    STOCKPULSE_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    STOCKPULSE_RETRY_DELAY_SEC: float = Field(default=0.0, ge=0)
    STOCKPULSE_SYMBOL: str | None = None
    STOCKPULSE_LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {name: os.getenv(name) for name in cls.model_fields}
        values = {name: value for name, value in raw.items() if value is not None and value.strip()}

        if "STOCKPULSE_SYMBOL" in values:
            values["STOCKPULSE_SYMBOL"] = values["STOCKPULSE_SYMBOL"].strip().upper()
        if "STOCKPULSE_LOG_LEVEL" in values:
            values["STOCKPULSE_LOG_LEVEL"] = values["STOCKPULSE_LOG_LEVEL"].strip().upper()

        return cls.model_validate(values)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
