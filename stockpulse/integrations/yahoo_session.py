from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from stockpulse.errors import AuthError
from stockpulse.schemas.session import Session

logger = logging.getLogger(__name__)


class YahooSessionBootstrapper:
    """Cookie + crumb acquisition for the public Yahoo Finance endpoints."""

    def __init__(
        self,
        *,
        http: Optional[Any] = None,
        cookie_url: str = "https://fc.yahoo.com/",
        crumb_url: str = "https://query1.finance.yahoo.com/v1/test/getcrumb",
        user_agent: str = "Mozilla/5.0",
        timeout: float = 5.0,
    ) -> None:
        self.http = http or requests
        self.cookie_url = cookie_url
        self.crumb_url = crumb_url
        self.user_agent = user_agent
        self.timeout = timeout

    def fetch_session_token(self) -> str:
        # fc.yahoo.com answers 404 but still sets the cookie, so the status is ignored
        response = self.http.get(
            self.cookie_url,
            headers={"User-Agent": self.user_agent},
            timeout=self.timeout,
        )
        raw_cookie = response.headers.get("set-cookie") or ""
        token = raw_cookie.split(";", 1)[0].strip()
        if not token:
            logger.warning("[AUTH][cookie_missing] status=%s", response.status_code)
        return token

    def fetch_crumb(self, session_token: str) -> str:
        if not session_token:
            raise AuthError("session token not set")

        response = self.http.get(
            self.crumb_url,
            headers={"Cookie": session_token, "User-Agent": self.user_agent},
            timeout=self.timeout,
        )
        if not 200 <= response.status_code < 300:
            raise AuthError(f"crumb request failed: status={response.status_code}")

        crumb = response.text
        if not crumb:
            raise AuthError("crumb response was empty")
        return crumb

    def acquire(self) -> Session:
        token = self.fetch_session_token()
        crumb = self.fetch_crumb(token)
        logger.info("[AUTH][session_acquired] cookie_len=%d", len(token))
        return Session(session_token=token, crumb=crumb)
