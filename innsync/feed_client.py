from __future__ import annotations

import logging
import time
from typing import Callable

import requests

from innsync.errors import FeedFetchError
from innsync.models import FetchConfig


logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class FeedClient:
    """Downloads ICS bodies with a bounded timeout and one retry on transient failure."""

    def __init__(
        self,
        config: FetchConfig,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self._sleep = sleep

    def _get_once(self, url: str) -> str:
        try:
            response = self.session.get(
                url,
                headers={
                    "User-Agent": self.config.user_agent,
                    "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.5",
                },
                timeout=self.config.timeout_seconds,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise FeedFetchError(f"{type(exc).__name__}: {exc}", transient=True) from exc
        except requests.RequestException as exc:
            raise FeedFetchError(f"{type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise FeedFetchError(
                f"HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
                transient=response.status_code in TRANSIENT_STATUS_CODES,
            )
        if response.encoding is None:
            response.encoding = "utf-8"
        return response.text

    def fetch(self, url: str) -> str:
        try:
            return self._get_once(url)
        except FeedFetchError as exc:
            if not exc.transient:
                raise
            logger.warning(
                "Transient failure fetching %s (%s); retrying in %.1fs",
                url,
                exc,
                self.config.retry_backoff_seconds,
            )
        self._sleep(self.config.retry_backoff_seconds)
        return self._get_once(url)
