"""
PayPal Transaction Search client.

Wraps the OAuth client-credentials exchange and the paginated
``/v1/reporting/transactions`` endpoint. Transient failures (timeouts,
connection errors, 429 and 5xx responses) are retried with bounded exponential
backoff; authentication failures propagate immediately. A report window with
no activity is returned as an empty page rather than an error.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from paysync.ingest.pipeline.chunking import format_api_timestamp

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api-m.paypal.com"
TOKEN_PATH = "/v1/oauth2/token"
REPORT_PATH = "/v1/reporting/transactions"
REPORT_FIELDS = "transaction_info,payer_info,cart_info"
# Refresh tokens a little before PayPal expires them.
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)

_NO_DATA_MARKERS = ("NO_DATA", "no transactions", "No data")


class PaymentAPIError(RuntimeError):
    """Base exception for payment API failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PaymentAuthError(PaymentAPIError):
    """Credentials were rejected; retrying cannot help."""


class TransientAPIError(PaymentAPIError):
    """A failure that may succeed on retry (network, rate limit, 5xx)."""


@dataclass(frozen=True)
class PageResult:
    records: list[dict[str, Any]] = field(default_factory=list)
    total_pages: int = 0
    total_items: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.records


class PayPalClient:
    """Thin requests-based client for the PayPal reporting API."""

    source = "paypal"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        base_url: str = DEFAULT_API_BASE,
        session: requests.Session | None = None,
        timeout: float = 30,
        max_attempts: int = 4,
        backoff_seconds: float = 1,
        max_backoff_seconds: float = 30,
        sleep_fn: Callable[[float], None] = time.sleep,
        on_retry: Callable[[], None] | None = None,
    ) -> None:
        if not client_id or not client_secret:
            raise PaymentAuthError("PayPal client credentials are not configured.")
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.sleep_fn = sleep_fn
        self.on_retry = on_retry
        self._access_token: str | None = None
        self._token_expires_at: datetime | None = None

    # ------------------------------------------------------------------
    # Retry plumbing
    # ------------------------------------------------------------------
    def _retrying(self) -> Retrying:
        def _before_sleep(retry_state) -> None:
            before_sleep_log(logger, logging.WARNING)(retry_state)
            if self.on_retry is not None:
                self.on_retry()

        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            retry=retry_if_exception_type(TransientAPIError),
            before_sleep=_before_sleep,
            sleep=self.sleep_fn,
            reraise=True,
        )

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientAPIError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientAPIError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def get_access_token(self, *, force_refresh: bool = False) -> str:
        now = datetime.now(timezone.utc)
        if (
            not force_refresh
            and self._access_token
            and self._token_expires_at is not None
            and now < self._token_expires_at
        ):
            return self._access_token

        response = self._retrying()(
            self._send,
            "POST",
            TOKEN_PATH,
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code in (400, 401, 403):
            raise PaymentAuthError(
                f"PayPal rejected client credentials (HTTP {response.status_code}).",
                status_code=response.status_code,
            )
        if not response.ok:
            raise PaymentAPIError(
                f"PayPal token request failed (HTTP {response.status_code}).",
                status_code=response.status_code,
            )
        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise PaymentAuthError("PayPal token response did not include an access_token.")
        expires_in = int(payload.get("expires_in") or 0)
        self._access_token = token
        self._token_expires_at = now + timedelta(seconds=expires_in) - TOKEN_EXPIRY_MARGIN
        logger.info("PayPal access token acquired", extra={"paypal_token_expires_in": expires_in})
        return token

    # ------------------------------------------------------------------
    # Transaction report
    # ------------------------------------------------------------------
    def fetch_page(self, start: datetime, end: datetime, page: int, page_size: int = 100) -> PageResult:
        """
        Fetch one page of transactions for ``[start, end]``.

        Pages are 1-based. A window with no activity returns an empty
        ``PageResult`` with ``total_pages=0``.
        """
        params = {
            "start_date": format_api_timestamp(start),
            "end_date": format_api_timestamp(end),
            "page_size": page_size,
            "page": page,
            "fields": REPORT_FIELDS,
        }
        response = self._request_report(params)
        if response.status_code == 401:
            # One refresh covers a token that expired between calls.
            response = self._request_report(params, force_refresh=True)

        if response.status_code in (401, 403):
            raise PaymentAuthError(
                f"PayPal rejected the access token (HTTP {response.status_code}).",
                status_code=response.status_code,
            )
        if response.status_code == 404 or _is_no_data(response):
            logger.info(
                "PayPal reported no transactions for window",
                extra={"paypal_start": params["start_date"], "paypal_end": params["end_date"], "paypal_page": page},
            )
            return PageResult(records=[], total_pages=0, total_items=0)
        if not response.ok:
            raise PaymentAPIError(
                f"PayPal report request failed (HTTP {response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )

        payload = response.json()
        records = list(payload.get("transaction_details") or [])
        return PageResult(
            records=records,
            total_pages=int(payload.get("total_pages") or 0),
            total_items=int(payload.get("total_items") or len(records)),
        )

    def _request_report(self, params: Mapping[str, Any], *, force_refresh: bool = False) -> requests.Response:
        token = self.get_access_token(force_refresh=force_refresh)
        return self._retrying()(
            self._send,
            "GET",
            REPORT_PATH,
            params=dict(params),
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )


def _is_no_data(response: requests.Response) -> bool:
    if response.ok or response.status_code >= 500:
        return False
    body = response.text or ""
    return any(marker in body for marker in _NO_DATA_MARKERS)
