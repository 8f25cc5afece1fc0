"""PayPal source readiness checks and client construction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping, Tuple

from .client import (
    PageResult,
    PayPalClient,
    PaymentAPIError,
    PaymentAuthError,
    TransientAPIError,
)

REQUIRED_SETTINGS: Tuple[str, ...] = ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET")

__all__ = [
    "PageResult",
    "PayPalClient",
    "PaymentAPIError",
    "PaymentAuthError",
    "TransientAPIError",
    "PayPalReadiness",
    "check_paypal_readiness",
    "create_paypal_client",
]


@dataclass(frozen=True)
class PayPalReadiness:
    missing_settings: Tuple[str, ...]
    auth_status: Literal["skipped", "ok", "failed"]
    auth_error: str | None = None

    @property
    def status(self) -> str:
        if self.missing_settings:
            return "missing-env"
        if self.auth_status == "failed":
            return "auth-error"
        return "ready"

    def messages(self) -> Tuple[str, ...]:
        messages: list[str] = []
        if self.missing_settings:
            messages.append(f"Missing required PayPal settings: {', '.join(self.missing_settings)}")
        if self.auth_status == "failed" and self.auth_error:
            messages.append(self.auth_error)
        return tuple(messages)

    def as_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "missing_env_vars": list(self.missing_settings),
            "auth_status": self.auth_status,
            "messages": list(self.messages()),
        }


def create_paypal_client(config: Mapping[str, object], **overrides) -> PayPalClient:
    """Build a ``PayPalClient`` from Flask config values."""
    options = {
        "base_url": config.get("PAYPAL_API_BASE") or "https://api-m.paypal.com",
        "timeout": config.get("SYNC_HTTP_TIMEOUT_SECONDS", 30),
        "max_attempts": config.get("SYNC_RETRY_MAX_ATTEMPTS", 4),
        "backoff_seconds": config.get("SYNC_RETRY_BACKOFF_SECONDS", 1),
        "max_backoff_seconds": config.get("SYNC_RETRY_MAX_BACKOFF_SECONDS", 30),
    }
    options.update(overrides)
    return PayPalClient(
        str(config.get("PAYPAL_CLIENT_ID") or ""),
        str(config.get("PAYPAL_CLIENT_SECRET") or ""),
        **options,
    )


def check_paypal_readiness(config: Mapping[str, object], *, require_auth_ping: bool = False) -> PayPalReadiness:
    """
    Non-raising readiness check for the PayPal source.

    With ``require_auth_ping`` the client-credentials exchange is attempted.
    """
    missing = tuple(sorted(name for name in REQUIRED_SETTINGS if not config.get(name)))
    if missing or not require_auth_ping:
        return PayPalReadiness(missing_settings=missing, auth_status="skipped")
    try:
        create_paypal_client(config).get_access_token()
    except PaymentAPIError as exc:
        return PayPalReadiness(missing_settings=(), auth_status="failed", auth_error=str(exc))
    return PayPalReadiness(missing_settings=(), auth_status="ok")
