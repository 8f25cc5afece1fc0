"""
Request verification for the operator-facing sync and import endpoints.

The ingest blueprint only depends on ``verify(request) -> AuthResult``. The
default verifier checks a shared bearer token; deployments can install their
own callable under ``app.extensions["ingest"]["verifier"]``.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Callable

from flask import Request, current_app


@dataclass(frozen=True)
class AuthResult:
    valid: bool
    identity: str | None = None
    error: str | None = None


Verifier = Callable[[Request], AuthResult]


def verify_bearer_token(request: Request) -> AuthResult:
    expected = current_app.config.get("SYNC_ADMIN_TOKEN")
    if not expected:
        return AuthResult(valid=False, error="SYNC_ADMIN_TOKEN is not configured.")

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return AuthResult(valid=False, error="Missing bearer token.")
    if not hmac.compare_digest(token.strip().encode(), str(expected).encode()):
        return AuthResult(valid=False, error="Invalid token.")
    return AuthResult(valid=True, identity="operator")


def verify(request: Request) -> AuthResult:
    """Run the verifier registered on the ingest extension."""
    state = current_app.extensions.get("ingest", {})
    verifier: Verifier = state.get("verifier") or verify_bearer_token
    return verifier(request)
