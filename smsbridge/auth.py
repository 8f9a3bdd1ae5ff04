"""Shared-token guard for gateway callbacks (DLR, replies, link hits, forwarded SMS)."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import HTTPException, Request

from smsbridge.config import settings
from smsbridge.runtime import get_logger

logger = get_logger("auth")


def presented_token(request: Request) -> Optional[str]:
    """Token from ``?token=``, ``X-Webhook-Token`` or a bearer Authorization header."""
    token = request.query_params.get("token") or request.headers.get("x-webhook-token")
    if token:
        return token
    scheme, _, credentials = (request.headers.get("Authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


async def require_webhook_token(request: Request) -> None:
    expected = settings().WEBHOOK_TOKEN
    if not expected:
        return
    token = presented_token(request)
    if token is None or not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning("Rejected callback on %s: bad or missing webhook token", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid webhook token")
