# smsbridge/gateway_client.py
"""
SMS Gateway (TransmitSMS) transport
- Form-encoded requests, JSON responses, HTTP Basic key:secret
- Every failure raises GatewayError carrying status, body and payload
- TRANSMITSMS_DRY_RUN=1 short-circuits sends with a fake message id
"""

from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional

import httpx

from smsbridge.config import MAX_MESSAGE_LENGTH, TRACKED_LINK_TOKEN, Settings, settings
from smsbridge.errors import GatewayError
from smsbridge.runtime import get_logger

logger = get_logger("gateway_client")

DRY_RUN = os.getenv("TRANSMITSMS_DRY_RUN", "0").lower() in ("1", "true", "yes")
SENDER_ID_GROUPS = ("Virtual Number", "Business Name", "Mobile Number")


def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _extract_error_body(resp: httpx.Response) -> Any:
    """Parse JSON body if available; fallback to plain text."""
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("description") or err.get("code") or err)
        for key in ("message", "error", "detail", "description"):
            value = body.get(key)
            if _has_value(value):
                return str(value)
        return str(body)
    return str(body)


def validate_send_payload(payload: Dict[str, Any]) -> None:
    """Ensure required send fields are present and sane."""
    problems: List[str] = []
    if not _has_value(payload.get("to")):
        problems.append("to is required")
    message = payload.get("message")
    if not _has_value(message):
        problems.append("message is required")
    elif len(str(message)) > MAX_MESSAGE_LENGTH:
        problems.append(f"message exceeds {MAX_MESSAGE_LENGTH} characters")
    if _has_value(message) and TRACKED_LINK_TOKEN in str(message) and not _has_value(payload.get("tracked_link_url")):
        problems.append("tracked_link_url is required when the message contains [tracked-link]")
    if problems:
        raise GatewayError("Invalid SMS payload: " + "; ".join(problems), status_code=400, payload=dict(payload))


class GatewayClient:
    """Stateless wrapper over the gateway's send and status endpoints."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self._config = config
        self._transport = transport

    @property
    def config(self) -> Settings:
        return self._config or settings()

    async def _request(self, method: str, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        cfg = self.config
        url = f"{cfg.TRANSMITSMS_BASE_URL}{endpoint}"
        params = {k: v for k, v in (data or {}).items() if v is not None}
        async with httpx.AsyncClient(
            timeout=cfg.HTTP_TIMEOUT_SEC,
            transport=self._transport,
            auth=httpx.BasicAuth(self.api_key, self.api_secret),
        ) as client:
            try:
                if method == "GET":
                    resp = await client.get(url, params=params, headers={"Accept": "application/json"})
                else:
                    resp = await client.post(url, data=params, headers={"Accept": "application/json"})
            except httpx.TimeoutException as exc:
                raise GatewayError(f"Gateway timeout on {endpoint}", payload=params) from exc
            except httpx.HTTPError as exc:
                raise GatewayError(f"Gateway unreachable on {endpoint}: {exc}", payload=params) from exc

        if resp.status_code == 429:
            raise GatewayError(
                f"429 rate limited; retry_after={resp.headers.get('Retry-After')}",
                status_code=429,
                body=resp.headers.get("Retry-After"),
                payload=params,
            )
        if resp.is_error:
            body = _extract_error_body(resp)
            summary = _summarize_error_body(body)
            message = f"Gateway HTTP {resp.status_code}"
            if summary:
                message = f"{message}: {summary}"
            logger.error("%s on %s", message, endpoint)
            raise GatewayError(message, status_code=resp.status_code, body=body, payload=params)

        try:
            body = resp.json()
        except ValueError:
            raise GatewayError(f"Gateway returned non-JSON body on {endpoint}", status_code=502, body=resp.text)
        err = body.get("error") if isinstance(body, dict) else None
        if isinstance(err, dict) and err.get("code") not in (None, "SUCCESS"):
            raise GatewayError(
                f"Gateway error {err.get('code')}: {err.get('description') or ''}".strip(),
                status_code=400,
                body=body,
                payload=params,
            )
        return body

    # ------------------------------------------------------------------ sending
    async def send_sms(
        self,
        to: str,
        message: str,
        *,
        sender: Optional[str] = None,
        validity: Optional[int] = None,
        dlr_callback: Optional[str] = None,
        reply_callback: Optional[str] = None,
        link_hits_callback: Optional[str] = None,
        tracked_link_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send one SMS. ``validity`` is in minutes. Returns the decoded body."""
        payload: Dict[str, Any] = {
            "to": to,
            "message": message,
            "from": sender or None,
            "validity": validity,
            "dlr_callback": dlr_callback,
            "reply_callback": reply_callback,
            "link_hits_callback": link_hits_callback,
            "tracked_link_url": tracked_link_url,
        }
        validate_send_payload(payload)
        if DRY_RUN:
            logger.info("[DRY RUN] send-sms to=%s len=%s", to, len(message))
            return {"message_id": f"dry_{int(time.time() * 1000)}", "error": {"code": "SUCCESS"}}

        body = await self._request("POST", "/send-sms.json", payload)
        if not _has_value(body.get("message_id")):
            raise GatewayError("Gateway response missing message_id", status_code=502, body=body, payload=payload)
        return body

    # ------------------------------------------------------------------- status
    async def get_sender_ids(self) -> List[Dict[str, str]]:
        body = await self._request("GET", "/get-sender-ids.json")
        groups = ((body.get("result") or {}).get("caller_ids")) or {}
        out: List[Dict[str, str]] = []
        for group in SENDER_ID_GROUPS:
            values = groups.get(group) or []
            if isinstance(values, dict):
                values = list(values.values())
            for value in values:
                out.append({"type": group, "value": str(value)})
        return out

    async def get_sms_responses(self, message_id: str, page: int = 1, max_results: int = 100) -> Dict[str, Any]:
        return await self._request(
            "GET", "/get-sms-responses.json", {"message_id": message_id, "page": page, "max": max_results}
        )

    async def get_delivery_status(self, message_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/get-delivery-status.json", {"message_id": message_id})

    async def get_balance(self) -> Dict[str, Any]:
        return await self._request("GET", "/get-balance.json")

    async def edit_number_options(self, number: str, forward_url: str) -> Dict[str, Any]:
        logger.info("Configuring forward URL for %s", number)
        return await self._request("GET", "/edit-number-options.json", {"number": number, "forward_url": forward_url})
