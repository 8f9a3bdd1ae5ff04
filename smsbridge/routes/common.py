"""Request parsing, service access and error mapping shared by the routers."""

from __future__ import annotations

import html
import json
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from smsbridge.context import AppContext
from smsbridge.errors import (
    BridgeError,
    InvariantViolation,
    NotFoundError,
    ReauthRequired,
    UpstreamError,
    ValidationError,
)
from smsbridge.runtime import get_logger

logger = get_logger("routes")

REAUTH_COUNTDOWN_SEC = 5

REAUTH_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Re-authorization required</title></head>
<body>
<h2>Re-authorization required</h2>
<p>{message}</p>
<p>Redirecting in <span id="countdown">{seconds}</span> seconds...
<a href="{url}">Continue now</a></p>
<script>
var left = {seconds};
var timer = setInterval(function () {{
  left -= 1;
  document.getElementById("countdown").textContent = left;
  if (left <= 0) {{ clearInterval(timer); window.location.href = {url_js}; }}
}}, 1000);
</script>
</body>
</html>
"""


class NotifyPayload(BaseModel):
    """Platform notify body: a page of contact (or custom object) records."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    items: List[Dict[str, Any]] = Field(default_factory=list)
    execution_id: Optional[str] = Field(default=None, alias="executionId")
    offset: Optional[int] = None
    total_results: Optional[int] = Field(default=None, alias="totalResults")


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


async def parse_body(request: Request) -> Dict[str, Any]:
    """Parse request body supporting both JSON and form data."""
    content_type = request.headers.get("content-type", "").lower()
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            return {k: (v if isinstance(v, str) else str(v)) for k, v in form.items()}
        body = await request.json()
        return dict(body) if isinstance(body, dict) else {"items": body} if isinstance(body, list) else {}
    except ValueError:
        logger.warning("Failed to parse request body (content-type=%s)", content_type)
        raise HTTPException(status_code=422, detail="Invalid payload")


def merged_params(request: Request, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Body fields overlaid by query parameters."""
    data: Dict[str, Any] = dict(body or {})
    data.update(request.query_params)
    return data


def param(request: Request, *names: str, body: Optional[Dict[str, Any]] = None, required: bool = True) -> Optional[str]:
    for name in names:
        value = request.query_params.get(name)
        if value in (None, "") and body:
            value = body.get(name)
        if value not in (None, ""):
            return str(value)
    if required:
        raise ValidationError(f"{names[0]} is required")
    return None


def execution_id(request: Request, payload: NotifyPayload) -> Optional[str]:
    return (
        request.query_params.get("executionId")
        or request.query_params.get("execution")
        or payload.execution_id
        or None
    )


def wants_json(request: Request) -> bool:
    if request.headers.get("x-requested-with", "").lower() == "xmlhttprequest":
        return True
    return "json" in request.headers.get("accept", "").lower()


def reauth_response(request: Request, exc: ReauthRequired):
    logger.warning("Re-authorization required for %s: %s", exc.install_id, exc)
    if wants_json(request):
        return JSONResponse(status_code=401, content=exc.to_dict())
    page = REAUTH_PAGE.format(
        message=html.escape(str(exc)),
        url=html.escape(exc.reauth_url),
        url_js=json.dumps(exc.reauth_url).replace("</", "<\\/"),
        seconds=REAUTH_COUNTDOWN_SEC,
    )
    return HTMLResponse(content=page, status_code=401)


def _error(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False, "error": type(exc).__name__, "message": str(exc)})


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ReauthRequired)
    async def _reauth(request: Request, exc: ReauthRequired):
        return reauth_response(request, exc)

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError):
        return _error(400, exc)

    @app.exception_handler(NotFoundError)
    async def _missing(request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(UpstreamError)
    async def _upstream(request: Request, exc: UpstreamError):
        logger.error("Upstream failure on %s: %s", request.url.path, exc)
        return _error(502, exc)

    @app.exception_handler(InvariantViolation)
    async def _invariant(request: Request, exc: InvariantViolation):
        logger.error("Invariant violation on %s: %s", request.url.path, exc)
        return _error(500, exc)

    @app.exception_handler(BridgeError)
    async def _bridge(request: Request, exc: BridgeError):
        logger.error("Unhandled bridge error on %s: %s", request.url.path, exc)
        return _error(500, exc)
