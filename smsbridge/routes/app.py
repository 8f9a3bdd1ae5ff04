"""App lifecycle: install, OAuth authorization, tenant configuration and status."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from smsbridge.actions import cancel_jobs
from smsbridge.datastore import run_io
from smsbridge.routes.common import get_ctx, param, parse_body
from smsbridge.routes.data import add_data_routes
from smsbridge.runtime import get_logger, iso

logger = get_logger("routes.app")

router = APIRouter(prefix="/eloqua/app", tags=["app"])
add_data_routes(router)


class ConfigPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_key: Optional[str] = Field(default=None, alias="transmitsms_api_key")
    api_secret: Optional[str] = Field(default=None, alias="transmitsms_api_secret")
    default_country: Optional[str] = None
    actions: Optional[Dict[str, Dict[str, Any]]] = None
    dlr_callback: Optional[str] = None
    reply_callback: Optional[str] = None
    link_hits_callback: Optional[str] = None


@router.api_route("/install", methods=["GET", "POST"])
async def install(request: Request):
    ctx = get_ctx(request)
    install_id = param(request, "installId")
    tenant = await run_io(
        ctx.tenants.get_or_create,
        install_id,
        param(request, "siteId"),
        param(request, "siteName", required=False),
    )
    logger.info("Install for site %s (%s); redirecting to authorize", tenant.site_id, install_id)
    return RedirectResponse(ctx.tokens.authorize_url(install_id), status_code=302)


@router.api_route("/uninstall", methods=["GET", "POST"])
async def uninstall(request: Request):
    ctx = get_ctx(request)
    install_id = param(request, "installId")
    tokens = await run_io(ctx.tenants.get_tokens, install_id)
    revoked = await ctx.tokens.revoke(tokens.refresh_token or tokens.access_token)
    await run_io(ctx.tenants.deactivate, install_id)
    disabled = await run_io(ctx.instances.disable_for_install, install_id)
    cancelled = await cancel_jobs(ctx, "App uninstalled", install_id=install_id)
    ctx.tokens.forget(install_id)
    logger.info(
        "Uninstalled %s (instances disabled=%s, jobs cancelled=%s, revoked=%s)", install_id, disabled, cancelled, revoked
    )
    return {
        "success": True,
        "installId": install_id,
        "instancesDisabled": disabled,
        "jobsCancelled": cancelled,
        "tokenRevoked": revoked,
    }


@router.get("/authorize")
async def authorize(request: Request):
    ctx = get_ctx(request)
    install_id = param(request, "installId")
    await run_io(ctx.tenants.require, install_id)
    return RedirectResponse(ctx.tokens.authorize_url(install_id), status_code=302)


@router.get("/oauth/callback/{install_id}")
async def oauth_callback(install_id: str, request: Request):
    ctx = get_ctx(request)
    error = request.query_params.get("error")
    if error:
        logger.error("Authorization denied for %s: %s", install_id, error)
        raise HTTPException(status_code=400, detail=f"Authorization failed: {error}")
    code = request.query_params.get("code")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")
    state = request.query_params.get("state")
    if state and state != install_id:
        logger.warning("OAuth state mismatch for %s (state=%s)", install_id, state)
        raise HTTPException(status_code=400, detail="State mismatch")

    await run_io(ctx.tenants.require, install_id)
    session = await ctx.tokens.complete_authorization(code, install_id)
    logger.info("Authorized %s against %s", install_id, session.base_url)
    return RedirectResponse(f"/eloqua/app/config?installId={install_id}", status_code=302)


@router.post("/refresh-token")
async def refresh_token(request: Request):
    ctx = get_ctx(request)
    install_id = param(request, "installId")
    session = await ctx.tokens.bind_client(install_id, force_refresh=True)
    return {"success": True, "installId": install_id, "baseUrl": session.base_url}


@router.get("/config")
async def get_config(request: Request):
    ctx = get_ctx(request)
    install_id = param(request, "installId")
    tenant = await run_io(ctx.tenants.require, install_id)
    credentials = await run_io(ctx.tenants.get_gateway_credentials, install_id)
    tokens = await run_io(ctx.tenants.get_tokens, install_id)
    return {
        "tenant": tenant.public_dict(),
        "gatewayConfigured": credentials is not None,
        "authorized": bool(tokens.access_token),
        "tokenExpiresAt": iso(tokens.expires_at),
        "callbacks": {
            "dlr": tenant.dlr_callback or ctx.callback_url("/webhooks/dlr"),
            "reply": tenant.reply_callback or ctx.callback_url("/webhooks/reply"),
            "linkhit": tenant.link_hits_callback or ctx.callback_url("/webhooks/linkhit"),
        },
    }


@router.post("/config")
async def save_config(request: Request):
    ctx = get_ctx(request)
    body = await parse_body(request)
    install_id = param(request, "installId", body=body)
    payload = ConfigPayload.model_validate(body)
    callbacks = {
        name: getattr(payload, name)
        for name in ("dlr_callback", "reply_callback", "link_hits_callback")
        if name in payload.model_fields_set
    }
    tenant = await run_io(
        ctx.tenants.save_configuration,
        install_id,
        api_key=payload.api_key,
        api_secret=payload.api_secret,
        default_country=payload.default_country,
        actions=payload.actions,
        callbacks=callbacks,
    )
    logger.info("Configuration saved for %s", install_id)
    return {"success": True, "tenant": tenant.public_dict()}


@router.get("/status")
async def status(request: Request):
    ctx = get_ctx(request)
    install_id = param(request, "installId")
    tenant = await run_io(ctx.tenants.require, install_id)
    credentials = await run_io(ctx.tenants.get_gateway_credentials, install_id)
    tokens = await run_io(ctx.tenants.get_tokens, install_id)
    return {
        "tenant": tenant.public_dict(),
        "healthy": tenant.is_active and credentials is not None and bool(tokens.refresh_token),
        "gatewayConfigured": credentials is not None,
        "authorized": bool(tokens.access_token),
        "jobs": await run_io(ctx.queue.counts, install_id),
        "sms": await run_io(ctx.sms_logs.status_counts, install_id),
        "decisions": await ctx.evaluator.decision_stats(install_id),
        "executionsPending": sum(1 for key in ctx.tracker.pending_keys() if key[0] == install_id),
    }
