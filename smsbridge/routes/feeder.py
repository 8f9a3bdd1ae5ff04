from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from smsbridge.auth import require_webhook_token
from smsbridge.context import AppContext
from smsbridge.feeder import DEFAULT_MAX_ROWS
from smsbridge.routes.common import get_ctx, merged_params, param, parse_body
from smsbridge.routes.steps import add_lifecycle_routes
from smsbridge.schema import FeederInstance


async def _register_forwarding(ctx: AppContext, instance: FeederInstance) -> Dict[str, Any]:
    return {"forwarding": await ctx.feeder.register_forwarding(instance)}


router = APIRouter(prefix="/eloqua/feeder", tags=["feeder"])
add_lifecycle_routes(router, FeederInstance.kind, after_save=_register_forwarding)


@router.post("/notify")
async def notify(request: Request):
    """Pull protocol: mapped rows for events not yet fed to this instance."""
    ctx = get_ctx(request)
    body = await parse_body(request)
    return await ctx.feeder.pull(
        param(request, "instanceId", body=body),
        max_rows=param(request, "maxRows", "limit", body=body, required=False) or DEFAULT_MAX_ROWS,
        offset=param(request, "offset", body=body, required=False) or 0,
    )


@router.api_route("/incomingsms", methods=["GET", "POST"], dependencies=[Depends(require_webhook_token)])
async def incoming_sms(request: Request):
    ctx = get_ctx(request)
    data = merged_params(request, await parse_body(request))
    reply = await ctx.feeder.incoming_sms(
        param(request, "instanceId", body=data),
        param(request, "installId", body=data, required=False),
        data,
    )
    return {"ok": True, "replyId": reply.record_id}
