"""Gateway callbacks: delivery receipts, replies and tracked-link hits."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from smsbridge.auth import require_webhook_token
from smsbridge.routes.common import get_ctx, merged_params, parse_body
from smsbridge.runtime import get_logger

logger = get_logger("routes.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"], dependencies=[Depends(require_webhook_token)])


@router.api_route("/dlr", methods=["GET", "POST"])
async def delivery_report(request: Request):
    data = merged_params(request, await parse_body(request))
    log = await get_ctx(request).inbound.delivery_report(data)
    return {"ok": True, "matched": log is not None, "status": log.status if log else None}


@router.api_route("/reply", methods=["GET", "POST"])
async def reply(request: Request):
    data = merged_params(request, await parse_body(request))
    outcome = await get_ctx(request).inbound.reply(data)
    return {
        "ok": True,
        "replyId": outcome.reply.record_id,
        "correlated": outcome.correlated,
        "decision": outcome.verdict.verdict if outcome.verdict else None,
    }


@router.api_route("/linkhit", methods=["GET", "POST"])
async def link_hit(request: Request):
    data = merged_params(request, await parse_body(request))
    hit = await get_ctx(request).inbound.link_hit(data)
    return {"ok": True, "linkHitId": hit.record_id}
