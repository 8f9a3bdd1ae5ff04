from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Request, Response

from smsbridge.routes.common import NotifyPayload, execution_id, get_ctx, param, parse_body
from smsbridge.routes.steps import add_lifecycle_routes
from smsbridge.schema import StepKind

router = APIRouter(prefix="/eloqua/decision", tags=["decision"])
add_lifecycle_routes(router, StepKind.DECISION)


@router.post("/notify", status_code=204)
async def notify(request: Request, background: BackgroundTasks):
    """Attach contacts to their SMS; already-answered contacts are decided immediately."""
    ctx = get_ctx(request)
    body = await parse_body(request)
    payload = NotifyPayload.model_validate(body)
    verdicts = await ctx.evaluator.on_notify(
        param(request, "installId", body=body),
        param(request, "instanceId", body=body),
        execution_id(request, payload),
        payload.items,
    )
    if verdicts:
        background.add_task(ctx.evaluator.emit, verdicts)
    return Response(status_code=204, background=background)
