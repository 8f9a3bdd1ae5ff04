from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from smsbridge.actions import notify_action
from smsbridge.datastore import run_io
from smsbridge.errors import ValidationError
from smsbridge.reports import DEFAULT_PAGE_SIZE, error_analysis, error_rows, paginate, to_csv
from smsbridge.routes.common import NotifyPayload, execution_id, get_ctx, param, parse_body
from smsbridge.routes.data import add_data_routes
from smsbridge.routes.steps import add_lifecycle_routes, instance_view
from smsbridge.runtime import get_logger, iso_now
from smsbridge.schema import StepKind

logger = get_logger("routes.action")

router = APIRouter(prefix="/eloqua/action", tags=["action"])
add_lifecycle_routes(router, StepKind.ACTION)
add_data_routes(router)


@router.post("/notify", status_code=204)
async def notify(request: Request):
    ctx = get_ctx(request)
    body = await parse_body(request)
    payload = NotifyPayload.model_validate(body)
    result = await notify_action(
        ctx,
        param(request, "installId", body=body),
        param(request, "instanceId", body=body),
        execution_id(request, payload),
        payload.items,
    )
    logger.info(
        "Action notify accepted: created=%s rejected=%s skipped=%s",
        len(result.created),
        len(result.rejected),
        len(result.skipped),
    )
    return Response(status_code=204)


@router.get("/retrieve")
async def retrieve(request: Request):
    ctx = get_ctx(request)
    instance = await run_io(ctx.instances.require, StepKind.ACTION, param(request, "instanceId"))
    return {"instance": instance_view(instance)}


# ------------------------------------------------------------------- reports
def _positive(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name) or str(default)
    if not raw.isdigit():
        raise ValidationError(f"{name} must be a positive number")
    return int(raw)


@router.get("/report/{instance_id}")
async def report(instance_id: str, request: Request):
    return await get_ctx(request).reports.summary(instance_id)


@router.get("/report/{instance_id}/data")
async def report_data(instance_id: str, request: Request):
    logs = await get_ctx(request).reports.logs(instance_id)
    return paginate(
        logs,
        page=_positive(request, "page", 1),
        page_size=_positive(request, "pageSize", DEFAULT_PAGE_SIZE),
        status=request.query_params.get("status"),
    )


@router.get("/report/{instance_id}/csv")
async def report_csv(instance_id: str, request: Request):
    logs = await get_ctx(request).reports.logs(instance_id)
    return Response(
        content=to_csv(logs),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="sms-report-{instance_id}.csv"'},
    )


@router.get("/report/{instance_id}/errors")
async def report_errors(instance_id: str, request: Request):
    rows = error_rows(await get_ctx(request).reports.logs(instance_id))
    return {"instanceId": instance_id, "count": len(rows), "items": rows}


@router.get("/report/{instance_id}/analysis")
async def report_analysis(instance_id: str, request: Request):
    return {"instanceId": instance_id, **error_analysis(await get_ctx(request).reports.logs(instance_id))}


@router.get("/report/{instance_id}/message/{message_id}")
async def report_message(instance_id: str, message_id: str, request: Request):
    return await get_ctx(request).reports.message(instance_id, message_id)


# ------------------------------------------------------------------- workers
@router.get("/worker/status")
async def worker_status(request: Request):
    ctx = get_ctx(request)
    workers = request.app.state.workers
    return {
        "timestamp": iso_now(),
        "enabled": ctx.config.WORKERS_ENABLED,
        "workers": [w.status() for w in workers],
        "jobs": await run_io(ctx.queue.counts),
        "executionsPending": len(ctx.tracker.pending_keys()),
    }


@router.get("/worker/health")
async def worker_health(request: Request):
    workers = request.app.state.workers
    healthy = bool(workers) and all(w.healthy() for w in workers)
    body = {"ok": healthy, "timestamp": iso_now(), "workers": {w.name: w.healthy() for w in workers}}
    if not healthy:
        logger.warning("Worker health check failed: %s", body["workers"] or "no workers running")
    return JSONResponse(status_code=200 if healthy else 503, content=body)
