"""Lifecycle endpoints shared by the action, decision and feeder step routers."""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Request

from smsbridge.actions import cancel_jobs
from smsbridge.context import AppContext
from smsbridge.datastore import run_io
from smsbridge.errors import BridgeError
from smsbridge.instances import CONFIGURATORS, record_definition
from smsbridge.routes.common import get_ctx, param, parse_body
from smsbridge.runtime import get_logger, iso
from smsbridge.schema import StepInstance, StepKind

logger = get_logger("routes.steps")

AfterSave = Callable[[AppContext, StepInstance], Awaitable[Dict[str, Any]]]


def instance_view(instance: StepInstance) -> Dict[str, Any]:
    data = dataclasses.asdict(instance)
    data.pop("record_id", None)
    out = {k: iso(v) if isinstance(v, datetime) else v for k, v in data.items()}
    out["kind"] = instance.kind.value
    out["recordDefinition"] = record_definition(instance)
    return out


async def push_definition(ctx: AppContext, instance: StepInstance) -> bool:
    """Tell the Platform the instance is configured; local state is kept either way."""
    try:
        await ctx.platform(instance.install_id).update_instance(
            instance.kind, instance.instance_id, record_definition(instance), False
        )
    except BridgeError as exc:
        logger.error("Platform instance update failed for %s %s: %s", instance.kind.value, instance.instance_id, exc)
        return False
    return True


def add_lifecycle_routes(router: APIRouter, kind: StepKind, after_save: Optional[AfterSave] = None) -> None:
    @router.api_route("/create", methods=["GET", "POST"])
    async def create(request: Request):
        ctx = get_ctx(request)
        install_id = param(request, "installId")
        await run_io(ctx.tenants.require, install_id)
        instance_id = param(request, "instanceId", required=False) or str(uuid.uuid4())
        instance = await run_io(
            ctx.instances.create,
            kind,
            instance_id,
            install_id,
            site_id=param(request, "siteId", required=False),
            asset_id=param(request, "assetId", required=False),
            asset_name=param(request, "assetName", required=False),
        )
        return {
            "success": True,
            "instanceId": instance.instance_id,
            "requiresConfiguration": instance.requires_configuration,
        }

    @router.get("/configure")
    async def configure(request: Request):
        ctx = get_ctx(request)
        instance = await run_io(ctx.instances.require, kind, param(request, "instanceId"))
        return {"instance": instance_view(instance)}

    @router.post("/configure")
    async def save_configure(request: Request):
        ctx = get_ctx(request)
        body = await parse_body(request)
        data = body.get("instance") if isinstance(body.get("instance"), dict) else body
        instance = await run_io(ctx.instances.require, kind, param(request, "instanceId", body=body))
        instance = CONFIGURATORS[kind](instance, data)
        instance = await run_io(ctx.instances.save, instance)
        logger.info("Saved %s configuration for %s", kind.value, instance.instance_id)

        synced = await push_definition(ctx, instance)
        extra = await after_save(ctx, instance) if after_save is not None else {}
        return {"success": True, "platformUpdated": synced, "instance": instance_view(instance), **extra}

    @router.post("/copy")
    async def copy(request: Request):
        ctx = get_ctx(request)
        original = param(request, "originalInstanceId", required=False)
        if original:
            source, new_id = original, param(request, "instanceId", required=False)
        else:
            source, new_id = param(request, "instanceId"), param(request, "newInstanceId", required=False)
        clone = await run_io(ctx.instances.copy, kind, source, new_id)
        return {"success": True, "instanceId": clone.instance_id}

    @router.api_route("/delete", methods=["POST", "DELETE"])
    async def delete(request: Request):
        ctx = get_ctx(request)
        instance_id = param(request, "instanceId")
        deleted = await run_io(ctx.instances.soft_delete, kind, instance_id)
        cancelled = 0
        if deleted and kind == StepKind.ACTION:
            cancelled = await cancel_jobs(ctx, "Action instance deleted", instance_id=instance_id)
        return {"success": True, "deleted": deleted, "instanceId": instance_id, "jobsCancelled": cancelled}
