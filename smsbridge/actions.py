"""Action step notify: turn a Platform execution batch into queued SMS Jobs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Mapping

from smsbridge.datastore import run_io
from smsbridge.errors import ValidationError
from smsbridge.job_queue import EnqueueResult
from smsbridge.runtime import get_logger, utc_now
from smsbridge.schema import StepKind

if TYPE_CHECKING:
    from smsbridge.context import AppContext

logger = get_logger("actions")


async def notify_action(
    ctx: "AppContext",
    install_id: str,
    instance_id: str,
    execution_id: str,
    items: Iterable[Mapping[str, Any]],
) -> EnqueueResult:
    if not execution_id:
        raise ValidationError("executionId is required for action notify")
    tenant = await run_io(ctx.tenants.require, install_id)
    instance = await run_io(ctx.instances.require, StepKind.ACTION, instance_id)
    if instance.requires_configuration:
        raise ValidationError(f"Action instance {instance_id} is not configured")

    result = await run_io(ctx.queue.enqueue_execution, tenant, instance, execution_id, list(items), utc_now())

    # rejected jobs are terminal at birth
    for job in result.rejected:
        log = await run_io(ctx.sms_logs.create_for_job, job, instance.asset_name)
        job = await run_io(ctx.queue.link_sms_log, job, log.record_id)
        ctx.tracker.record(job)
    if result.rejected:
        await run_io(ctx.instances.increment, instance, total_failed=len(result.rejected))
    return result


async def cancel_jobs(ctx: "AppContext", reason: str, **match: Any) -> int:
    """Cancel open Jobs and hand them to the tracker so their executions still get reported."""
    cancelled = await run_io(ctx.queue.cancel_open, reason, **match)
    for job in cancelled:
        ctx.tracker.record(job)
    return len(cancelled)
