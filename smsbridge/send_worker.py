"""
Send worker
-----------
Background coordinator that drains the Job queue:

- lease a batch of due Jobs every poll interval
- bounded concurrency with a pacing gap between send initiations
- failed Jobs with retries left go back to pending after the cool-off
- finished executions are reported through the ExecutionTracker
- terminal Jobs older than the retention window are purged once a day
- one JSON summary line per cycle
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from smsbridge.datastore import run_io
from smsbridge.errors import BridgeError, GatewayError
from smsbridge.runtime import get_logger, iso, iso_now, utc_now
from smsbridge.schema import ActionInstance, Job, SmsLog, SmsStatus, StepKind

if TYPE_CHECKING:
    from smsbridge.context import AppContext

logger = get_logger("send_worker")


class Pacer:
    """Enforces a minimum gap between consecutive starts."""

    def __init__(self, interval_sec: float) -> None:
        self.interval = max(0.0, interval_sec)
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    async def wait(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._last is not None:
                delay = self._last + self.interval - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
            self._last = loop.time()


class PeriodicWorker:
    """Runs ``run_cycle`` every ``interval`` seconds until stopped."""

    name = "worker"

    def __init__(self, interval_sec: float, shutdown_timeout_sec: float) -> None:
        self.interval = interval_sec
        self.shutdown_timeout = shutdown_timeout_sec
        self.cycles = 0
        self.running = False
        self.started_at: Optional[datetime] = None
        self.last_cycle_at: Optional[datetime] = None
        self.last_summary: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None
        self._stop = asyncio.Event()
        self._current: Optional[asyncio.Task] = None

    async def run_cycle(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def on_start(self) -> None:
        return None

    async def run(self) -> None:
        logger.info("Starting %s (interval=%ss)", self.name, self.interval)
        self.running = True
        self.started_at = utc_now()
        try:
            await self.on_start()
            await self._loop()
        finally:
            self.running = False
        logger.info("%s stopped after %s cycles", self.name, self.cycles)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            self._current = asyncio.ensure_future(self.run_cycle())
            try:
                summary = await self._current
            except asyncio.CancelledError:
                if self._stop.is_set():
                    break
                raise
            except Exception as exc:
                self.last_error = f"{type(exc).__name__}: {exc}"
                logger.exception("%s cycle failed", self.name)
            else:
                self.cycles += 1
                self.last_cycle_at = utc_now()
                self.last_summary = summary
                self.last_error = None
                _log_cycle(self.name, self.cycles, summary)
            finally:
                self._current = None
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def healthy(self, now: Optional[datetime] = None) -> bool:
        """Running, and a cycle has succeeded recently (or it only just started)."""
        if not self.running:
            return False
        now = now or utc_now()
        stale_after = timedelta(seconds=max(3 * self.interval, 60))
        reference = self.last_cycle_at or self.started_at
        return reference is not None and now - reference <= stale_after

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self.running,
            "healthy": self.healthy(now),
            "intervalSec": self.interval,
            "cycles": self.cycles,
            "startedAt": iso(self.started_at),
            "lastCycleAt": iso(self.last_cycle_at),
            "lastSummary": self.last_summary,
            "lastError": self.last_error,
        }

    async def stop(self) -> None:
        """Stop leasing new work; give the in-flight cycle the shutdown timeout."""
        self._stop.set()
        current = self._current
        if current is None or current.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(current), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s: in-flight work exceeded %ss; cancelling", self.name, self.shutdown_timeout)
            current.cancel()
        except Exception:
            logger.exception("%s: in-flight cycle failed during shutdown", self.name)


def _log_cycle(name: str, cycle: int, summary: Optional[Dict[str, Any]]) -> None:
    data = {"ts": iso_now(), "worker": name, "event": "cycle", "cycle": cycle, **(summary or {})}
    logger.info(json.dumps(data, ensure_ascii=False, default=str))


class SendWorker(PeriodicWorker):
    name = "send_worker"

    def __init__(self, ctx: "AppContext") -> None:
        cfg = ctx.config
        super().__init__(cfg.SEND_POLL_INTERVAL_SEC, cfg.SHUTDOWN_TIMEOUT_SEC)
        self.ctx = ctx
        self._last_cleanup: Optional[float] = None

    async def on_start(self) -> None:
        await run_io(self.ctx.queue.recover_stale)

    async def run_cycle(self) -> Dict[str, Any]:
        ctx = self.ctx
        cfg = ctx.config
        reset = await run_io(ctx.queue.reset_retryable)
        jobs = await run_io(ctx.queue.lease_batch, cfg.SEND_BATCH_SIZE)
        done = await self.dispatch(jobs)
        reported = await ctx.tracker.flush(ctx.queue, ctx.platform)
        cleaned = await self._maybe_cleanup()
        return {
            "leased": len(jobs),
            "sent": sum(1 for job in done if job.status == "sent"),
            "failed": sum(1 for job in done if job.status == "failed"),
            "retried": reset,
            "executions_reported": reported,
            "cleaned": cleaned,
        }

    async def dispatch(self, jobs: List[Job]) -> List[Job]:
        cfg = self.ctx.config
        semaphore = asyncio.Semaphore(max(1, cfg.SEND_CONCURRENCY))
        pacer = Pacer(cfg.SEND_PACING_MS / 1000.0)

        async def _one(job: Job) -> Job:
            async with semaphore:
                await pacer.wait()
                return await self._process_safely(job)

        return list(await asyncio.gather(*(_one(job) for job in jobs)))

    async def _maybe_cleanup(self) -> int:
        now = time.monotonic()
        if self._last_cleanup is not None and now - self._last_cleanup < self.ctx.config.CLEANUP_INTERVAL_SEC:
            return 0
        self._last_cleanup = now
        return await run_io(self.ctx.queue.cleanup)

    async def _process_safely(self, job: Job) -> Job:
        try:
            return await self.process_job(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error sending job %s", job.job_id)
            return await self._failed(job, None, f"Unexpected error: {exc}", transient=True)

    # ------------------------------------------------------------------ per job
    async def process_job(self, job: Job) -> Job:
        ctx = self.ctx
        instance = await run_io(ctx.instances.get, StepKind.ACTION, job.instance_id, include_deleted=True)
        log = await self._ensure_log(job, instance)

        try:
            credentials = await run_io(ctx.tenants.get_gateway_credentials, job.install_id)
            tenant = await run_io(ctx.tenants.require, job.install_id)
            gateway = ctx.gateway(credentials)
        except BridgeError as exc:
            return await self._failed(job, log, str(exc), transient=False, instance=instance)

        params = {"installId": job.install_id, "contactId": job.contact_id}
        try:
            body = await gateway.send_sms(
                job.mobile or "",
                job.message or "",
                sender=job.from_id,
                validity=job.validity_minutes,
                dlr_callback=tenant.dlr_callback or ctx.callback_url("/webhooks/dlr", **params),
                reply_callback=tenant.reply_callback or ctx.callback_url("/webhooks/reply", **params),
                link_hits_callback=(
                    tenant.link_hits_callback or ctx.callback_url("/webhooks/linkhit", **params)
                    if job.tracked_link_url
                    else None
                ),
                tracked_link_url=job.tracked_link_url,
            )
        except GatewayError as exc:
            return await self._failed(job, log, str(exc), transient=exc.transient, instance=instance)

        now = utc_now()
        message_id = str(body["message_id"])
        job = await run_io(ctx.queue.mark_sent, job, message_id, body, now)
        await run_io(
            ctx.sms_logs.update,
            log,
            status=SmsStatus.SENT.value,
            message_id=message_id,
            sent_at=now,
            gateway_response=body,
            error=None,
        )
        job = await self._write_custom_object(job)
        if instance is not None:
            instance = await run_io(ctx.instances.increment, instance, total_sent=1)
            await run_io(ctx.instances.update_fields, instance, last_executed_at=now)
        ctx.tracker.record(job)
        logger.info("Sent job %s to %s (message_id=%s)", job.job_id, job.mobile, message_id)
        return job

    async def _ensure_log(self, job: Job, instance: Optional[ActionInstance]) -> SmsLog:
        ctx = self.ctx
        log = await run_io(ctx.sms_logs.get, job.sms_log_id) if job.sms_log_id else None
        if log is not None:
            return log
        title = instance.asset_name if instance is not None else None
        log = await run_io(ctx.sms_logs.create_for_job, job, title)
        await run_io(ctx.queue.link_sms_log, job, log.record_id)
        job.sms_log_id = log.record_id
        return log

    async def _failed(
        self,
        job: Job,
        log: Optional[SmsLog],
        error: str,
        *,
        transient: bool,
        instance: Optional[ActionInstance] = None,
    ) -> Job:
        ctx = self.ctx
        job = await run_io(ctx.queue.mark_failed, job, error, transient=transient)
        if job.terminal:
            logger.error("Job %s failed permanently: %s", job.job_id, error)
            if log is None and not job.sms_log_id:
                log = await run_io(ctx.sms_logs.create_for_job, job)
                job = await run_io(ctx.queue.link_sms_log, job, log.record_id)
            elif log is not None:
                await run_io(ctx.sms_logs.update, log, status=SmsStatus.FAILED.value, error=error)
            if instance is not None:
                await run_io(ctx.instances.increment, instance, total_failed=1)
            ctx.tracker.record(job)
        else:
            logger.warning("Job %s failed (attempt %s/%s): %s", job.job_id, job.retry_count, job.max_retries + 1, error)
            if log is not None:
                await run_io(ctx.sms_logs.update, log, error=error)
        return job

    async def _write_custom_object(self, job: Job) -> Job:
        payload = job.custom_object_payload or {}
        custom_object_id = payload.get("custom_object_id")
        values = payload.get("field_values") or {}
        if not custom_object_id or not values:
            return job
        try:
            created = await self.ctx.platform(job.install_id).create_custom_object_record(custom_object_id, values)
        except BridgeError as exc:
            logger.warning("Custom object write failed for job %s: %s", job.job_id, exc)
            return job
        record_id = created.get("id") if isinstance(created, dict) else None
        if not record_id:
            return job
        return await run_io(self.ctx.queue.set_custom_object_record, job, str(record_id))
