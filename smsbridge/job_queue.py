"""
Durable outbound SMS job queue (``smsjobs`` collection).

State machine: pending -> processing -> sent | failed; failed jobs with
retries left go back to pending after the retry cool-off; cancelled is
terminal and never leased.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from smsbridge.config import Settings, settings
from smsbridge.datastore import (
    CONNECTOR,
    create_record,
    delete_record,
    get_record,
    list_records,
    match_formula,
    update_record,
)
from smsbridge.phone import PhoneFormatError, format_phone
from smsbridge.runtime import get_logger, utc_now
from smsbridge.schema import ActionInstance, Job, JobStatus, Tenant
from smsbridge.templates import field_value, render_message

logger = get_logger("job_queue")

ExecutionKey = Tuple[str, str, str]
STALE_PROCESSING = timedelta(minutes=10)


@dataclass
class EnqueueResult:
    created: List[Job] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def rejected(self) -> List[Job]:
        return [job for job in self.created if job.terminal]


def item_contact_id(item: Mapping[str, Any]) -> Optional[str]:
    for key in ("ContactID", "ContactId", "contactId", "Id", "id"):
        value = item.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def item_email(item: Mapping[str, Any]) -> Optional[str]:
    for key in ("EmailAddress", "emailAddress", "C_EmailAddress", "email"):
        value = item.get(key)
        if value not in (None, ""):
            return str(value).strip().lower()
    return None


class JobQueue:
    def __init__(self, connector=CONNECTOR, config: Optional[Settings] = None) -> None:
        self._connector = connector
        self._config = config

    @property
    def config(self) -> Settings:
        return self._config or settings()

    @property
    def _handle(self):
        return self._connector.sms_jobs()

    def _jobs(self, **match: Any) -> List[Job]:
        return [Job.from_record(r) for r in list_records(self._handle, formula=match_formula(**match))]

    def _update(self, job: Job, **changes: Any) -> Job:
        record = update_record(self._handle, job.job_id, Job.encode_fields(changes))
        return Job.from_record(record)

    # ------------------------------------------------------------------ enqueue
    def enqueue_execution(
        self,
        tenant: Tenant,
        instance: ActionInstance,
        execution_id: str,
        items: Iterable[Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Create one Job per contact; contacts already queued for this execution are skipped."""
        now = now or utc_now()
        result = EnqueueResult()
        seen = {job.contact_id for job in self._jobs(instance_id=instance.instance_id, execution_id=execution_id)}
        items = list(items)
        keep = _apply_send_mode(items, instance)

        for index, item in enumerate(items):
            contact_id = item_contact_id(item)
            key = contact_id or f"row-{index}"
            if key in seen:
                result.skipped.append(key)
                continue
            seen.add(key)
            job = self._build_job(tenant, instance, execution_id, item, now, duplicate=index not in keep)
            job.contact_id = key
            record = create_record(self._handle, job.to_fields())
            result.created.append(Job.from_record(record))

        logger.info(
            "Enqueued execution %s/%s: created=%s rejected=%s skipped=%s",
            instance.instance_id,
            execution_id,
            len(result.created),
            len(result.rejected),
            len(result.skipped),
        )
        return result

    def _build_job(
        self,
        tenant: Tenant,
        instance: ActionInstance,
        execution_id: str,
        item: Mapping[str, Any],
        now: datetime,
        duplicate: bool = False,
    ) -> Job:
        message = render_message(instance.message, item)
        job = Job(
            install_id=tenant.install_id,
            instance_id=instance.instance_id,
            execution_id=execution_id,
            asset_id=instance.asset_id,
            email=item_email(item),
            message=message,
            from_id=instance.caller_id,
            tracked_link_url=instance.tracked_link,
            validity_minutes=instance.message_validity * 60 if instance.message_expiry else None,
            status=JobStatus.PENDING.value,
            scheduled_at=now,
            max_retries=self.config.JOB_MAX_RETRIES,
            created_at=now,
        )

        raw_mobile = field_value(item, instance.recipient_field)
        country = field_value(item, instance.country_field) or tenant.default_country
        if duplicate:
            return _rejected(job, f"Duplicate mobile number skipped (send_mode={instance.send_mode})", now)
        if not raw_mobile:
            return _rejected(job, "Mobile number not found", now)
        try:
            job.mobile = format_phone(raw_mobile, country)
        except PhoneFormatError as exc:
            job.mobile = raw_mobile
            return _rejected(job, str(exc), now)
        if not message.strip():
            return _rejected(job, "Message is empty after merge", now)

        if instance.custom_object_id and instance.field_map:
            job.custom_object_payload = _custom_object_payload(instance, job)
        return job

    # -------------------------------------------------------------------- reads
    def get(self, job_id: str) -> Optional[Job]:
        record = get_record(self._handle, job_id)
        return Job.from_record(record) if record else None

    def jobs_for_execution(self, key: ExecutionKey) -> List[Job]:
        install_id, instance_id, execution_id = key
        return self._jobs(install_id=install_id, instance_id=instance_id, execution_id=execution_id)

    def execution_done(self, key: ExecutionKey) -> bool:
        jobs = self.jobs_for_execution(key)
        return bool(jobs) and all(job.terminal for job in jobs)

    def counts(self, install_id: Optional[str] = None) -> Dict[str, int]:
        jobs = self._jobs(install_id=install_id) if install_id else [Job.from_record(r) for r in list_records(self._handle)]
        out = {status.value: 0 for status in JobStatus}
        for job in jobs:
            out[job.status] = out.get(job.status, 0) + 1
        return out

    # ------------------------------------------------------------------- leases
    def lease_batch(self, limit: int, now: Optional[datetime] = None) -> List[Job]:
        """Pending jobs due at ``now``, oldest first, moved to processing."""
        now = now or utc_now()
        due = [
            job
            for job in self._jobs(status=JobStatus.PENDING.value)
            if job.scheduled_at is None or job.scheduled_at <= now
        ]
        due.sort(key=lambda j: (j.scheduled_at or now, j.created_at or now))
        return [self.mark_processing(job, now) for job in due[: max(0, limit)]]

    def mark_processing(self, job: Job, now: Optional[datetime] = None) -> Job:
        return self._update(job, status=JobStatus.PROCESSING.value, processed_at=now or utc_now())

    def mark_sent(self, job: Job, message_id: str, response: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Job:
        return self._update(
            job,
            status=JobStatus.SENT.value,
            message_id=str(message_id),
            gateway_response=response,
            sent_at=now or utc_now(),
            error=None,
        )

    def mark_failed(self, job: Job, error: str, *, transient: bool, now: Optional[datetime] = None) -> Job:
        """Record a failed attempt.

        A transient failure with retries left stays retryable and consumes one
        retry; otherwise the job becomes terminally failed.
        """
        now = now or utc_now()
        if transient and job.retry_count < job.max_retries:
            return self._update(
                job,
                status=JobStatus.FAILED.value,
                error=error,
                retry_count=job.retry_count + 1,
                last_retry_at=now,
                permanent=False,
            )
        return self._update(job, status=JobStatus.FAILED.value, error=error, last_retry_at=now, permanent=True)

    def link_sms_log(self, job: Job, sms_log_id: str) -> Job:
        return self._update(job, sms_log_id=sms_log_id)

    def set_custom_object_record(self, job: Job, record_id: Optional[str]) -> Job:
        return self._update(job, custom_object_record_id=record_id)

    def cancel(self, job: Job, reason: str = "cancelled") -> Job:
        if job.terminal or job.status == JobStatus.PROCESSING.value:
            return job
        return self._update(job, status=JobStatus.CANCELLED.value, error=reason, permanent=True)

    def cancel_open(self, reason: str, **match: Any) -> List[Job]:
        """Cancel pending and retryable jobs matching ``match``; in-flight sends finish normally."""
        cancelled = [self.cancel(job, reason) for job in self._jobs(**match) if not job.terminal]
        cancelled = [job for job in cancelled if job.status == JobStatus.CANCELLED.value]
        if cancelled:
            logger.info("Cancelled %s open jobs (%s): %s", len(cancelled), match, reason)
        return cancelled

    # ---------------------------------------------------------------- maintenance
    def reset_retryable(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        cooloff = timedelta(seconds=self.config.JOB_RETRY_COOLOFF_SEC)
        reset = 0
        for job in self._jobs(status=JobStatus.FAILED.value):
            if not job.retryable:
                continue
            if job.last_retry_at and job.last_retry_at + cooloff > now:
                continue
            self._update(job, status=JobStatus.PENDING.value, processed_at=None, scheduled_at=job.scheduled_at or now)
            reset += 1
        if reset:
            logger.info("Reset %s failed jobs for retry", reset)
        return reset

    def recover_stale(self, now: Optional[datetime] = None) -> int:
        """Return jobs stuck in processing (crash mid-send) to pending."""
        now = now or utc_now()
        recovered = 0
        for job in self._jobs(status=JobStatus.PROCESSING.value):
            if job.processed_at is None or job.processed_at + STALE_PROCESSING <= now:
                self._update(job, status=JobStatus.PENDING.value, processed_at=None)
                recovered += 1
        if recovered:
            logger.warning("Recovered %s jobs stuck in processing", recovered)
        return recovered

    def cleanup(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        cutoff = now - timedelta(days=self.config.JOB_RETENTION_DAYS)
        removed = 0
        for record in list_records(self._handle):
            job = Job.from_record(record)
            stamp = job.sent_at or job.last_retry_at or job.processed_at or job.created_at
            if job.terminal and stamp is not None and stamp < cutoff:
                delete_record(self._handle, job.job_id)
                removed += 1
        if removed:
            logger.info("Cleaned up %s terminal jobs older than %s days", removed, self.config.JOB_RETENTION_DAYS)
        return removed


def _rejected(job: Job, error: str, now: datetime) -> Job:
    job.status = JobStatus.FAILED.value
    job.permanent = True
    job.error = error
    job.last_retry_at = now
    return job


def _apply_send_mode(items: List[Mapping[str, Any]], instance: ActionInstance) -> set:
    """Indexes to send. ``first``/``last`` keep one item per mobile number."""
    if instance.send_mode not in ("first", "last"):
        return set(range(len(items)))
    chosen: Dict[str, int] = {}
    for index, item in enumerate(items):
        mobile = field_value(item, instance.recipient_field) or f"__none_{index}"
        if instance.send_mode == "last" or mobile not in chosen:
            chosen[mobile] = index
    return set(chosen.values())


def _custom_object_payload(instance: ActionInstance, job: Job) -> Dict[str, Any]:
    fmap = instance.field_map or {}
    values = {
        fmap.get("mobile"): job.mobile,
        fmap.get("email"): job.email or "",
        fmap.get("outgoing"): job.message,
        fmap.get("notification"): "sent",
        fmap.get("virtual_number"): job.from_id,
        fmap.get("title"): instance.asset_name or "",
    }
    return {
        "custom_object_id": instance.custom_object_id,
        "field_values": {fid: value for fid, value in values.items() if fid and value is not None},
    }


QUEUE = JobQueue()
