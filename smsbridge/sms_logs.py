"""Audit records: outbound SMS logs, inbound replies and tracked-link hits."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from smsbridge.datastore import (
    CONNECTOR,
    create_record,
    first_record,
    get_record,
    list_records,
    match_formula,
    update_record,
)
from smsbridge.phone import same_number
from smsbridge.runtime import get_logger, utc_now
from smsbridge.schema import DecisionStatus, Job, LinkHit, SmsLog, SmsReply, SmsStatus

logger = get_logger("sms_logs")

SENT_STATES = (SmsStatus.SENT.value, SmsStatus.DELIVERED.value)


class SmsLogStore:
    def __init__(self, connector=CONNECTOR) -> None:
        self._connector = connector

    @property
    def _handle(self):
        return self._connector.sms_logs()

    def _logs(self, **match: Any) -> List[SmsLog]:
        return [SmsLog.from_record(r) for r in list_records(self._handle, formula=match_formula(**match))]

    def get(self, log_id: Optional[str]) -> Optional[SmsLog]:
        record = get_record(self._handle, log_id)
        return SmsLog.from_record(record) if record else None

    def create(self, log: SmsLog) -> SmsLog:
        log.created_at = log.created_at or utc_now()
        return SmsLog.from_record(create_record(self._handle, log.to_fields()))

    def create_for_job(self, job: Job, campaign_title: Optional[str] = None) -> SmsLog:
        failed = job.terminal and job.status != "sent"
        return self.create(
            SmsLog(
                install_id=job.install_id,
                instance_id=job.instance_id,
                job_id=job.job_id,
                contact_id=job.contact_id,
                email=job.email,
                mobile=job.mobile,
                message=job.message,
                sender_id=job.from_id,
                campaign_title=campaign_title,
                status=SmsStatus.FAILED.value if failed else SmsStatus.PENDING.value,
                error=job.error if failed else None,
                tracked_link_requested=bool(job.tracked_link_url),
                tracked_link_original_url=job.tracked_link_url,
            )
        )

    def update(self, log: SmsLog, **changes: Any) -> SmsLog:
        record = update_record(self._handle, log.record_id, SmsLog.encode_fields(changes))
        return SmsLog.from_record(record)

    def find_by_message_id(self, message_id: Optional[str]) -> Optional[SmsLog]:
        if not message_id:
            return None
        record = first_record(self._handle, formula=match_formula(message_id=str(message_id)))
        return SmsLog.from_record(record) if record else None

    def for_instance(self, instance_id: str) -> List[SmsLog]:
        """Action logs for one instance, newest first."""
        logs = self._logs(instance_id=instance_id)
        logs.sort(key=lambda log: log.created_at or log.sent_at or utc_now(), reverse=True)
        return logs

    def latest_sent(
        self,
        install_id: str,
        *,
        contact_id: Optional[str] = None,
        mobile: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Optional[SmsLog]:
        """Most recent sent/delivered log for a contact (by id, then by number)."""
        candidates: List[SmsLog] = []
        if contact_id:
            candidates = self._logs(install_id=install_id, contact_id=contact_id)
        if not candidates and mobile:
            candidates = [log for log in self._logs(install_id=install_id) if same_number(log.mobile, mobile)]
        candidates = [
            log
            for log in candidates
            if log.status in SENT_STATES and log.sent_at is not None and (since is None or log.sent_at >= since)
        ]
        candidates.sort(key=lambda log: log.sent_at, reverse=True)  # type: ignore[arg-type,return-value]
        return candidates[0] if candidates else None

    def pending_for_mobile(self, mobile: str, now: datetime, install_id: Optional[str] = None) -> Optional[SmsLog]:
        """Most recent pending decision log for ``mobile`` whose deadline has not passed."""
        match: Dict[str, Any] = {"decision_status": DecisionStatus.PENDING.value}
        if install_id:
            match["install_id"] = install_id
        logs = [
            log
            for log in self._logs(**match)
            if same_number(log.mobile, mobile) and log.decision_deadline is not None and log.decision_deadline >= now
        ]
        logs.sort(key=lambda log: log.sent_at or log.created_at or now, reverse=True)
        return logs[0] if logs else None

    def due_for_sweep(self, now: datetime, limit: int) -> List[SmsLog]:
        logs = [
            log
            for log in self._logs(decision_status=DecisionStatus.PENDING.value)
            if log.decision_deadline is not None and log.decision_deadline < now
        ]
        logs.sort(key=lambda log: log.decision_deadline)  # type: ignore[arg-type,return-value]
        return logs[: max(0, limit)]

    def decision_stats(self, install_id: Optional[str] = None, instance_id: Optional[str] = None) -> Dict[str, int]:
        match: Dict[str, Any] = {}
        if install_id:
            match["install_id"] = install_id
        if instance_id:
            match["decision_instance_id"] = instance_id
        formula = match_formula(**match)
        records = list_records(self._handle, formula=formula) if formula else list_records(self._handle)
        counts = Counter()
        for record in records:
            log = SmsLog.from_record(record)
            if not log.decision_instance_id:
                continue
            counts["total"] += 1
            counts[log.decision_status or "unknown"] += 1
            if log.has_response:
                counts["with_response"] += 1
            if log.decision_reason:
                counts[f"reason_{log.decision_reason}"] += 1
        return dict(counts)

    def status_counts(self, install_id: str) -> Dict[str, int]:
        return dict(Counter(log.status for log in self._logs(install_id=install_id)))


class SmsReplyStore:
    def __init__(self, connector=CONNECTOR) -> None:
        self._connector = connector

    @property
    def _handle(self):
        return self._connector.sms_replies()

    def create(self, reply: SmsReply) -> SmsReply:
        reply.received_at = reply.received_at or utc_now()
        return SmsReply.from_record(create_record(self._handle, reply.to_fields()))

    def update(self, reply: SmsReply, **changes: Any) -> SmsReply:
        record = update_record(self._handle, reply.record_id, SmsReply.encode_fields(changes))
        return SmsReply.from_record(record)

    def get(self, reply_id: Optional[str]) -> Optional[SmsReply]:
        record = get_record(self._handle, reply_id)
        return SmsReply.from_record(record) if record else None

    def find_by_response_id(self, response_id: Optional[str]) -> Optional[SmsReply]:
        if not response_id:
            return None
        record = first_record(self._handle, formula=match_formula(response_id=str(response_id)))
        return SmsReply.from_record(record) if record else None

    def unfed(self, install_id: str) -> List[SmsReply]:
        replies = [
            SmsReply.from_record(r) for r in list_records(self._handle, formula=match_formula(install_id=install_id))
        ]
        replies = [r for r in replies if not r.feeder_processed]
        replies.sort(key=lambda r: r.received_at or utc_now())
        return replies


class LinkHitStore:
    def __init__(self, connector=CONNECTOR) -> None:
        self._connector = connector

    @property
    def _handle(self):
        return self._connector.link_hits()

    def create(self, hit: LinkHit) -> LinkHit:
        hit.clicked_at = hit.clicked_at or utc_now()
        return LinkHit.from_record(create_record(self._handle, hit.to_fields()))

    def update(self, hit: LinkHit, **changes: Any) -> LinkHit:
        record = update_record(self._handle, hit.record_id, LinkHit.encode_fields(changes))
        return LinkHit.from_record(record)

    def unfed(self, install_id: str) -> List[LinkHit]:
        hits = [LinkHit.from_record(r) for r in list_records(self._handle, formula=match_formula(install_id=install_id))]
        hits = [h for h in hits if not h.feeder_processed]
        hits.sort(key=lambda h: h.clicked_at or utc_now())
        return hits


def mark_fed(store: Any, records: Iterable[Any]) -> None:
    for record in records:
        store.update(record, feeder_processed=True)


SMS_LOGS = SmsLogStore()
SMS_REPLIES = SmsReplyStore()
LINK_HITS = LinkHitStore()
