"""
Inbound gateway events: delivery reports, SMS replies and tracked-link hits.

Replies are correlated to the outbound SmsLog first by gateway message id,
then by sender number among logs still waiting for a decision. A correlated
reply is merged into the log and handed to the decision evaluator.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from smsbridge.datastore import run_io
from smsbridge.decision_evaluator import DecisionEvaluator, Verdict
from smsbridge.errors import BridgeError
from smsbridge.feeder import FeederService
from smsbridge.runtime import get_logger, parse_dt, utc_now
from smsbridge.schema import LinkHit, SmsLog, SmsReply, SmsStatus, StepKind

if TYPE_CHECKING:
    from smsbridge.context import AppContext

logger = get_logger("inbound")

DLR_STATUS_MAP = {
    "delivered": SmsStatus.DELIVERED.value,
    "sent": SmsStatus.SENT.value,
    "failed": SmsStatus.FAILED.value,
    "expired": SmsStatus.EXPIRED.value,
    "rejected": SmsStatus.FAILED.value,
    "undelivered": SmsStatus.FAILED.value,
}
URL_RE = re.compile(r"https?://\S+")
SHORT_LINK_HOSTS = ("tapth.is", "tap.th")


def map_dlr_status(value: Any) -> str:
    return DLR_STATUS_MAP.get(str(value or "").strip().lower(), SmsStatus.PENDING.value)


def extract_short_url(message: Optional[str]) -> Optional[str]:
    urls = URL_RE.findall(message or "")
    for url in urls:
        if any(host in url.lower() for host in SHORT_LINK_HOSTS):
            return url
    return urls[0] if urls else None


def _int(value: Any, default: int = 1) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class ReplyOutcome:
    reply: SmsReply
    log: Optional[SmsLog] = None
    verdict: Optional[Verdict] = None

    @property
    def correlated(self) -> bool:
        return self.log is not None


class InboundService:
    def __init__(self, ctx: "AppContext", evaluator: DecisionEvaluator, feeder: FeederService) -> None:
        self.ctx = ctx
        self.evaluator = evaluator
        self.feeder = feeder

    # -------------------------------------------------------------------- DLR
    async def delivery_report(self, data: Mapping[str, Any]) -> Optional[SmsLog]:
        message_id = data.get("message_id")
        log = await run_io(self.ctx.sms_logs.find_by_message_id, message_id)
        if log is None:
            logger.warning("DLR for unknown message_id=%s", message_id)
            return None
        status = map_dlr_status(data.get("status"))
        changes: Dict[str, Any] = {"status": status}
        if status == SmsStatus.DELIVERED.value:
            changes["delivered_at"] = parse_dt(data.get("datetime")) or utc_now()
        if data.get("error_code"):
            changes["error_code"] = str(data.get("error_code"))
            changes["error"] = data.get("error_text") or f"Error code: {data.get('error_code')}"
        log = await run_io(self.ctx.sms_logs.update, log, **changes)
        logger.info("DLR message_id=%s -> %s", message_id, status)
        await self._sync_notification(log, status)
        return log

    async def _sync_notification(self, log: SmsLog, status: str) -> None:
        """Mirror the delivery status onto the action's custom object record, when it has one."""
        ctx = self.ctx
        job = await run_io(ctx.queue.get, log.job_id) if log.job_id else None
        if job is None or not job.custom_object_record_id:
            return
        instance = await run_io(ctx.instances.get, StepKind.ACTION, job.instance_id, include_deleted=True)
        if instance is None or not instance.custom_object_id:
            return
        field_id = (instance.field_map or {}).get("notification")
        if not field_id:
            return
        try:
            await ctx.platform(log.install_id).update_custom_object_record(
                instance.custom_object_id, job.custom_object_record_id, {field_id: status}
            )
        except BridgeError as exc:
            logger.warning("Custom object status update failed for message %s: %s", log.message_id, exc)

    # ----------------------------------------------------------------- replies
    async def _correlate(self, message_id: Optional[str], mobile: str, now: datetime, install_id: Optional[str]):
        log = await run_io(self.ctx.sms_logs.find_by_message_id, message_id)
        if log is None and mobile:
            log = await run_io(self.ctx.sms_logs.pending_for_mobile, mobile, now, install_id)
        return log

    async def reply(self, data: Mapping[str, Any], now: Optional[datetime] = None) -> ReplyOutcome:
        ctx = self.ctx
        now = now or utc_now()
        mobile = str(data.get("mobile") or "")
        message_id = data.get("message_id")
        seen = await run_io(ctx.replies.find_by_response_id, data.get("response_id"))
        if seen is not None:
            logger.info("Duplicate reply webhook response_id=%s ignored", seen.response_id)
            return ReplyOutcome(reply=seen, log=await run_io(ctx.sms_logs.get, seen.sms_log_id))

        log = await self._correlate(message_id, mobile, now, data.get("installId"))
        reply = await run_io(
            ctx.replies.create,
            SmsReply(
                install_id=(log.install_id if log else None) or data.get("installId"),
                from_mobile=mobile,
                to_number=data.get("longcode"),
                message=str(data.get("response") or ""),
                message_id=message_id,
                response_id=data.get("response_id"),
                received_at=parse_dt(data.get("datetime_entry")) or now,
                is_optout=str(data.get("is_optout") or "").lower() == "yes",
                contact_id=(log.contact_id if log else None) or data.get("contactId"),
                email=log.email if log else None,
                sms_log_id=log.record_id if log else None,
            ),
        )
        outcome = ReplyOutcome(reply=reply, log=log)
        if log is None:
            logger.info("Reply %s from %s not correlated to any SMS", reply.record_id, mobile)
        else:
            outcome.log = await run_io(
                ctx.sms_logs.update,
                log,
                has_response=True,
                response_message=reply.message,
                response_received_at=reply.received_at,
                reply_id=reply.record_id,
            )
            outcome.verdict = await self.evaluator.on_reply(outcome.log, now=now)
            outcome.reply = await run_io(ctx.replies.update, reply, processed=True, sms_log_id=log.record_id)
            if outcome.verdict is not None:
                await self.evaluator.emit([outcome.verdict])

        await self.feeder.offer(outcome.reply)
        return outcome

    # --------------------------------------------------------------- link hits
    async def link_hit(self, data: Mapping[str, Any]) -> LinkHit:
        ctx = self.ctx
        mobile = data.get("mobile")
        message_id = data.get("message_id")
        log = await run_io(ctx.sms_logs.find_by_message_id, message_id)
        short_url = extract_short_url(data.get("message"))
        hits = max(1, _int(data.get("link_hits")))

        hit = await run_io(
            ctx.link_hits.create,
            LinkHit(
                install_id=(log.install_id if log else None) or data.get("installId"),
                mobile=mobile,
                message_id=message_id,
                contact_id=(log.contact_id if log else None) or data.get("contactId"),
                email=log.email if log else None,
                short_url=short_url,
                original_url=log.tracked_link_original_url if log else None,
                link_hits=hits,
                clicked_at=parse_dt(data.get("datetime")) or utc_now(),
                sms_log_id=log.record_id if log else None,
            ),
        )
        if log is not None:
            changes: Dict[str, Any] = {"link_hits": hits}
            if short_url:
                changes["tracked_link_short_url"] = short_url
            await run_io(ctx.sms_logs.update, log, **changes)
        else:
            logger.info("Link hit for unknown message_id=%s", message_id)

        await self.feeder.offer(hit)
        return hit
