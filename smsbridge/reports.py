"""
Action instance reports
-----------------------
Read-only views over the SmsLog audit trail of one action instance:
summary totals, paged rows, failed rows, grouped error analysis, CSV
export and a single-message view enriched with live gateway status.
"""

from __future__ import annotations

import csv
import io
import re
from collections import Counter
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from smsbridge.datastore import run_io
from smsbridge.errors import BridgeError, NotFoundError, ValidationError
from smsbridge.runtime import get_logger, iso
from smsbridge.schema import SmsLog, SmsStatus, StepKind

if TYPE_CHECKING:
    from smsbridge.context import AppContext

logger = get_logger("reports")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500
FAILED_STATES = (SmsStatus.FAILED.value, SmsStatus.EXPIRED.value)

CSV_COLUMNS = (
    "message_id",
    "contact_id",
    "email",
    "mobile",
    "status",
    "sent_at",
    "delivered_at",
    "error_code",
    "error",
    "link_hits",
    "has_response",
    "response_message",
    "message",
)

_DIGITS = re.compile(r"\d+")


def log_row(log: SmsLog) -> Dict[str, Any]:
    return {
        "id": log.record_id,
        "message_id": log.message_id,
        "contact_id": log.contact_id,
        "email": log.email,
        "mobile": log.mobile,
        "message": log.message,
        "sender_id": log.sender_id,
        "status": log.status,
        "sent_at": iso(log.sent_at),
        "delivered_at": iso(log.delivered_at),
        "error_code": log.error_code,
        "error": log.error,
        "link_hits": log.link_hits or 0,
        "has_response": log.has_response,
        "response_message": log.response_message,
        "created_at": iso(log.created_at),
    }


def error_signature(message: Optional[str]) -> str:
    """Group key for an error text: trimmed, lower-cased, numbers masked."""
    return _DIGITS.sub("#", (message or "unknown error").strip().lower())


def summarize(logs: List[SmsLog]) -> Dict[str, Any]:
    statuses = Counter(log.status for log in logs)
    total = len(logs)
    delivered = statuses.get(SmsStatus.DELIVERED.value, 0)
    failed = sum(statuses.get(s, 0) for s in FAILED_STATES)
    return {
        "total": total,
        "statuses": dict(statuses),
        "delivered": delivered,
        "failed": failed,
        "deliveryRate": round(delivered / total, 4) if total else 0.0,
        "replies": sum(1 for log in logs if log.has_response),
        "linkHits": sum(log.link_hits or 0 for log in logs),
    }


def paginate(logs: List[SmsLog], page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, status: Optional[str] = None):
    if page < 1 or page_size < 1:
        raise ValidationError("page and pageSize must be positive")
    page_size = min(page_size, MAX_PAGE_SIZE)
    if status:
        logs = [log for log in logs if log.status == status]
    start = (page - 1) * page_size
    return {
        "page": page,
        "pageSize": page_size,
        "total": len(logs),
        "items": [log_row(log) for log in logs[start : start + page_size]],
    }


def error_rows(logs: List[SmsLog]) -> List[Dict[str, Any]]:
    return [log_row(log) for log in logs if log.status in FAILED_STATES or log.error]


def error_analysis(logs: List[SmsLog]) -> Dict[str, Any]:
    """Failed logs grouped by error code and normalized error text, largest group first."""
    groups: Dict[tuple, Dict[str, Any]] = {}
    failed = [log for log in logs if log.status in FAILED_STATES or log.error]
    for log in failed:
        key = (log.error_code or "", error_signature(log.error))
        group = groups.setdefault(
            key, {"errorCode": log.error_code, "error": log.error, "count": 0, "mobiles": []}
        )
        group["count"] += 1
        if log.mobile and len(group["mobiles"]) < 5:
            group["mobiles"].append(log.mobile)
    ordered = sorted(groups.values(), key=lambda g: g["count"], reverse=True)
    for group in ordered:
        group["share"] = round(group["count"] / len(failed), 4)
    return {"failed": len(failed), "total": len(logs), "groups": ordered}


def to_csv(logs: List[SmsLog]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_COLUMNS)
    for log in logs:
        row = log_row(log)
        writer.writerow(["" if row.get(col) is None else row.get(col) for col in CSV_COLUMNS])
    return buf.getvalue()


class ReportService:
    def __init__(self, ctx: "AppContext") -> None:
        self.ctx = ctx

    async def logs(self, instance_id: str) -> List[SmsLog]:
        await run_io(self.ctx.instances.require, StepKind.ACTION, instance_id)
        return await run_io(self.ctx.sms_logs.for_instance, instance_id)

    async def summary(self, instance_id: str) -> Dict[str, Any]:
        instance = await run_io(self.ctx.instances.require, StepKind.ACTION, instance_id)
        logs = await run_io(self.ctx.sms_logs.for_instance, instance_id)
        return {
            "instanceId": instance_id,
            "assetName": instance.asset_name,
            "totalSent": instance.total_sent,
            "totalFailed": instance.total_failed,
            "lastExecutedAt": iso(instance.last_executed_at),
            **summarize(logs),
        }

    async def message(self, instance_id: str, message_id: str) -> Dict[str, Any]:
        """One log plus the gateway's current delivery status and replies for it."""
        log = await run_io(self.ctx.sms_logs.find_by_message_id, message_id)
        if log is None or log.instance_id != instance_id:
            raise NotFoundError(f"Unknown message {message_id} for instance {instance_id}")
        out: Dict[str, Any] = {"log": log_row(log), "delivery": None, "responses": None}
        try:
            credentials = await run_io(self.ctx.tenants.get_gateway_credentials, log.install_id)
            gateway = self.ctx.gateway(credentials)
            out["delivery"] = await gateway.get_delivery_status(message_id)
            out["responses"] = await gateway.get_sms_responses(message_id)
        except BridgeError as exc:
            logger.warning("Live status lookup failed for message %s: %s", message_id, exc)
            out["gatewayError"] = str(exc)
        return out
