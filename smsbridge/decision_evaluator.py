"""
Decision evaluator
------------------
Per-contact yes/no state machine for decision steps.

A contact reaching a decision step is attached to the most recent SMS it
was sent inside the evaluation window; the verdict is produced by the first
of: a response already present at notify time, a correlated inbound reply,
or the deadline sweeper once the window has elapsed.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple

from smsbridge.config import CUSTOM_OBJECT_TEXT_LIMIT, UNBOUNDED_WINDOW_HOURS
from smsbridge.datastore import run_io
from smsbridge.errors import BridgeError, ValidationError
from smsbridge.job_queue import item_contact_id, item_email
from smsbridge.phone import try_format_phone
from smsbridge.runtime import get_logger, truncate, utc_now
from smsbridge.schema import DecisionInstance, DecisionStatus, MatchMode, SmsLog, StepKind
from smsbridge.send_worker import PeriodicWorker
from smsbridge.templates import field_value

if TYPE_CHECKING:
    from smsbridge.context import AppContext

logger = get_logger("decision_evaluator")

YES = DecisionStatus.YES.value
NO = DecisionStatus.NO.value
PENDING = DecisionStatus.PENDING.value

REASON_MATCHED = "matched"
REASON_NO_MATCH = "no_match"
REASON_NO_SMS = "no_sms_sent"
REASON_TIMEOUT = "timeout"
REASON_EXPIRED = "expired"

RESPONSE_TITLE = "SMS Reply Received"


@dataclass(frozen=True)
class Verdict:
    install_id: str
    instance_id: str
    execution_id: Optional[str]
    contact_id: Optional[str]
    email: Optional[str]
    verdict: str
    reason: str
    sms_log_id: Optional[str] = None

    @property
    def group_key(self) -> Tuple[str, str, str, str]:
        return (self.install_id, self.instance_id, self.execution_id or "", self.verdict)


def window_hours(evaluation_period: Optional[int]) -> int:
    if evaluation_period == -1:
        return UNBOUNDED_WINDOW_HOURS
    return max(1, int(evaluation_period or 1))


def parse_keywords(raw: Optional[str]) -> List[str]:
    return [k for k in (part.strip().lower() for part in (raw or "").split(",")) if k]


def reply_matches(text_type: Optional[str], keyword: Optional[str], message: Optional[str]) -> bool:
    """Anything: any non-empty reply. Keyword: case-insensitive contains of any keyword."""
    text = (message or "").strip().lower()
    if not text:
        return False
    if text_type != MatchMode.KEYWORD.value:
        return True
    return any(k in text for k in parse_keywords(keyword))


class DecisionEvaluator:
    def __init__(self, ctx: "AppContext") -> None:
        self.ctx = ctx
        self.stats: Counter = Counter()

    # ---------------------------------------------------------------- notify
    async def on_notify(
        self,
        install_id: str,
        instance_id: str,
        execution_id: str,
        items: Iterable[Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> List[Verdict]:
        """Attach contacts to their latest SMS. Returns verdicts decidable right now."""
        if not execution_id:
            raise ValidationError("executionId is required for decision notify")
        ctx = self.ctx
        now = now or utc_now()
        tenant = await run_io(ctx.tenants.require, install_id)
        instance = await run_io(ctx.instances.require, StepKind.DECISION, instance_id)
        window = timedelta(hours=window_hours(instance.evaluation_period))
        since = now - window

        verdicts: List[Verdict] = []
        for item in items:
            contact_id = item_contact_id(item)
            email = item_email(item)
            mobile = try_format_phone(field_value(item, instance.recipient_field), tenant.default_country)
            try:
                log = await run_io(
                    ctx.sms_logs.latest_sent, install_id, contact_id=contact_id, mobile=mobile, since=since
                )
                if log is None:
                    verdict = Verdict(install_id, instance_id, execution_id, contact_id, email, NO, REASON_NO_SMS)
                    verdicts.append(self._count(verdict))
                    continue
                if log.decision_instance_id == instance_id:
                    if log.decision_execution_id == execution_id:
                        logger.info("Contact %s already attached to %s/%s", contact_id, instance_id, execution_id)
                        self.stats["replayed"] += 1
                        continue
                    if log.decision_status == PENDING:
                        # still waiting: move to the new execution, keep the deadline
                        await run_io(ctx.sms_logs.update, log, decision_execution_id=execution_id)
                        continue
                log = await run_io(
                    ctx.sms_logs.update,
                    log,
                    decision_instance_id=instance_id,
                    decision_execution_id=execution_id,
                    decision_deadline=log.sent_at + window,
                    decision_status=PENDING,
                    decision_reason=None,
                    decision_processed_at=None,
                )
                if log.has_response:
                    verdicts.append(await self._finalize(log, instance, *self._evaluate(log, instance), now=now))
            except BridgeError as exc:
                self.stats["errors"] += 1
                logger.error("Decision attach failed for contact %s: %s", contact_id, exc)
        logger.info("Decision notify %s/%s: immediate=%s", instance_id, execution_id, len(verdicts))
        return verdicts

    # ---------------------------------------------------------------- replies
    async def on_reply(self, log: SmsLog, now: Optional[datetime] = None) -> Optional[Verdict]:
        """Decide a log that just received a correlated reply. Non-pending logs are left alone."""
        if log.decision_status != PENDING or not log.decision_instance_id:
            return None
        now = now or utc_now()
        instance = await run_io(
            self.ctx.instances.get, StepKind.DECISION, log.decision_instance_id, include_deleted=True
        )
        if instance is None:
            logger.error("SmsLog %s points at unknown decision instance %s", log.record_id, log.decision_instance_id)
            return None
        if log.decision_deadline is not None and now > log.decision_deadline:
            return await self._finalize(log, instance, NO, REASON_EXPIRED, now=now)
        return await self._finalize(log, instance, *self._evaluate(log, instance), now=now)

    # ------------------------------------------------------------------ sweep
    async def sweep(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Verdict]:
        now = now or utc_now()
        limit = limit if limit is not None else self.ctx.config.SWEEP_BATCH_SIZE
        logs = await run_io(self.ctx.sms_logs.due_for_sweep, now, limit)
        verdicts: List[Verdict] = []
        for log in logs:
            instance = await run_io(
                self.ctx.instances.get, StepKind.DECISION, log.decision_instance_id, include_deleted=True
            )
            if instance is None:
                logger.error("Sweep: decision instance %s missing for log %s", log.decision_instance_id, log.record_id)
                instance = DecisionInstance(instance_id=log.decision_instance_id or "", install_id=log.install_id)
            if log.has_response:
                verdict, reason = self._evaluate(log, instance)
            else:
                verdict, reason = NO, REASON_TIMEOUT
            try:
                verdicts.append(await self._finalize(log, instance, verdict, reason, now=now))
            except BridgeError as exc:
                self.stats["errors"] += 1
                logger.error("Sweep: could not finalize log %s: %s", log.record_id, exc)
        return verdicts

    # ---------------------------------------------------------------- helpers
    @staticmethod
    def _evaluate(log: SmsLog, instance: DecisionInstance) -> Tuple[str, str]:
        if reply_matches(instance.text_type, instance.keyword, log.response_message):
            return YES, REASON_MATCHED
        return NO, REASON_NO_MATCH

    def _count(self, verdict: Verdict) -> Verdict:
        self.stats["processed"] += 1
        self.stats[verdict.verdict] += 1
        if verdict.reason == REASON_EXPIRED:
            self.stats["expired"] += 1
        return verdict

    async def _finalize(
        self, log: SmsLog, instance: DecisionInstance, verdict: str, reason: str, *, now: datetime
    ) -> Verdict:
        ctx = self.ctx
        log = await run_io(
            ctx.sms_logs.update, log, decision_status=verdict, decision_reason=reason, decision_processed_at=now
        )
        if instance.record_id:
            counter = "total_yes" if verdict == YES else "total_no"
            await run_io(ctx.instances.increment, instance, **{counter: 1})
        if log.has_response and instance.custom_object_id:
            await self._write_response(log, instance)
        return self._count(
            Verdict(
                install_id=log.install_id,
                instance_id=instance.instance_id,
                execution_id=log.decision_execution_id,
                contact_id=log.contact_id,
                email=log.email,
                verdict=verdict,
                reason=reason,
                sms_log_id=log.record_id,
            )
        )

    async def _write_response(self, log: SmsLog, instance: DecisionInstance) -> None:
        fmap = instance.field_map or {}
        values = {
            fmap.get("mobile"): log.mobile,
            fmap.get("email"): log.email or "",
            fmap.get("response"): truncate(log.response_message, CUSTOM_OBJECT_TEXT_LIMIT),
            fmap.get("title"): RESPONSE_TITLE,
            fmap.get("virtual_number"): log.sender_id,
        }
        values = {fid: v for fid, v in values.items() if fid and v is not None}
        if not values:
            return
        try:
            await self.ctx.platform(log.install_id).create_custom_object_record(instance.custom_object_id, values)
        except BridgeError as exc:
            self.stats["errors"] += 1
            logger.error("Response custom object write failed for log %s: %s", log.record_id, exc)

    # ------------------------------------------------------------------- emit
    async def emit(self, verdicts: Iterable[Verdict]) -> int:
        """Post verdicts to the Platform, one import per (execution, verdict). Returns imports made."""
        groups: Dict[Tuple[str, str, str, str], List[Verdict]] = defaultdict(list)
        for verdict in verdicts:
            if not verdict.execution_id:
                logger.critical(
                    "Decision verdict for contact %s on %s has no execution id; workflow will not advance",
                    verdict.contact_id,
                    verdict.instance_id,
                )
                continue
            groups[verdict.group_key].append(verdict)

        sent = 0
        for (install_id, instance_id, execution_id, value), members in groups.items():
            rows = [{"ContactID": v.contact_id or "", "EmailAddress": v.email or ""} for v in members]
            try:
                await self.ctx.platform(install_id).sync_decision(instance_id, value, rows)
            except BridgeError as exc:
                self.stats["errors"] += 1
                logger.error(
                    "Decision sync failed for %s/%s (%s, %s rows): %s", instance_id, execution_id, value, len(rows), exc
                )
                continue
            sent += 1
        return sent

    async def decision_stats(self, install_id: Optional[str] = None) -> Dict[str, Any]:
        stored = await run_io(self.ctx.sms_logs.decision_stats, install_id)
        return {"process": dict(self.stats), "stored": stored}


class DeadlineSweeper(PeriodicWorker):
    name = "deadline_sweeper"

    def __init__(self, evaluator: DecisionEvaluator) -> None:
        cfg = evaluator.ctx.config
        super().__init__(cfg.SWEEP_INTERVAL_SEC, cfg.SHUTDOWN_TIMEOUT_SEC)
        self.evaluator = evaluator

    async def run_cycle(self) -> Dict[str, Any]:
        verdicts = await self.evaluator.sweep()
        imports = await self.evaluator.emit(verdicts)
        return {
            "finalized": len(verdicts),
            "yes": sum(1 for v in verdicts if v.verdict == YES),
            "no": sum(1 for v in verdicts if v.verdict == NO),
            "imports": imports,
        }
