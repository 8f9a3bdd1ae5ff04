"""
Feeder steps: inject Platform records from inbound SMS and link-hit events.

Two paths share the same filtering and field mapping:

* reactive: every stored reply / link hit is offered to the tenant's
  configured feeders; a matching event writes one custom-object record.
* pull: the Platform calls notify with ``maxRows``/``offset`` and receives
  mapped items for events not yet fed, which are then marked fed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from smsbridge.datastore import run_io
from smsbridge.decision_evaluator import reply_matches
from smsbridge.errors import BridgeError
from smsbridge.phone import same_number
from smsbridge.runtime import get_logger, iso
from smsbridge.schema import FeederInstance, FeederType, LinkHit, SmsReply, StepKind
from smsbridge.sms_logs import mark_fed

if TYPE_CHECKING:
    from smsbridge.context import AppContext

logger = get_logger("feeder")

Event = Union[SmsReply, LinkHit]
DEFAULT_MAX_ROWS = 100


def accepts(instance: FeederInstance, event: Event) -> bool:
    if instance.requires_configuration or not instance.is_active:
        return False
    if isinstance(event, SmsReply):
        if instance.feeder_type != FeederType.INCOMING_SMS.value:
            return False
        if instance.sender_ids and not any(same_number(event.to_number, s) for s in instance.sender_ids):
            return False
        return reply_matches(instance.text_type, instance.keyword, event.message)
    return instance.feeder_type == FeederType.LINK_HITS.value


def map_event(instance: FeederInstance, event: Event) -> Dict[str, Any]:
    """Mapped field name/id -> value for one event. Unmapped fields are left out."""
    fmap = instance.field_mappings or {}
    if isinstance(event, SmsReply):
        values = {
            "mobile": event.from_mobile,
            "email": event.email or "",
            "message": event.message,
            "timestamp": iso(event.received_at),
            "message_id": event.message_id or event.response_id,
            "sender_id": event.to_number,
        }
    else:
        values = {
            "mobile": event.mobile,
            "email": event.email or "",
            "url": event.short_url,
            "original_url": event.original_url or "",
            "timestamp": iso(event.clicked_at),
            "link_hits": event.link_hits or 1,
            "message_id": event.message_id,
        }
    return {fmap[key]: value for key, value in values.items() if fmap.get(key) and value is not None}


class FeederService:
    def __init__(self, ctx: "AppContext") -> None:
        self.ctx = ctx

    async def _feeders(self, install_id: Optional[str]) -> List[FeederInstance]:
        if not install_id:
            return []
        return await run_io(self.ctx.instances.list_active, StepKind.FEEDER, install_id)

    # --------------------------------------------------------------- reactive
    async def offer(self, event: Event, only: Optional[FeederInstance] = None) -> int:
        """Write ``event`` to every matching feeder's custom object. Returns writes made."""
        feeders = [only] if only is not None else await self._feeders(event.install_id)
        written = 0
        for instance in feeders:
            if not instance.custom_object_id or not accepts(instance, event):
                continue
            values = map_event(instance, event)
            if not values:
                continue
            try:
                await self.ctx.platform(instance.install_id).create_custom_object_record(
                    instance.custom_object_id, values
                )
            except BridgeError as exc:
                logger.error("Feeder %s custom object write failed: %s", instance.instance_id, exc)
                continue
            await run_io(self.ctx.instances.increment, instance, records_sent=1)
            written += 1
        return written

    async def incoming_sms(self, instance_id: str, install_id: Optional[str], data: Dict[str, Any]) -> SmsReply:
        """Forwarded SMS for a single incoming_sms feeder."""
        ctx = self.ctx
        instance = await run_io(ctx.instances.require, StepKind.FEEDER, instance_id)
        install_id = install_id or instance.install_id
        log = await run_io(ctx.sms_logs.latest_sent, install_id, mobile=data.get("mobile"))
        reply = await run_io(
            ctx.replies.create,
            SmsReply(
                install_id=install_id,
                from_mobile=str(data.get("mobile") or ""),
                to_number=data.get("longcode"),
                message=str(data.get("response") or ""),
                message_id=data.get("message_id"),
                response_id=data.get("response_id"),
                is_optout=str(data.get("is_optout") or "").lower() == "yes",
                contact_id=log.contact_id if log else None,
                email=log.email if log else None,
                sms_log_id=log.record_id if log else None,
            ),
        )
        await self.offer(reply, only=instance)
        logger.info("Incoming SMS %s stored for feeder %s", reply.record_id, instance_id)
        return reply

    # ------------------------------------------------------------------- pull
    async def pull(self, instance_id: str, max_rows: Any = DEFAULT_MAX_ROWS, offset: Any = 0) -> Dict[str, Any]:
        ctx = self.ctx
        instance = await run_io(ctx.instances.require, StepKind.FEEDER, instance_id)
        max_rows = _non_negative(max_rows, DEFAULT_MAX_ROWS)
        offset = _non_negative(offset, 0)
        if instance.feeder_type == FeederType.LINK_HITS.value:
            store = ctx.link_hits
        else:
            store = ctx.replies
        events = [e for e in await run_io(store.unfed, instance.install_id) if accepts(instance, e)]
        page = events[offset : offset + max_rows]
        items = [map_event(instance, event) for event in page]
        if page:
            await run_io(mark_fed, store, page)
            await run_io(ctx.instances.increment, instance, records_sent=len(page))
        logger.info("Feeder notify %s: %s items", instance_id, len(items))
        return {"count": len(items), "items": items}

    # ---------------------------------------------------------------- forwards
    async def register_forwarding(self, instance: FeederInstance) -> Dict[str, str]:
        """Point each sender number at this feeder's incoming-SMS endpoint."""
        if instance.feeder_type != FeederType.INCOMING_SMS.value or not instance.sender_ids:
            return {}
        ctx = self.ctx
        credentials = await run_io(ctx.tenants.get_gateway_credentials, instance.install_id)
        if credentials is None:
            logger.warning("Cannot configure forward URLs for %s: no gateway credentials", instance.instance_id)
            return {}
        gateway = ctx.gateway(credentials)
        forward_url = ctx.callback_url(
            "/eloqua/feeder/incomingsms", instanceId=instance.instance_id, installId=instance.install_id
        )
        results: Dict[str, str] = {}
        for number in instance.sender_ids:
            try:
                await gateway.edit_number_options(number, forward_url)
                results[number] = "ok"
            except BridgeError as exc:
                logger.error("Forward URL for %s failed: %s", number, exc)
                results[number] = str(exc)
        return results


def _non_negative(value: Any, default: int) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default
