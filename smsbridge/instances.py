"""Step instances (action / decision / feeder) and their configuration rules."""

from __future__ import annotations

import dataclasses
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional

from smsbridge.config import MAX_MESSAGE_LENGTH
from smsbridge.datastore import CONNECTOR, create_record, first_record, list_records, match_formula, update_record
from smsbridge.errors import NotFoundError, ValidationError
from smsbridge.runtime import get_logger, iso, utc_now
from smsbridge.schema import (
    INSTANCE_TYPES,
    ActionInstance,
    DecisionInstance,
    FeederInstance,
    FeederType,
    MatchMode,
    StepInstance,
    StepKind,
)
from smsbridge.templates import CONTACT_FIELD_RE, has_tracked_link

logger = get_logger("instances")

SEND_MODES = ("all", "first", "last")
ACTION_MAP_KEYS = ("mobile", "email", "outgoing", "notification", "virtual_number", "title")
DECISION_MAP_KEYS = ("mobile", "email", "response", "title", "virtual_number")
FEEDER_MAP_KEYS = (
    "mobile",
    "email",
    "message",
    "timestamp",
    "message_id",
    "sender_id",
    "url",
    "original_url",
    "link_hits",
)


class InstanceStore:
    def __init__(self, connector=CONNECTOR) -> None:
        self._connector = connector
        self._counter_lock = threading.Lock()

    def _handle(self, kind: StepKind):
        return {
            StepKind.ACTION: self._connector.action_instances,
            StepKind.DECISION: self._connector.decision_instances,
            StepKind.FEEDER: self._connector.feeder_instances,
        }[kind]()

    def _record(self, kind: StepKind, instance_id: str) -> Optional[Dict[str, Any]]:
        return first_record(self._handle(kind), formula=match_formula(instance_id=instance_id))

    def get(self, kind: StepKind, instance_id: str, *, include_deleted: bool = False) -> Optional[StepInstance]:
        if not instance_id:
            return None
        record = self._record(kind, instance_id)
        if not record:
            return None
        instance = INSTANCE_TYPES[kind].from_record(record)
        if not instance.is_active and not include_deleted:
            return None
        return instance

    def require(self, kind: StepKind, instance_id: str) -> StepInstance:
        instance = self.get(kind, instance_id)
        if instance is None:
            raise NotFoundError(f"{kind.value} instance {instance_id} not found")
        return instance

    def list_active(self, kind: StepKind, install_id: str) -> List[StepInstance]:
        records = list_records(self._handle(kind), formula=match_formula(install_id=install_id))
        out = [INSTANCE_TYPES[kind].from_record(r) for r in records]
        return [i for i in out if i.is_active]

    def create(
        self,
        kind: StepKind,
        instance_id: str,
        install_id: str,
        *,
        site_id: Optional[str] = None,
        asset_id: Optional[str] = None,
        asset_name: Optional[str] = None,
    ) -> StepInstance:
        if not instance_id or not install_id:
            raise ValidationError("instanceId and installId are required")
        existing = self.get(kind, instance_id, include_deleted=True)
        if existing is not None:
            return existing
        instance = INSTANCE_TYPES[kind](
            instance_id=instance_id,
            install_id=install_id,
            site_id=site_id,
            asset_id=asset_id,
            asset_name=asset_name,
            requires_configuration=True,
            created_at=utc_now(),
        )
        record = create_record(self._handle(kind), instance.to_fields())
        logger.info("Created %s instance %s for %s", kind.value, instance_id, install_id)
        return INSTANCE_TYPES[kind].from_record(record)

    def save(self, instance: StepInstance) -> StepInstance:
        if not instance.record_id:
            raise ValidationError("Instance has not been created")
        record = update_record(self._handle(instance.kind), instance.record_id, instance.to_fields())
        return type(instance).from_record(record)

    def update_fields(self, instance: StepInstance, **fields: Any) -> StepInstance:
        record = update_record(self._handle(instance.kind), instance.record_id, type(instance).encode_fields(fields))
        return type(instance).from_record(record)

    def increment(self, instance: StepInstance, **deltas: int) -> StepInstance:
        with self._counter_lock:
            current = self.get(instance.kind, instance.instance_id, include_deleted=True) or instance
            updates = {name: int(getattr(current, name) or 0) + delta for name, delta in deltas.items()}
            return self.update_fields(current, **updates)

    def copy(self, kind: StepKind, instance_id: str, new_instance_id: Optional[str] = None) -> StepInstance:
        source = self.require(kind, instance_id)
        new_id = new_instance_id or str(uuid.uuid4())
        if self.get(kind, new_id, include_deleted=True) is not None:
            raise ValidationError(f"Instance {new_id} already exists")
        reset: Dict[str, Any] = {name: (None if name == "last_executed_at" else 0) for name in type(source)._counters}
        clone = dataclasses.replace(
            source,
            record_id=None,
            instance_id=new_id,
            requires_configuration=True,
            is_active=True,
            created_at=utc_now(),
            deleted_at=None,
            **reset,
        )
        record = create_record(self._handle(kind), clone.to_fields())
        logger.info("Copied %s instance %s -> %s", kind.value, instance_id, new_id)
        return type(source).from_record(record)

    def soft_delete(self, kind: StepKind, instance_id: str) -> bool:
        record = self._record(kind, instance_id)
        if not record:
            return False
        update_record(self._handle(kind), record["id"], {"is_active": False, "deleted_at": iso(utc_now())})
        logger.info("Deleted %s instance %s", kind.value, instance_id)
        return True

    def disable_for_install(self, install_id: str) -> int:
        count = 0
        for kind in StepKind:
            for instance in self.list_active(kind, install_id):
                update_record(self._handle(kind), instance.record_id, {"is_active": False, "deleted_at": iso(utc_now())})
                count += 1
        return count


INSTANCES = InstanceStore()


# ---------------------------------------------------------------------------
# Configuration rules
# ---------------------------------------------------------------------------


def _clean_map(data: Optional[Mapping[str, Any]], keys) -> Dict[str, str]:
    return {k: str(v).strip() for k, v in (data or {}).items() if k in keys and v not in (None, "")}


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


def configure_action(instance: ActionInstance, data: Mapping[str, Any]) -> ActionInstance:
    message = (data.get("message") if "message" in data else instance.message) or ""
    if not message.strip():
        raise ValidationError("message is required")
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"message exceeds {MAX_MESSAGE_LENGTH} characters")
    tracked_link = data.get("tracked_link", instance.tracked_link) or None
    if has_tracked_link(message) and not tracked_link:
        raise ValidationError("tracked_link is required when the message contains [tracked-link]")

    expiry = data.get("message_expiry", instance.message_expiry)
    expiry = expiry is True or str(expiry).upper() in ("YES", "TRUE", "1")
    validity = _int(data.get("message_validity", instance.message_validity or 1), "message_validity")
    if expiry and not 1 <= validity <= 72:
        raise ValidationError("message_validity must be between 1 and 72 hours")
    send_mode = str(data.get("send_mode", instance.send_mode) or "all").lower()
    if send_mode not in SEND_MODES:
        raise ValidationError(f"send_mode must be one of {', '.join(SEND_MODES)}")

    field_map = _clean_map(data.get("field_map", instance.field_map), ACTION_MAP_KEYS)
    custom_object_id = data.get("custom_object_id", instance.custom_object_id) or None
    if custom_object_id and not field_map.get("mobile"):
        raise ValidationError("custom object mapping requires a mobile field")

    return dataclasses.replace(
        instance,
        message=message,
        caller_id=data.get("caller_id", instance.caller_id) or None,
        recipient_field=data.get("recipient_field", instance.recipient_field) or "C_MobilePhone",
        country_field=data.get("country_field", instance.country_field) or None,
        tracked_link=tracked_link,
        message_expiry=expiry,
        message_validity=validity,
        send_mode=send_mode,
        custom_object_id=custom_object_id,
        field_map=field_map,
        requires_configuration=False,
        configured_at=utc_now(),
    )


def configure_decision(instance: DecisionInstance, data: Mapping[str, Any]) -> DecisionInstance:
    period = _int(data.get("evaluation_period", instance.evaluation_period), "evaluation_period")
    if period != -1 and not 1 <= period <= 168:
        raise ValidationError("evaluation_period must be between 1 and 168 hours, or -1")
    text_type = data.get("text_type", instance.text_type)
    if text_type not in (MatchMode.ANYTHING.value, MatchMode.KEYWORD.value):
        raise ValidationError("text_type must be Anything or Keyword")
    keyword = (data.get("keyword", instance.keyword) or "").strip() or None
    if text_type == MatchMode.KEYWORD.value and not keyword:
        raise ValidationError("keyword is required when text_type is Keyword")
    field_map = _clean_map(data.get("field_map", instance.field_map), DECISION_MAP_KEYS)
    custom_object_id = data.get("custom_object_id", instance.custom_object_id) or None
    if custom_object_id and not (field_map.get("mobile") and field_map.get("email")):
        raise ValidationError("custom object mapping requires mobile and email fields")

    return dataclasses.replace(
        instance,
        evaluation_period=period,
        text_type=text_type,
        keyword=keyword,
        recipient_field=data.get("recipient_field", instance.recipient_field) or "C_MobilePhone",
        custom_object_id=custom_object_id,
        field_map=field_map,
        requires_configuration=False,
        configured_at=utc_now(),
    )


def configure_feeder(instance: FeederInstance, data: Mapping[str, Any]) -> FeederInstance:
    feeder_type = data.get("feeder_type", instance.feeder_type)
    if feeder_type not in (FeederType.INCOMING_SMS.value, FeederType.LINK_HITS.value):
        raise ValidationError("feeder_type must be incoming_sms or link_hits")
    text_type = data.get("text_type", instance.text_type) or MatchMode.ANYTHING.value
    if text_type not in (MatchMode.ANYTHING.value, MatchMode.KEYWORD.value):
        raise ValidationError("text_type must be Anything or Keyword")
    keyword = (data.get("keyword", instance.keyword) or "").strip() or None
    if text_type == MatchMode.KEYWORD.value and not keyword:
        raise ValidationError("keyword is required when text_type is Keyword")
    sender_ids = data.get("sender_ids", instance.sender_ids) or []
    if isinstance(sender_ids, str):
        sender_ids = [s for s in (p.strip() for p in sender_ids.split(",")) if s]
    field_mappings = _clean_map(data.get("field_mappings", instance.field_mappings), FEEDER_MAP_KEYS)
    custom_object_id = data.get("custom_object_id", instance.custom_object_id) or None
    if custom_object_id and not field_mappings:
        raise ValidationError("custom object feed requires at least one field mapping")

    return dataclasses.replace(
        instance,
        feeder_type=feeder_type,
        text_type=text_type,
        keyword=keyword,
        sender_ids=list(sender_ids),
        custom_object_id=custom_object_id,
        field_mappings=field_mappings,
        requires_configuration=False,
        configured_at=utc_now(),
    )


CONFIGURATORS = {
    StepKind.ACTION: configure_action,
    StepKind.DECISION: configure_decision,
    StepKind.FEEDER: configure_feeder,
}


def record_definition(instance: StepInstance) -> Dict[str, str]:
    """Contact fields the Platform must send with each notify item."""
    definition = {
        "ContactID": "{{Contact.Id}}",
        "EmailAddress": "{{Contact.Field(C_EmailAddress)}}",
    }
    for attr in ("recipient_field", "country_field"):
        name = getattr(instance, attr, None)
        if name:
            name = name.split("__")[-1]
            definition[name] = f"{{{{Contact.Field({name})}}}}"
    if isinstance(instance, ActionInstance) and instance.message:
        for field_name in CONTACT_FIELD_RE.findall(instance.message):
            definition[f"C_{field_name}"] = f"{{{{Contact.Field(C_{field_name})}}}}"
    return definition
