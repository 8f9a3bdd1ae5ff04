"""
Authoritative record schema
---------------------------
Typed views over the document collections. Every collection row is a flat
mapping of field name to scalar; nested values (mappings, lists, gateway
responses) are stored as JSON text and decoded here, at the
deserialization boundary.

Tenant secrets never travel on ``Tenant``: OAuth tokens are read through
``TenantTokens`` and gateway credentials through ``GatewayCredentials``,
both only produced by explicit tenant store calls.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, TypeVar

from smsbridge.datastore import dump_json, load_json
from smsbridge.runtime import iso, parse_dt

R = TypeVar("R", bound="Record")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SmsStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"


class DecisionStatus(str, Enum):
    PENDING = "pending"
    YES = "yes"
    NO = "no"


class MatchMode(str, Enum):
    ANYTHING = "Anything"
    KEYWORD = "Keyword"


class FeederType(str, Enum):
    INCOMING_SMS = "incoming_sms"
    LINK_HITS = "link_hits"


class StepKind(str, Enum):
    ACTION = "action"
    DECISION = "decision"
    FEEDER = "feeder"


ACTION_KEYS = ("send", "receive", "inbound", "tracked_link")
MAPPING_FIELDS = (
    "mobile",
    "email",
    "title",
    "response",
    "url",
    "original_url",
    "link_hits",
    "virtual_number",
    "outgoing",
    "notification",
)


# ---------------------------------------------------------------------------
# Record base
# ---------------------------------------------------------------------------


class Record:
    """Dataclass mixin mapping collection rows to typed objects."""

    _json: ClassVar[Tuple[str, ...]] = ()
    _datetimes: ClassVar[Tuple[str, ...]] = ()
    _bools: ClassVar[Tuple[str, ...]] = ()
    _ints: ClassVar[Tuple[str, ...]] = ()
    _hidden: ClassVar[Tuple[str, ...]] = ()

    record_id: Optional[str]

    @classmethod
    def from_record(cls: Type[R], record: Dict[str, Any]) -> R:
        raw = record.get("fields", {}) or {}
        values: Dict[str, Any] = {"record_id": record.get("id")}
        for f in dataclasses.fields(cls):  # type: ignore[arg-type]
            if f.name == "record_id" or f.name not in raw:
                continue
            values[f.name] = cls._decode(f.name, raw[f.name])
        return cls(**values)

    @classmethod
    def _decode(cls, name: str, value: Any) -> Any:
        if name in cls._json:
            return load_json(value)
        if name in cls._datetimes:
            return parse_dt(value)
        if name in cls._bools:
            return _as_bool(value)
        if name in cls._ints:
            try:
                return int(value) if value not in (None, "") else None
            except (TypeError, ValueError):
                return None
        return value

    @classmethod
    def encode(cls, name: str, value: Any) -> Any:
        if value is None:
            return None
        if name in cls._json:
            return dump_json(value)
        if name in cls._datetimes:
            return iso(value)
        if isinstance(value, Enum):
            return value.value
        return value

    @classmethod
    def encode_fields(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        return {name: cls.encode(name, value) for name, value in values.items()}

    def to_fields(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            if f.name == "record_id":
                continue
            value = self.encode(f.name, getattr(self, f.name))
            if value is not None:
                out[f.name] = value
        return out


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------


@dataclass
class ActionMapping:
    """Custom-object field ids used by one of the tenant's actions."""

    custom_object_id: Optional[str] = None
    fields: Dict[str, str] = field(default_factory=dict)

    def get(self, logical: str) -> Optional[str]:
        return self.fields.get(logical) or None

    def to_dict(self) -> Dict[str, Any]:
        return {"custom_object_id": self.custom_object_id, "fields": dict(self.fields)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ActionMapping":
        data = data or {}
        fields = {k: str(v) for k, v in (data.get("fields") or {}).items() if k in MAPPING_FIELDS and v}
        return cls(custom_object_id=data.get("custom_object_id") or None, fields=fields)


@dataclass
class Tenant(Record):
    """Installation of the app inside one Platform site."""

    _json = ("actions",)
    _datetimes = ("configured_at", "last_synced_at", "installed_at", "uninstalled_at")
    _bools = ("is_active",)

    record_id: Optional[str] = None
    install_id: str = ""
    site_id: str = ""
    site_name: Optional[str] = None
    default_country: str = "Australia"
    is_active: bool = True
    configured_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    installed_at: Optional[datetime] = None
    uninstalled_at: Optional[datetime] = None
    actions: Optional[Dict[str, Any]] = None
    api_base_url: Optional[str] = None
    dlr_callback: Optional[str] = None
    reply_callback: Optional[str] = None
    link_hits_callback: Optional[str] = None

    def mapping(self, action: str) -> ActionMapping:
        return ActionMapping.from_dict((self.actions or {}).get(action))

    def public_dict(self) -> Dict[str, Any]:
        return {
            "installId": self.install_id,
            "siteId": self.site_id,
            "siteName": self.site_name,
            "defaultCountry": self.default_country,
            "isActive": self.is_active,
            "configuredAt": iso(self.configured_at),
            "lastSyncedAt": iso(self.last_synced_at),
            "actions": {key: self.mapping(key).to_dict() for key in ACTION_KEYS},
        }


# Secret columns on the consumers collection; never decoded onto Tenant.
TOKEN_FIELDS = ("oauth_token", "oauth_refresh_token", "oauth_expires_at", "oauth_token_type")
GATEWAY_FIELDS = ("transmitsms_api_key", "transmitsms_api_secret")


@dataclass(frozen=True)
class TenantTokens:
    install_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    token_type: str = "Bearer"

    @classmethod
    def from_fields(cls, install_id: str, raw: Dict[str, Any]) -> "TenantTokens":
        return cls(
            install_id=install_id,
            access_token=raw.get("oauth_token") or None,
            refresh_token=raw.get("oauth_refresh_token") or None,
            expires_at=parse_dt(raw.get("oauth_expires_at")),
            token_type=raw.get("oauth_token_type") or "Bearer",
        )


@dataclass(frozen=True)
class GatewayCredentials:
    api_key: str
    api_secret: str


# ---------------------------------------------------------------------------
# Step instances
# ---------------------------------------------------------------------------


@dataclass
class StepInstance(Record):
    _datetimes = ("created_at", "configured_at", "deleted_at")
    _bools = ("requires_configuration", "is_active")

    record_id: Optional[str] = None
    instance_id: str = ""
    install_id: str = ""
    site_id: Optional[str] = None
    asset_id: Optional[str] = None
    asset_name: Optional[str] = None
    requires_configuration: bool = True
    is_active: bool = True
    created_at: Optional[datetime] = None
    configured_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    kind: ClassVar[StepKind]
    # fields reset on copy
    _counters: ClassVar[Tuple[str, ...]] = ()


@dataclass
class ActionInstance(StepInstance):
    _json = ("field_map",)
    _datetimes = StepInstance._datetimes + ("last_executed_at",)
    _bools = StepInstance._bools + ("message_expiry",)
    _ints = ("message_validity", "total_sent", "total_failed")
    _counters = ("total_sent", "total_failed", "last_executed_at")
    kind = StepKind.ACTION

    message: Optional[str] = None
    caller_id: Optional[str] = None
    recipient_field: str = "C_MobilePhone"
    country_field: Optional[str] = None
    tracked_link: Optional[str] = None
    message_expiry: bool = False
    message_validity: int = 1
    send_mode: str = "all"
    custom_object_id: Optional[str] = None
    field_map: Optional[Dict[str, str]] = None
    total_sent: int = 0
    total_failed: int = 0
    last_executed_at: Optional[datetime] = None


@dataclass
class DecisionInstance(StepInstance):
    _json = ("field_map",)
    _ints = ("evaluation_period", "total_yes", "total_no")
    _counters = ("total_yes", "total_no")
    kind = StepKind.DECISION

    evaluation_period: int = 1
    text_type: str = MatchMode.ANYTHING.value
    keyword: Optional[str] = None
    recipient_field: str = "C_MobilePhone"
    custom_object_id: Optional[str] = None
    field_map: Optional[Dict[str, str]] = None
    total_yes: int = 0
    total_no: int = 0


@dataclass
class FeederInstance(StepInstance):
    _json = ("sender_ids", "field_mappings")
    _ints = ("records_sent",)
    _counters = ("records_sent",)
    kind = StepKind.FEEDER

    feeder_type: str = FeederType.INCOMING_SMS.value
    sender_ids: Optional[List[str]] = None
    text_type: str = MatchMode.ANYTHING.value
    keyword: Optional[str] = None
    custom_object_id: Optional[str] = None
    field_mappings: Optional[Dict[str, str]] = None
    records_sent: int = 0


INSTANCE_TYPES: Dict[StepKind, Type[StepInstance]] = {
    StepKind.ACTION: ActionInstance,
    StepKind.DECISION: DecisionInstance,
    StepKind.FEEDER: FeederInstance,
}


# ---------------------------------------------------------------------------
# Queue, audit and inbound records
# ---------------------------------------------------------------------------


@dataclass
class Job(Record):
    """One outbound SMS attempt for one contact of one execution."""

    _json = ("custom_object_payload", "gateway_response")
    _datetimes = ("scheduled_at", "processed_at", "sent_at", "last_retry_at", "created_at")
    _bools = ("permanent",)
    _ints = ("retry_count", "max_retries", "validity_minutes")

    record_id: Optional[str] = None
    install_id: str = ""
    instance_id: str = ""
    execution_id: str = ""
    asset_id: Optional[str] = None
    contact_id: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None
    message: Optional[str] = None
    from_id: Optional[str] = None
    tracked_link_url: Optional[str] = None
    validity_minutes: Optional[int] = None
    status: str = JobStatus.PENDING.value
    scheduled_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    message_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    last_retry_at: Optional[datetime] = None
    error: Optional[str] = None
    permanent: bool = False
    sms_log_id: Optional[str] = None
    custom_object_payload: Optional[Dict[str, Any]] = None
    custom_object_record_id: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @property
    def job_id(self) -> str:
        return self.record_id or ""

    @property
    def execution_key(self) -> Tuple[str, str, str]:
        return (self.install_id, self.instance_id, self.execution_id)

    @property
    def terminal(self) -> bool:
        if self.status in (JobStatus.SENT.value, JobStatus.CANCELLED.value):
            return True
        return self.status == JobStatus.FAILED.value and self.permanent

    @property
    def retryable(self) -> bool:
        return self.status == JobStatus.FAILED.value and not self.permanent


@dataclass
class SmsLog(Record):
    """Per-contact audit of one outbound SMS and its decision linkage."""

    _json = ("gateway_response",)
    _datetimes = (
        "sent_at",
        "delivered_at",
        "decision_deadline",
        "response_received_at",
        "decision_processed_at",
        "created_at",
    )
    _bools = ("has_response", "tracked_link_requested")
    _ints = ("link_hits",)

    record_id: Optional[str] = None
    install_id: str = ""
    instance_id: Optional[str] = None
    job_id: Optional[str] = None
    contact_id: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None
    message: Optional[str] = None
    message_id: Optional[str] = None
    sender_id: Optional[str] = None
    campaign_title: Optional[str] = None
    status: str = SmsStatus.PENDING.value
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None
    tracked_link_requested: bool = False
    tracked_link_original_url: Optional[str] = None
    tracked_link_short_url: Optional[str] = None
    link_hits: Optional[int] = None
    decision_instance_id: Optional[str] = None
    decision_execution_id: Optional[str] = None
    decision_deadline: Optional[datetime] = None
    decision_status: Optional[str] = None
    decision_reason: Optional[str] = None
    decision_processed_at: Optional[datetime] = None
    has_response: bool = False
    response_message: Optional[str] = None
    response_received_at: Optional[datetime] = None
    reply_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class SmsReply(Record):
    _datetimes = ("received_at",)
    _bools = ("processed", "is_optout", "feeder_processed")

    record_id: Optional[str] = None
    install_id: Optional[str] = None
    from_mobile: str = ""
    to_number: Optional[str] = None
    message: str = ""
    message_id: Optional[str] = None
    response_id: Optional[str] = None
    received_at: Optional[datetime] = None
    is_optout: bool = False
    processed: bool = False
    feeder_processed: bool = False
    sms_log_id: Optional[str] = None
    contact_id: Optional[str] = None
    email: Optional[str] = None


@dataclass
class LinkHit(Record):
    _datetimes = ("clicked_at",)
    _bools = ("feeder_processed",)
    _ints = ("link_hits",)

    record_id: Optional[str] = None
    install_id: Optional[str] = None
    mobile: Optional[str] = None
    message_id: Optional[str] = None
    contact_id: Optional[str] = None
    email: Optional[str] = None
    short_url: Optional[str] = None
    original_url: Optional[str] = None
    link_hits: int = 1
    clicked_at: Optional[datetime] = None
    sms_log_id: Optional[str] = None
    feeder_processed: bool = False
