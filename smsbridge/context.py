"""Process-scoped services shared by the HTTP layer and the background workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from typing import Optional

import httpx

from smsbridge.config import Settings, settings
from smsbridge.decision_evaluator import DecisionEvaluator
from smsbridge.errors import ValidationError
from smsbridge.execution_tracker import ExecutionTracker
from smsbridge.feeder import FeederService
from smsbridge.gateway_client import GatewayClient
from smsbridge.inbound import InboundService
from smsbridge.instances import INSTANCES, InstanceStore
from smsbridge.job_queue import QUEUE, JobQueue
from smsbridge.platform_client import PlatformClient
from smsbridge.reports import ReportService
from smsbridge.schema import GatewayCredentials
from smsbridge.sms_logs import LINK_HITS, SMS_LOGS, SMS_REPLIES, LinkHitStore, SmsLogStore, SmsReplyStore
from smsbridge.tenant_store import TENANTS, TenantStore
from smsbridge.token_manager import TokenManager


@dataclass
class AppContext:
    config: Settings = field(default_factory=settings)
    tenants: TenantStore = TENANTS
    instances: InstanceStore = INSTANCES
    queue: JobQueue = QUEUE
    sms_logs: SmsLogStore = SMS_LOGS
    replies: SmsReplyStore = SMS_REPLIES
    link_hits: LinkHitStore = LINK_HITS
    tracker: ExecutionTracker = field(default_factory=ExecutionTracker)
    platform_transport: Optional[httpx.AsyncBaseTransport] = None
    gateway_transport: Optional[httpx.AsyncBaseTransport] = None
    tokens: Optional[TokenManager] = None

    def __post_init__(self) -> None:
        if self.tokens is None:
            self.tokens = TokenManager(self.tenants, config=self.config, transport=self.platform_transport)

    def platform(self, install_id: str) -> PlatformClient:
        return PlatformClient(install_id, self.tokens, config=self.config, transport=self.platform_transport)

    def gateway(self, credentials: Optional[GatewayCredentials]) -> GatewayClient:
        if credentials is None:
            raise ValidationError("SMS gateway credentials are not configured")
        return GatewayClient(
            credentials.api_key, credentials.api_secret, config=self.config, transport=self.gateway_transport
        )

    def callback_url(self, path: str, **params: Optional[str]) -> str:
        """Absolute URL on this app; carries the webhook token when one is set."""
        if self.config.WEBHOOK_TOKEN:
            params["token"] = self.config.WEBHOOK_TOKEN
        query = httpx.QueryParams({k: v for k, v in params.items() if v})
        base = f"{self.config.APP_BASE_URL}{path}"
        return f"{base}?{query}" if query else base

    @cached_property
    def evaluator(self) -> DecisionEvaluator:
        return DecisionEvaluator(self)

    @cached_property
    def feeder(self) -> FeederService:
        return FeederService(self)

    @cached_property
    def inbound(self) -> InboundService:
        return InboundService(self, self.evaluator, self.feeder)

    @cached_property
    def reports(self) -> ReportService:
        return ReportService(self)
