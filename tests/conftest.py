import json
import os
import sys

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from typing import Any, Dict, List, Set

import httpx
import pytest

from smsbridge.config import settings
from smsbridge.datastore import reset_state

BASE_URL = "https://secure.p03.eloqua.com"
INSTALL_ID = "inst-1"
SITE_ID = "site-1"

_TEST_ENV = {
    "SMS_FORCE_IN_MEMORY": "1",
    "WORKERS_ENABLED": "0",
    "APP_BASE_URL": "https://bridge.test",
    "ELOQUA_CLIENT_ID": "client-id",
    "ELOQUA_CLIENT_SECRET": "client-secret",
    "SEND_PACING_MS": "0",
    "SEND_CONCURRENCY": "1",
    "PLATFORM_MAX_ATTEMPTS": "1",
    "PLATFORM_BACKOFF_BASE_SEC": "0",
}


@pytest.fixture(autouse=True)
def _reset_datastore(monkeypatch):
    for key in ["AIRTABLE_API_KEY", "AIRTABLE_BASE_ID", "REDIS_URL", "UPSTASH_REDIS_URL", "WEBHOOK_TOKEN"]:
        monkeypatch.delenv(key, raising=False)
    for key, value in _TEST_ENV.items():
        monkeypatch.setenv(key, value)
    settings.cache_clear()
    reset_state()
    yield
    settings.cache_clear()
    reset_state()


class FakePlatform:
    """Records Platform calls and answers the endpoints the bridge uses."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.imports: List[Dict[str, Any]] = []
        self.uploads: List[List[Dict[str, Any]]] = []
        self.custom_object_writes: List[Dict[str, Any]] = []
        self.custom_object_updates: List[Dict[str, Any]] = []
        self.custom_object_deletes: List[str] = []
        self.contact_updates: List[Dict[str, Any]] = []
        self.instance_updates: List[Dict[str, Any]] = []
        self.fail_paths: Dict[str, int] = {}
        self.fail_import_attempts: Set[int] = set()
        self.import_attempts = 0
        self._ids = 0

    def _next(self) -> int:
        self._ids += 1
        return self._ids

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for fragment, status in self.fail_paths.items():
            if fragment in path:
                return httpx.Response(status, json={"error": "boom"})
        if path.endswith("/auth/oauth2/token"):
            return httpx.Response(
                200, json={"access_token": f"access-{self._next()}", "refresh_token": "refresh-2", "expires_in": 28800}
            )
        if path.endswith("/auth/oauth2/revoke"):
            return httpx.Response(200)
        if path == "/id":
            return httpx.Response(200, json={"urls": {"base": BASE_URL}})
        if path.endswith("/contacts/imports") and request.method == "POST":
            self.import_attempts += 1
            if self.import_attempts in self.fail_import_attempts:
                return httpx.Response(503, json={"error": "unavailable"})
            definition = json.loads(request.content)
            self.imports.append(definition)
            return httpx.Response(201, json={"uri": f"/contacts/imports/{self._next()}"})
        if path.endswith("/data") and request.method == "POST":
            self.uploads.append(json.loads(request.content))
            return httpx.Response(204)
        if path.endswith("/syncs"):
            return httpx.Response(201, json={"uri": f"/syncs/{self._next()}", "status": "pending"})
        if "/data/customObject/" in path and request.method == "POST":
            self.custom_object_writes.append(json.loads(request.content))
            return httpx.Response(201, json={"id": str(900 + self._next())})
        if "/data/customObject/" in path and request.method == "PUT":
            self.custom_object_updates.append({"path": path, **json.loads(request.content)})
            return httpx.Response(200, json=json.loads(request.content))
        if "/data/customObject/" in path and request.method == "DELETE":
            self.custom_object_deletes.append(path)
            return httpx.Response(200)
        if path.endswith("/assets/customObjects"):
            return httpx.Response(200, json={"elements": [{"id": "77", "name": "SMS Log"}], "page": 1, "total": 1})
        if "/assets/customObject/" in path:
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "fields": [{"id": "5", "name": "Mobile"}]})
        if path.endswith("/assets/contact/fields"):
            return httpx.Response(200, json={"elements": [{"id": "100", "internalName": "C_MobilePhone"}]})
        if "/data/contact/" in path and request.method == "PUT":
            self.contact_updates.append(json.loads(request.content))
            return httpx.Response(200, json=json.loads(request.content))
        if "/data/contact/" in path:
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "emailAddress": "a@example.com"})
        if path.endswith("/assets/campaigns"):
            return httpx.Response(200, json={"elements": [{"id": "3", "name": "Spring"}], "total": 1})
        if "/assets/campaign/" in path:
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "name": "Spring"})
        if "/instances/" in path and request.method == "PUT":
            self.instance_updates.append(json.loads(request.content))
            return httpx.Response(200, json={})
        return httpx.Response(404, json={"error": f"unexpected {request.method} {path}"})


class FakeGateway:
    """Answers send-sms with sequential message ids unless told to fail."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, str]] = []
        self.forwards: List[Dict[str, str]] = []
        self.lookups: List[Dict[str, str]] = []
        self.fail_status: int = 0
        self._ids = 1000

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/send-sms.json":
            if self.fail_status:
                return httpx.Response(self.fail_status, json={"error": {"code": "FAILED", "description": "nope"}})
            form = dict(httpx.QueryParams(request.content.decode()))
            self.sent.append(form)
            self._ids += 1
            return httpx.Response(200, json={"message_id": self._ids, "error": {"code": "SUCCESS"}})
        if path == "/edit-number-options.json":
            self.forwards.append(dict(request.url.params))
            return httpx.Response(200, json={"error": {"code": "SUCCESS"}})
        if path == "/get-sender-ids.json":
            caller_ids = {"Virtual Number": ["61400000001"], "Business Name": ["ACME"], "Mobile Number": []}
            return httpx.Response(200, json={"result": {"caller_ids": caller_ids}, "error": {"code": "SUCCESS"}})
        if path == "/get-balance.json":
            return httpx.Response(200, json={"balance": 12.5, "currency": "AUD", "error": {"code": "SUCCESS"}})
        if path == "/get-delivery-status.json":
            self.lookups.append(dict(request.url.params))
            return httpx.Response(200, json={"status": "delivered", "error": {"code": "SUCCESS"}})
        if path == "/get-sms-responses.json":
            self.lookups.append(dict(request.url.params))
            return httpx.Response(200, json={"responses": [{"response": "YES"}], "error": {"code": "SUCCESS"}})
        return httpx.Response(404, json={"error": {"code": "NOT_FOUND"}})


@pytest.fixture
def fake_platform():
    return FakePlatform()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def ctx(fake_platform, fake_gateway):
    from smsbridge.context import AppContext

    return AppContext(
        platform_transport=httpx.MockTransport(fake_platform.handler),
        gateway_transport=httpx.MockTransport(fake_gateway.handler),
    )


@pytest.fixture
def tenant(ctx):
    ctx.tenants.get_or_create(INSTALL_ID, SITE_ID, "Test Site")
    ctx.tenants.save_configuration(INSTALL_ID, api_key="key", api_secret="secret", default_country="Australia")
    ctx.tenants.save_tokens(INSTALL_ID, "access-0", "refresh-1", 28800)
    return ctx.tenants.require(INSTALL_ID)


def make_instance(ctx, kind, instance_id, config):
    from smsbridge.instances import CONFIGURATORS
    from smsbridge.schema import StepKind

    kind = StepKind(kind)
    instance = ctx.instances.create(kind, instance_id, INSTALL_ID, asset_name="Spring Campaign")
    return ctx.instances.save(CONFIGURATORS[kind](instance, config))


@pytest.fixture
def action_instance(ctx, tenant):
    return make_instance(ctx, "action", "act-1", {"message": "Hi [C_FirstName], reply YES", "caller_id": "61400000000"})


@pytest.fixture
def decision_instance(ctx, tenant):
    return make_instance(ctx, "decision", "dec-1", {"evaluation_period": 24, "text_type": "Anything"})
