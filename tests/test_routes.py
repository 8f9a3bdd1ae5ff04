import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import INSTALL_ID
from smsbridge.config import settings
from smsbridge.main import create_app
from smsbridge.rate_limit import RateLimiter
from smsbridge.runtime import utc_now
from smsbridge.schema import JobStatus, StepKind
from smsbridge.send_worker import SendWorker

Q = f"installId={INSTALL_ID}"
CONTACT = {"ContactID": "1", "EmailAddress": "a@example.com", "C_MobilePhone": "0412345678", "C_FirstName": "Ada"}


@pytest.fixture
def client(ctx):
    with TestClient(create_app(ctx, limiter=RateLimiter(1000, 60))) as c:
        yield c


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert resp.json()["version"]


def test_install_redirects_to_authorize(client, ctx):
    resp = client.get("/eloqua/app/install?installId=inst-9&siteId=site-9&siteName=Acme", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("https://login.eloqua.com/auth/oauth2/authorize?")
    assert "state=inst-9" in resp.headers["location"]
    assert ctx.tenants.require("inst-9").site_name == "Acme"


def test_install_without_ids_is_rejected(client):
    resp = client.get("/eloqua/app/install")
    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationError"


@pytest.mark.parametrize(
    "query",
    ["error=access_denied", "", "code=abc&state=someone-else"],
)
def test_oauth_callback_rejects_bad_requests(client, tenant, query):
    resp = client.get(f"/eloqua/app/oauth/callback/{INSTALL_ID}?{query}", follow_redirects=False)
    assert resp.status_code == 400


def test_oauth_callback_stores_tokens_and_redirects(client, tenant, ctx):
    resp = client.get(
        f"/eloqua/app/oauth/callback/{INSTALL_ID}?code=abc&state={INSTALL_ID}", follow_redirects=False
    )
    assert resp.status_code == 302
    assert resp.headers["location"] == f"/eloqua/app/config?installId={INSTALL_ID}"
    assert ctx.tenants.get_tokens(INSTALL_ID).access_token == "access-1"


def test_reauth_is_json_or_html_by_accept_header(client, tenant, ctx):
    ctx.tenants.clear_tokens(INSTALL_ID)
    as_json = client.post(f"/eloqua/app/refresh-token?{Q}", headers={"Accept": "application/json"})
    assert as_json.status_code == 401
    assert as_json.json()["code"] == "REAUTH_REQUIRED"
    assert INSTALL_ID in as_json.json()["reAuthUrl"]

    as_html = client.post(f"/eloqua/app/refresh-token?{Q}", headers={"Accept": "text/html"})
    assert as_html.status_code == 401
    assert "Re-authorization required" in as_html.text
    assert "countdown" in as_html.text


def test_config_round_trip(client, tenant):
    resp = client.post(
        f"/eloqua/app/config?{Q}",
        json={
            "transmitsms_api_key": "k2",
            "transmitsms_api_secret": "s2",
            "default_country": "New Zealand",
            "reply_callback": "https://hooks.example.com/reply",
        },
    )
    assert resp.status_code == 200
    assert resp.json()["tenant"]["defaultCountry"] == "New Zealand"
    assert "k2" not in resp.text

    config = client.get(f"/eloqua/app/config?{Q}").json()
    assert config["gatewayConfigured"] is True
    assert config["authorized"] is True
    assert config["callbacks"]["reply"] == "https://hooks.example.com/reply"
    assert config["callbacks"]["dlr"] == "https://bridge.test/webhooks/dlr"


def test_status_reports_queue_and_health(client, tenant, action_instance):
    client.post(f"/eloqua/action/notify?{Q}&instanceId=act-1&executionId=e1", json={"items": [CONTACT]})
    status = client.get(f"/eloqua/app/status?{Q}").json()
    assert status["healthy"] is True
    assert status["jobs"][JobStatus.PENDING.value] == 1
    assert "process" in status["decisions"]


def test_uninstall_disables_instances(client, tenant, action_instance, ctx):
    resp = client.post(f"/eloqua/app/uninstall?{Q}")
    assert resp.json() == {
        "success": True,
        "installId": INSTALL_ID,
        "instancesDisabled": 1,
        "jobsCancelled": 0,
        "tokenRevoked": True,
    }
    assert ctx.tenants.get(INSTALL_ID).is_active is False
    assert ctx.instances.get(StepKind.ACTION, "act-1") is None


def test_action_lifecycle(client, tenant, fake_platform):
    created = client.post(f"/eloqua/action/create?{Q}&instanceId=abc-1&assetName=Welcome").json()
    assert created == {"success": True, "instanceId": "abc-1", "requiresConfiguration": True}

    saved = client.post("/eloqua/action/configure?instanceId=abc-1", json={"instance": {"message": "Hello"}})
    assert saved.status_code == 200
    assert saved.json()["platformUpdated"] is True
    assert saved.json()["instance"]["requires_configuration"] is False
    assert fake_platform.instance_updates[0]["requiresConfiguration"] is False

    view = client.get("/eloqua/action/configure?instanceId=abc-1").json()["instance"]
    assert view["message"] == "Hello"
    assert view["kind"] == "action"

    copied = client.post("/eloqua/action/copy?instanceId=abc-1&newInstanceId=abc-2").json()
    assert copied == {"success": True, "instanceId": "abc-2"}

    assert client.delete("/eloqua/action/delete?instanceId=abc-1").json()["deleted"] is True
    assert client.get("/eloqua/action/configure?instanceId=abc-1").status_code == 404


def test_configure_rejects_invalid_settings(client, tenant):
    client.post(f"/eloqua/decision/create?{Q}&instanceId=dec-x")
    resp = client.post("/eloqua/decision/configure?instanceId=dec-x", json={"text_type": "Keyword"})
    assert resp.status_code == 400


def test_action_notify_queues_jobs(client, tenant, action_instance, ctx):
    resp = client.post(
        f"/eloqua/action/notify?{Q}&instanceId=act-1",
        json={"items": [CONTACT], "executionId": "e-77", "totalResults": 1},
    )
    assert resp.status_code == 204
    (job,) = ctx.queue._jobs(install_id=INSTALL_ID)
    assert job.execution_id == "e-77"
    assert job.message == "Hi Ada, reply YES"


def test_action_notify_unknown_instance(client, tenant):
    resp = client.post(f"/eloqua/action/notify?{Q}&instanceId=ghost&executionId=e1", json={"items": [CONTACT]})
    assert resp.status_code == 404


def test_decision_notify_emits_immediate_verdicts(client, tenant, decision_instance, fake_platform):
    resp = client.post(f"/eloqua/decision/notify?{Q}&instanceId=dec-1&executionId=e1", json=[CONTACT])
    assert resp.status_code == 204
    (definition,) = fake_platform.imports
    assert definition["syncActions"][0]["value"] == "no"


def test_feeder_configure_registers_forwarding_and_notify_pulls(client, tenant, ctx, fake_gateway):
    client.post(f"/eloqua/feeder/create?{Q}&instanceId=feed-1")
    saved = client.post(
        "/eloqua/feeder/configure?instanceId=feed-1",
        json={"feeder_type": "incoming_sms", "sender_ids": ["61400000001"], "field_mappings": {"message": "C_Text"}},
    ).json()
    assert saved["forwarding"] == {"61400000001": "ok"}
    assert len(fake_gateway.forwards) == 1

    incoming = client.get(
        f"/eloqua/feeder/incomingsms?instanceId=feed-1&{Q}&mobile=61412345678&response=hello&longcode=61400000001"
    )
    assert incoming.json()["ok"] is True

    pulled = client.post("/eloqua/feeder/notify?instanceId=feed-1&maxRows=10").json()
    assert pulled == {"count": 1, "items": [{"C_Text": "hello"}]}


def test_webhooks_accept_form_and_query(client, tenant, ctx):
    reply = client.get("/webhooks/reply?mobile=61499999999&response=hi&installId=" + INSTALL_ID).json()
    assert reply["ok"] is True and reply["correlated"] is False and reply["decision"] is None

    dlr = client.post("/webhooks/dlr", data={"message_id": "missing", "status": "delivered"}).json()
    assert dlr == {"ok": True, "matched": False, "status": None}

    hit = client.post("/webhooks/linkhit", data={"mobile": "61412345678", "message": "https://tapth.is/z"}).json()
    assert hit["ok"] is True and hit["linkHitId"]


def test_webhook_token_required_when_configured(client, monkeypatch):
    monkeypatch.setenv("WEBHOOK_TOKEN", "s3cret")
    settings.cache_clear()
    assert client.get("/webhooks/dlr?message_id=1").status_code == 401
    assert client.get("/webhooks/dlr?message_id=1&token=s3cret").status_code == 200
    assert client.get("/webhooks/dlr?message_id=1", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert client.get("/eloqua/feeder/incomingsms?instanceId=x").status_code == 401


def test_rate_limit_returns_429(ctx):
    with TestClient(create_app(ctx, limiter=RateLimiter(2, 60))) as limited:
        assert limited.get("/health").status_code == 200
        assert limited.get("/health").status_code == 200
        resp = limited.get("/health")
    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"


def test_reauth_page_escapes_untrusted_text(ctx):
    from smsbridge.errors import ReauthRequired

    app = create_app(ctx, limiter=RateLimiter(1000, 60))

    @app.get("/boom")
    async def boom():
        raise ReauthRequired('x"><script>alert(1)</script>', "<img src=x onerror=alert(1)>")

    with TestClient(app) as c:
        resp = c.get("/boom", headers={"Accept": "text/html"})
    assert resp.status_code == 401
    assert "<img" not in resp.text
    assert "&lt;img src=x onerror=alert(1)&gt;" in resp.text
    assert "<script>alert" not in resp.text
    assert "x%22%3E%3Cscript%3E" in resp.text


def test_action_retrieve_returns_instance(client, tenant, action_instance):
    view = client.get("/eloqua/action/retrieve?instanceId=act-1").json()["instance"]
    assert view["message"] == "Hi [C_FirstName], reply YES"
    assert client.get("/eloqua/action/retrieve?instanceId=ghost").status_code == 404


def test_deleting_action_cancels_queued_jobs(client, tenant, action_instance, ctx, fake_platform):
    client.post(f"/eloqua/action/notify?{Q}&instanceId=act-1&executionId=e1", json={"items": [CONTACT]})
    resp = client.delete("/eloqua/action/delete?instanceId=act-1").json()
    assert resp["jobsCancelled"] == 1
    (job,) = ctx.queue._jobs(install_id=INSTALL_ID)
    assert job.status == JobStatus.CANCELLED.value

    assert asyncio.run(ctx.tracker.flush(ctx.queue, ctx.platform)) == 1
    (definition,) = fake_platform.imports
    assert definition["syncActions"][0]["value"] == "errored"


def test_worker_endpoints_when_workers_are_disabled(client, tenant):
    status = client.get("/eloqua/action/worker/status").json()
    assert status["enabled"] is False
    assert status["workers"] == []
    assert status["jobs"][JobStatus.PENDING.value] == 0

    health = client.get("/eloqua/action/worker/health")
    assert health.status_code == 503
    assert health.json()["ok"] is False


def test_worker_health_follows_last_cycle(client, ctx):
    worker = SendWorker(ctx)
    worker.running = True
    worker.started_at = utc_now() - timedelta(hours=1)
    worker.last_cycle_at = utc_now()
    client.app.state.workers = [worker]

    assert client.get("/eloqua/action/worker/health").status_code == 200
    (info,) = client.get("/eloqua/action/worker/status").json()["workers"]
    assert info["name"] == "send_worker"
    assert info["healthy"] is True

    worker.last_cycle_at = utc_now() - timedelta(hours=1)
    resp = client.get("/eloqua/action/worker/health")
    assert resp.status_code == 503
    assert resp.json()["workers"] == {"send_worker": False}
