import asyncio

import pytest

from conftest import INSTALL_ID, make_instance
from smsbridge.actions import notify_action
from smsbridge.errors import ValidationError
from smsbridge.schema import JobStatus, SmsStatus, StepKind
from smsbridge.send_worker import Pacer, SendWorker

ITEMS = [
    {"ContactID": "1", "EmailAddress": "a@example.com", "C_MobilePhone": "0412345678", "C_FirstName": "Ada"},
    {"ContactID": "2", "EmailAddress": "b@example.com", "C_MobilePhone": "0412345679", "C_FirstName": "Bob"},
    {"ContactID": "3", "EmailAddress": "c@example.com", "C_FirstName": "Cy"},
]


def _run(ctx, *items, instance_id="act-1", execution_id="exec-1"):
    async def scenario():
        await notify_action(ctx, INSTALL_ID, instance_id, execution_id, items or ITEMS)
        return await SendWorker(ctx).run_cycle()

    return asyncio.run(scenario())


def test_cycle_sends_logs_and_reports_completion(ctx, tenant, action_instance, fake_gateway, fake_platform):
    summary = _run(ctx)
    assert summary["leased"] == 2
    assert summary["sent"] == 2
    assert summary["executions_reported"] == 1

    first = next(form for form in fake_gateway.sent if form["to"] == "+61412345678")
    assert first["to"] == "+61412345678"
    assert first["message"] == "Hi Ada, reply YES"
    assert first["from"] == "61400000000"
    assert first["dlr_callback"].startswith("https://bridge.test/webhooks/dlr?")
    assert "installId=inst-1" in first["reply_callback"]
    assert "link_hits_callback" not in first

    logs = ctx.sms_logs._logs(install_id=INSTALL_ID)
    assert len(logs) == 3
    by_contact = {log.contact_id: log for log in logs}
    assert by_contact["1"].status == SmsStatus.SENT.value
    assert by_contact["1"].message_id == "1001"
    assert by_contact["1"].sent_at is not None
    assert by_contact["3"].status == SmsStatus.FAILED.value

    outcomes = sorted(imp["syncActions"][0]["value"] for imp in fake_platform.imports)
    assert outcomes == ["complete", "errored"]
    assert all("Execution[exec-1]" in imp["syncActions"][0]["destination"] for imp in fake_platform.imports)

    instance = ctx.instances.get(StepKind.ACTION, "act-1")
    assert (instance.total_sent, instance.total_failed) == (2, 1)
    assert instance.last_executed_at is not None


def test_transient_gateway_failure_stays_retryable(ctx, tenant, action_instance, fake_gateway, fake_platform):
    fake_gateway.fail_status = 503
    summary = _run(ctx, ITEMS[0])
    assert summary["failed"] == 1
    assert summary["executions_reported"] == 0

    job = ctx.queue._jobs(install_id=INSTALL_ID)[0]
    assert job.status == JobStatus.FAILED.value
    assert job.retry_count == 1 and not job.permanent
    log = ctx.sms_logs.get(job.sms_log_id)
    assert log.status == SmsStatus.PENDING.value
    assert "503" in log.error
    assert fake_platform.imports == []


def test_permanent_gateway_failure_reports_errored(ctx, tenant, action_instance, fake_gateway, fake_platform):
    fake_gateway.fail_status = 400
    summary = _run(ctx, ITEMS[0])
    assert summary["failed"] == 1
    assert summary["executions_reported"] == 1

    job = ctx.queue._jobs(install_id=INSTALL_ID)[0]
    assert job.terminal and job.permanent
    assert ctx.sms_logs.get(job.sms_log_id).status == SmsStatus.FAILED.value
    assert [imp["syncActions"][0]["value"] for imp in fake_platform.imports] == ["errored"]
    assert fake_platform.uploads[0] == [{"ContactID": "1", "EmailAddress": "a@example.com"}]


def test_missing_gateway_credentials_fail_permanently(ctx, tenant, action_instance, monkeypatch):
    monkeypatch.setattr(ctx.tenants, "get_gateway_credentials", lambda install_id: None)
    _run(ctx, ITEMS[0])
    job = ctx.queue._jobs(install_id=INSTALL_ID)[0]
    assert job.permanent
    assert "credentials" in job.error


def test_custom_object_record_written_after_send(ctx, tenant, fake_platform):
    make_instance(
        ctx,
        "action",
        "act-co",
        {"message": "Hello", "custom_object_id": "55", "field_map": {"mobile": "101", "outgoing": "102"}},
    )
    _run(ctx, ITEMS[0], instance_id="act-co")
    assert fake_platform.custom_object_writes == [
        {"fieldValues": [{"id": "101", "value": "+61412345678"}, {"id": "102", "value": "Hello"}]}
    ]
    job = ctx.queue._jobs(install_id=INSTALL_ID)[0]
    assert job.custom_object_record_id is not None


def test_notify_requires_configured_instance(ctx, tenant):
    ctx.instances.create(StepKind.ACTION, "act-new", INSTALL_ID)
    with pytest.raises(ValidationError):
        asyncio.run(notify_action(ctx, INSTALL_ID, "act-new", "exec-1", ITEMS))
    with pytest.raises(ValidationError):
        asyncio.run(notify_action(ctx, INSTALL_ID, "act-new", "", ITEMS))


def test_pacer_spaces_consecutive_starts():
    async def scenario():
        pacer = Pacer(0.05)
        loop = asyncio.get_running_loop()
        stamps = []
        for _ in range(3):
            await pacer.wait()
            stamps.append(loop.time())
        return stamps

    stamps = asyncio.run(scenario())
    assert stamps[1] - stamps[0] >= 0.045
    assert stamps[2] - stamps[1] >= 0.045


def test_worker_stop_ends_run_loop(ctx, tenant):
    async def scenario():
        worker = SendWorker(ctx)
        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.3)
        await worker.stop()
        await asyncio.wait_for(task, timeout=2)
        return worker.cycles

    assert asyncio.run(scenario()) >= 1


async def _until(check, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not check() and loop.time() < deadline:
        await asyncio.sleep(0.005)


def test_worker_status_tracks_cycles_and_errors(ctx, tenant):
    class Flaky(SendWorker):
        name = "flaky"
        calls = 0

        async def run_cycle(self):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("boom")
            return {"leased": 0}

    async def scenario():
        worker = Flaky(ctx)
        worker.interval = 0.05
        task = asyncio.create_task(worker.run())
        await _until(lambda: worker.last_error is not None)
        during = worker.status()
        await _until(lambda: worker.cycles >= 1)
        after_success = worker.status()
        await worker.stop()
        await asyncio.wait_for(task, timeout=2)
        return during, after_success, worker.status()

    during, after_success, stopped = asyncio.run(scenario())
    assert during["running"] is True
    assert during["lastError"] == "RuntimeError: boom"
    assert during["healthy"] is True
    assert after_success["cycles"] >= 1
    assert after_success["lastError"] is None
    assert after_success["lastSummary"] == {"leased": 0}
    assert stopped["running"] is False
    assert stopped["healthy"] is False
