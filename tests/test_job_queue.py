from datetime import timedelta

from conftest import INSTALL_ID, make_instance
from smsbridge.runtime import utc_now
from smsbridge.schema import JobStatus


def _items():
    return [
        {"ContactID": "1", "EmailAddress": "A@Example.com", "C_MobilePhone": "0412345678", "C_FirstName": "Ada"},
        {"ContactID": "2", "EmailAddress": "b@example.com", "C_MobilePhone": "", "C_FirstName": "Bob"},
        {"ContactID": "3", "EmailAddress": "c@example.com", "C_MobilePhone": "0412345679", "C_FirstName": "Cy"},
    ]


def test_enqueue_builds_jobs_and_rejects_missing_mobile(ctx, tenant, action_instance):
    result = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", _items())
    assert len(result.created) == 3
    by_contact = {job.contact_id: job for job in result.created}

    ada = by_contact["1"]
    assert ada.status == JobStatus.PENDING.value
    assert ada.mobile == "+61412345678"
    assert ada.email == "a@example.com"
    assert ada.message == "Hi Ada, reply YES"
    assert ada.from_id == "61400000000"
    assert ada.max_retries == 3

    assert [job.contact_id for job in result.rejected] == ["2"]
    assert by_contact["2"].permanent is True
    assert by_contact["2"].error == "Mobile number not found"


def test_enqueue_is_idempotent_per_execution(ctx, tenant, action_instance):
    ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", _items())
    again = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", _items())
    assert again.created == []
    assert sorted(again.skipped) == ["1", "2", "3"]
    other = ctx.queue.enqueue_execution(tenant, action_instance, "exec-2", _items()[:1])
    assert len(other.created) == 1


def test_send_mode_first_rejects_repeat_numbers(ctx, tenant):
    instance = make_instance(ctx, "action", "act-first", {"message": "Hello", "send_mode": "first"})
    items = [
        {"ContactID": "1", "C_MobilePhone": "0412345678"},
        {"ContactID": "2", "C_MobilePhone": "0412345678"},
    ]
    result = ctx.queue.enqueue_execution(tenant, instance, "exec-1", items)
    assert [job.contact_id for job in result.rejected] == ["2"]
    assert "Duplicate mobile" in result.rejected[0].error


def test_validity_only_when_expiry_enabled(ctx, tenant):
    instance = make_instance(
        ctx, "action", "act-exp", {"message": "Hello", "message_expiry": "YES", "message_validity": 2}
    )
    job = ctx.queue.enqueue_execution(tenant, instance, "e", [{"ContactID": "1", "C_MobilePhone": "0412345678"}]).created[0]
    assert job.validity_minutes == 120


def test_transient_failures_allow_four_attempts_in_total(ctx, tenant, action_instance):
    job = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", _items()[:1]).created[0]
    attempts = 0
    while True:
        job = ctx.queue.lease_batch(10, now=utc_now() + timedelta(days=1))[0]
        attempts += 1
        job = ctx.queue.mark_failed(job, "gateway timeout", transient=True)
        if job.terminal:
            break
        assert job.retryable
        assert ctx.queue.reset_retryable(now=utc_now() + timedelta(hours=1)) == 1
    assert attempts == 4
    assert job.retry_count == 3
    assert job.permanent is True


def test_reset_retryable_respects_cooloff(ctx, tenant, action_instance):
    job = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", _items()[:1]).created[0]
    job = ctx.queue.lease_batch(1)[0]
    failed = ctx.queue.mark_failed(job, "503", transient=True)
    assert ctx.queue.reset_retryable(now=failed.last_retry_at + timedelta(seconds=10)) == 0
    assert ctx.queue.reset_retryable(now=failed.last_retry_at + timedelta(minutes=6)) == 1
    assert ctx.queue.get(job.job_id).status == JobStatus.PENDING.value


def test_permanent_failure_is_terminal_immediately(ctx, tenant, action_instance):
    ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", _items()[:1])
    job = ctx.queue.lease_batch(1)[0]
    job = ctx.queue.mark_failed(job, "invalid number", transient=False)
    assert job.terminal and job.retry_count == 0
    assert ctx.queue.reset_retryable(now=utc_now() + timedelta(days=1)) == 0


def test_recover_stale_and_cleanup(ctx, tenant, action_instance):
    ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", _items())
    leased = ctx.queue.lease_batch(10)
    assert {job.status for job in leased} == {JobStatus.PROCESSING.value}
    assert ctx.queue.recover_stale(now=utc_now()) == 0
    assert ctx.queue.recover_stale(now=utc_now() + timedelta(minutes=11)) == 2

    key = (INSTALL_ID, action_instance.instance_id, "exec-1")
    assert not ctx.queue.execution_done(key)
    for job in ctx.queue.lease_batch(10):
        ctx.queue.mark_sent(job, "m-" + job.contact_id, {"message_id": 1})
    assert ctx.queue.execution_done(key)
    assert ctx.queue.cleanup(now=utc_now() + timedelta(days=29)) == 0
    assert ctx.queue.cleanup(now=utc_now() + timedelta(days=31)) == 3


def test_cancel_open_skips_terminal_and_in_flight_jobs(ctx, tenant, action_instance):
    created = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", _items()).created
    by_contact = {job.contact_id: job for job in created}
    in_flight = ctx.queue.mark_processing(by_contact["3"])

    cancelled = ctx.queue.cancel_open("Action instance deleted", instance_id=action_instance.instance_id)
    assert [job.contact_id for job in cancelled] == ["1"]
    assert cancelled[0].error == "Action instance deleted"
    assert cancelled[0].terminal

    assert ctx.queue.get(by_contact["2"].job_id).error == "Mobile number not found"
    assert ctx.queue.get(in_flight.job_id).status == JobStatus.PROCESSING.value
    assert ctx.queue.lease_batch(10) == []
