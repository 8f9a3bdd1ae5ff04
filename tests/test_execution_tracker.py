import asyncio

from conftest import INSTALL_ID
from smsbridge.errors import PlatformError
from smsbridge.execution_tracker import COMPLETE, ERRORED, ExecutionTracker, entry_for
from smsbridge.send_worker import SendWorker


class FakeClient:
    def __init__(self, fail=(), fail_all=False):
        self.calls = []
        self.fail = set(fail)
        self.fail_all = fail_all

    async def sync_action_outcome(self, instance_id, execution_id, outcome, entries):
        self.calls.append((instance_id, execution_id, outcome, entries))
        if self.fail_all or outcome in self.fail:
            raise PlatformError("bulk api down", status_code=503)
        return {}

    def outcomes(self):
        return {outcome: entries for _, _, outcome, entries in self.calls}


def _finish(ctx, tenant, instance, items, execution_id="exec-1"):
    result = ctx.queue.enqueue_execution(tenant, instance, execution_id, items)
    jobs = []
    for job in result.created:
        if job.terminal:
            jobs.append(job)
            continue
        jobs.append(ctx.queue.mark_sent(job, f"m-{job.contact_id}", {"message_id": 1}))
    return jobs


ITEMS = [
    {"ContactID": "1", "EmailAddress": "a@example.com", "C_MobilePhone": "0412345678", "C_FirstName": "A"},
    {"ContactID": "2", "EmailAddress": "b@example.com"},
]


def test_entry_shapes(ctx, tenant, action_instance):
    sent, rejected = sorted(_finish(ctx, tenant, action_instance, ITEMS), key=lambda j: j.contact_id)
    complete = entry_for(sent)
    assert complete["contactId"] == "1"
    assert complete["message_id"] == "m-1"
    assert complete["caller_id"] == "61400000000"
    errored = entry_for(rejected)
    assert errored == {
        "contactId": "2",
        "emailAddress": "b@example.com",
        "phone": None,
        "message": "Hi , reply YES",
        "error": "Mobile number not found",
    }


def test_flush_reports_once_every_job_is_terminal(ctx, tenant, action_instance):
    tracker = ExecutionTracker()
    client = FakeClient()
    result = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", ITEMS)
    pending = [job for job in result.created if not job.terminal]
    for job in result.rejected:
        tracker.record(job)
    for job in pending:
        tracker.record(job)  # ignored: not terminal

    assert asyncio.run(tracker.flush(ctx.queue, lambda _: client)) == 0
    assert client.calls == []

    sent = [ctx.queue.mark_sent(job, "m-1", {}) for job in pending]
    for job in sent:
        tracker.record(job)
    assert asyncio.run(tracker.flush(ctx.queue, lambda _: client)) == 1
    assert {(c[0], c[1]) for c in client.calls} == {("act-1", "exec-1")}
    outcomes = client.outcomes()
    assert [e["contactId"] for e in outcomes[COMPLETE]] == ["1"]
    assert [e["contactId"] for e in outcomes[ERRORED]] == ["2"]

    key = (INSTALL_ID, "act-1", "exec-1")
    assert tracker.reported(key)
    tracker.record(sent[0])
    assert asyncio.run(tracker.flush(ctx.queue, lambda _: client)) == 0
    assert len(client.calls) == 2


def test_flush_backfills_results_missing_from_memory(ctx, tenant, action_instance):
    tracker = ExecutionTracker()
    client = FakeClient()
    result = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", ITEMS)
    sent = [ctx.queue.mark_sent(job, "m-1", {}) for job in result.created if not job.terminal]
    tracker.record(sent[0])

    assert asyncio.run(tracker.flush(ctx.queue, lambda _: client)) == 1
    outcomes = client.outcomes()
    assert len(outcomes[COMPLETE]) == 1 and len(outcomes[ERRORED]) == 1


def test_failed_notify_keeps_the_execution_for_the_next_cycle(ctx, tenant, action_instance):
    tracker = ExecutionTracker()
    failing = FakeClient(fail_all=True)
    result = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", ITEMS[1:])
    tracker.record(result.created[0])

    assert asyncio.run(tracker.flush(ctx.queue, lambda _: failing)) == 0
    assert tracker.pending_keys() == [(INSTALL_ID, "act-1", "exec-1")]

    healthy = FakeClient()
    assert asyncio.run(tracker.flush(ctx.queue, lambda _: healthy)) == 1
    assert tracker.pending_keys() == []


def test_retry_only_repeats_the_outcome_that_failed(ctx, tenant, action_instance):
    tracker = ExecutionTracker()
    client = FakeClient(fail={ERRORED})
    result = ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", ITEMS)
    for job in result.created:
        tracker.record(job if job.terminal else ctx.queue.mark_sent(job, "m-1", {}))

    assert asyncio.run(tracker.flush(ctx.queue, lambda _: client)) == 0
    client.fail.clear()
    assert asyncio.run(tracker.flush(ctx.queue, lambda _: client)) == 1
    assert [call[2] for call in client.calls] == [COMPLETE, ERRORED, ERRORED]


def test_worker_does_not_repost_accepted_import(ctx, tenant, action_instance, fake_platform):
    fake_platform.fail_import_attempts = {2}
    ctx.queue.enqueue_execution(tenant, action_instance, "exec-1", ITEMS)
    worker = SendWorker(ctx)

    first = asyncio.run(worker.run_cycle())
    second = asyncio.run(worker.run_cycle())

    assert (first["executions_reported"], second["executions_reported"]) == (0, 1)
    assert fake_platform.import_attempts == 3
    values = [imp["syncActions"][0]["value"] for imp in fake_platform.imports]
    assert values == ["complete", "errored"]
