"""
Execution completion
--------------------
Collects per-contact outcomes for each (install, instance, execution) and
reports them to the Platform once every Job of the execution is terminal.
The `complete` and `errored` imports are tracked separately, so a retry
only repeats the one the Platform did not accept.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Set, Tuple

from smsbridge.datastore import run_io
from smsbridge.errors import BridgeError
from smsbridge.runtime import get_logger
from smsbridge.schema import Job, JobStatus

logger = get_logger("execution_tracker")

ExecutionKey = Tuple[str, str, str]
COMPLETE = "complete"
ERRORED = "errored"


def outcome_for(job: Job) -> str:
    return COMPLETE if job.status == JobStatus.SENT.value else ERRORED


def entry_for(job: Job) -> Dict[str, Any]:
    if outcome_for(job) == COMPLETE:
        return {
            "contactId": job.contact_id,
            "emailAddress": job.email,
            "phone": job.mobile,
            "message": job.message,
            "message_id": job.message_id,
            "caller_id": job.from_id,
            "assetId": job.asset_id,
            "Id": job.custom_object_record_id,
        }
    return {
        "contactId": job.contact_id,
        "emailAddress": job.email,
        "phone": job.mobile,
        "message": job.message,
        "error": job.error or "Unknown error",
    }


@dataclass
class ExecutionResults:
    complete: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errored: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    reported_outcomes: Set[str] = field(default_factory=set)

    def add(self, job: Job) -> None:
        # a job id lives in exactly one bucket
        self.complete.pop(job.job_id, None)
        self.errored.pop(job.job_id, None)
        bucket = self.complete if outcome_for(job) == COMPLETE else self.errored
        bucket[job.job_id] = entry_for(job)

    def outstanding(self) -> List[Tuple[str, List[Dict[str, Any]]]]:
        """Non-empty outcomes the Platform has not accepted yet."""
        out = []
        for outcome, bucket in ((COMPLETE, self.complete), (ERRORED, self.errored)):
            if bucket and outcome not in self.reported_outcomes:
                out.append((outcome, list(bucket.values())))
        return out

    def __len__(self) -> int:
        return len(self.complete) + len(self.errored)


class ExecutionTracker:
    def __init__(self) -> None:
        self._entries: Dict[ExecutionKey, ExecutionResults] = {}
        self._completed: Set[ExecutionKey] = set()

    def record(self, job: Job) -> None:
        """Remember the outcome of a terminal Job."""
        if not job.terminal:
            return
        key = job.execution_key
        if self.reported(key):
            logger.debug("Late result for already reported execution %s", key)
            return
        self._entries.setdefault(key, ExecutionResults()).add(job)

    def pending_keys(self) -> List[ExecutionKey]:
        return list(self._entries)

    def reported(self, key: ExecutionKey) -> bool:
        return key in self._completed

    async def flush(self, queue, platform_factory: Callable[[str], Any]) -> int:
        """Report every finished execution. Returns how many were fully reported."""
        reported = 0
        for key in list(self._entries):
            if self.reported(key):
                self._entries.pop(key, None)
                continue
            if not await run_io(queue.execution_done, key):
                continue
            jobs: List[Job] = await run_io(queue.jobs_for_execution, key)
            results = self._entries[key]
            for job in jobs:
                if job.terminal:
                    results.add(job)
            if len(results) != len(jobs):
                logger.warning("Execution %s has %s results for %s jobs", key, len(results), len(jobs))
                continue
            if await self._notify(key, results, platform_factory):
                self._completed.add(key)
                self._entries.pop(key, None)
                reported += 1
        return reported

    async def _notify(
        self, key: ExecutionKey, results: ExecutionResults, platform_factory: Callable[[str], Any]
    ) -> bool:
        install_id, instance_id, execution_id = key
        client = platform_factory(install_id)
        for outcome, entries in results.outstanding():
            try:
                await client.sync_action_outcome(instance_id, execution_id, outcome, entries)
            except BridgeError as exc:
                logger.error("Reporting %s for %s failed (will retry): %s", outcome, key, exc)
                return False
            results.reported_outcomes.add(outcome)
        logger.info(
            "Execution %s/%s reported: complete=%s errored=%s",
            instance_id,
            execution_id,
            len(results.complete),
            len(results.errored),
        )
        return True
