"""Workflow job queue.

Owns job records and decides when each job runs:

- FIFO admission up to ``max_concurrent`` running jobs
- per-workflow retry budget (``workflow.retries``, else the queue default)
- backoff between attempts from a RetryStrategy
- cooperative cancellation: cancelling a running job marks it, the work
  itself is never interrupted

How a job runs is not the queue's business. Either a ``runner`` is
injected (``WorkflowExecutor.run_job``) and the queue drives it, or an
external executor listens for ``job:execute`` and reports back through
``complete_job()`` / ``fail_job()``.

All state changes happen synchronously on the event loop thread, so no
locking is needed.
"""

import asyncio
import inspect
import uuid
from collections import defaultdict, deque
from datetime import timedelta
from typing import Any, Callable, Optional, Union

import structlog

from app.config import Settings, get_settings
from core.exceptions import (
    QueueShutdownError,
    WorkflowDefinitionError,
    WorkflowDisabledError,
    WorkflowNotFoundError,
)
from workflow.models import (
    JobStatus,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowJob,
    utcnow,
)
from workflow.ports import JobRunner
from workflow.retry_strategies import RetryPolicy, RetryStrategy

logger = structlog.get_logger(__name__)

QUEUE_EVENTS = (
    "workflow:registered",
    "workflow:unregistered",
    "job:enqueued",
    "job:started",
    "job:execute",
    "job:completed",
    "job:failed",
    "job:cancelled",
    "job:retried",
    "job:retry",
    "queue:cleaned",
)


class WorkflowQueue:
    """In-process scheduler for workflow jobs."""

    def __init__(
        self,
        max_concurrent: int = 10,
        max_retries: int = 3,
        retry_strategy: Optional[RetryStrategy] = None,
        runner: Optional[JobRunner] = None,
    ):
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_strategy = retry_strategy or RetryStrategy.exponential(
            max_retries=max_retries, base_delay=1.0, max_delay=60.0,
        )
        self.runner = runner

        self._workflows: dict[str, WorkflowDefinition] = {}
        self._jobs: dict[str, WorkflowJob] = {}
        self._pending: deque[str] = deque()
        self.running_jobs: set[str] = set()
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listeners: dict[str, list[Callable]] = defaultdict(list)
        self._shutting_down = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        runner: Optional[JobRunner] = None,
    ) -> "WorkflowQueue":
        settings = settings or get_settings()
        policy = RetryPolicy(settings.WORKFLOW_BACKOFF)
        if policy == RetryPolicy.LINEAR:
            strategy = RetryStrategy.linear(
                max_retries=settings.WORKFLOW_MAX_RETRIES,
                base_delay=settings.WORKFLOW_RETRY_DELAY,
                max_delay=settings.WORKFLOW_MAX_RETRY_DELAY,
            )
        elif policy == RetryPolicy.FIXED:
            strategy = RetryStrategy.fixed(
                max_retries=settings.WORKFLOW_MAX_RETRIES,
                delay=settings.WORKFLOW_RETRY_DELAY,
            )
        else:
            strategy = RetryStrategy.exponential(
                max_retries=settings.WORKFLOW_MAX_RETRIES,
                base_delay=settings.WORKFLOW_RETRY_DELAY,
                max_delay=settings.WORKFLOW_MAX_RETRY_DELAY,
            )
        return cls(
            max_concurrent=settings.WORKFLOW_MAX_CONCURRENT,
            max_retries=settings.WORKFLOW_MAX_RETRIES,
            retry_strategy=strategy,
            runner=runner,
        )

    # ─── Events ───────────────────────────────────────────────

    def on(self, event: str, handler: Callable) -> None:
        """Subscribe to a queue event. Async handlers are scheduled as tasks."""
        if event not in QUEUE_EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(handler)

    def off(self, event: str, handler: Callable) -> None:
        if handler in self._listeners.get(event, []):
            self._listeners[event].remove(handler)

    def _emit(self, event: str, payload: Any) -> None:
        for handler in list(self._listeners.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result))
            except Exception as e:
                logger.error("Queue event handler failed", queue_event=event, error=str(e))

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ─── Workflows ────────────────────────────────────────────

    def register_workflow(self, workflow: Union[WorkflowDefinition, dict]) -> WorkflowDefinition:
        """Register (or replace) a workflow definition by name."""
        if isinstance(workflow, dict):
            workflow = WorkflowDefinition.from_dict(workflow)
        if not workflow.name:
            raise WorkflowDefinitionError("Workflow must have a name")

        self._workflows[workflow.name] = workflow
        logger.info("Workflow registered", workflow=workflow.name, steps=len(workflow.steps))
        self._emit("workflow:registered", workflow)
        return workflow

    def unregister_workflow(self, name: str) -> bool:
        workflow = self._workflows.pop(name, None)
        if workflow is None:
            return False
        self._emit("workflow:unregistered", workflow)
        return True

    def get_workflow(self, name: str) -> Optional[WorkflowDefinition]:
        return self._workflows.get(name)

    def get_all_workflows(self) -> list[WorkflowDefinition]:
        return list(self._workflows.values())

    # ─── Jobs ─────────────────────────────────────────────────

    def enqueue(self, workflow_name: str, context: Optional[WorkflowContext] = None) -> WorkflowJob:
        """Create a pending job and start admission. Does not wait for the run."""
        if self._shutting_down:
            raise QueueShutdownError()
        workflow = self._workflows.get(workflow_name)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_name)
        if not workflow.enabled:
            raise WorkflowDisabledError(workflow_name)

        job = WorkflowJob(
            id=f"job_{uuid.uuid4().hex}",
            workflow_name=workflow_name,
            context=context or WorkflowContext(),
        )
        self._jobs[job.id] = job
        self._pending.append(job.id)
        logger.debug("Job enqueued", job_id=job.id, workflow=workflow_name)
        self._emit("job:enqueued", job)
        self._process_queue()
        return job

    def get_job(self, job_id: str) -> Optional[WorkflowJob]:
        return self._jobs.get(job_id)

    def get_jobs(
        self,
        status: Optional[JobStatus] = None,
        workflow_name: Optional[str] = None,
    ) -> list[WorkflowJob]:
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == JobStatus(status)]
        if workflow_name is not None:
            jobs = [j for j in jobs if j.workflow_name == workflow_name]
        return jobs

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending or running job.

        A running job keeps running; its eventual outcome is discarded.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return False

        if job.status == JobStatus.RUNNING:
            job.status = JobStatus.CANCELLED
        elif job.status == JobStatus.PENDING:
            job.status = JobStatus.CANCELLED
            job.completed_at = utcnow()
            if job_id in self._pending:
                self._pending.remove(job_id)
            timer = self._retry_timers.pop(job_id, None)
            if timer is not None:
                timer.cancel()
        else:
            return False

        logger.info("Job cancelled", job_id=job_id, workflow=job.workflow_name)
        self._emit("job:cancelled", job)
        return True

    def retry(self, job_id: str) -> bool:
        """Re-admit a failed job with a fresh attempt budget."""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return False
        if self._shutting_down:
            raise QueueShutdownError()

        job.status = JobStatus.PENDING
        job.attempts = 0
        job.error = None
        job.started_at = None
        job.completed_at = None

        self._pending.append(job.id)
        self._emit("job:retried", job)
        self._process_queue()
        return True

    def complete_job(self, job_id: str, result: Any = None) -> None:
        """Report a successful attempt."""
        job = self._release(job_id)
        if job is None:
            return

        job.status = JobStatus.COMPLETED
        job.result = result
        job.error = None
        job.completed_at = utcnow()
        logger.info(
            "Job completed",
            job_id=job_id,
            workflow=job.workflow_name,
            attempts=job.attempts,
        )
        self._emit("job:completed", job)
        self._process_queue()

    def fail_job(self, job_id: str, error: Union[str, Exception, None] = None) -> None:
        """Report a failed attempt; schedules a retry while budget remains."""
        job = self._release(job_id)
        if job is None:
            return

        job.error = str(error) if error is not None else "Unknown error"
        max_retries = self._max_retries_for(job.workflow_name)

        if job.attempts < max_retries and job.workflow_name in self._workflows:
            delay = self.retry_strategy.compute_delay(job.attempts)
            job.status = JobStatus.PENDING
            logger.warning(
                "Job failed, retrying",
                job_id=job_id,
                workflow=job.workflow_name,
                attempt=job.attempts,
                max_attempts=max_retries,
                delay_s=delay,
                error=job.error,
            )
            loop = asyncio.get_running_loop()
            self._retry_timers[job_id] = loop.call_later(delay, self._readmit, job_id)
        else:
            job.status = JobStatus.FAILED
            job.completed_at = utcnow()
            logger.error(
                "Job failed",
                job_id=job_id,
                workflow=job.workflow_name,
                attempts=job.attempts,
                error=job.error,
            )
            self._emit("job:failed", job)

        self._process_queue()

    def _release(self, job_id: str) -> Optional[WorkflowJob]:
        """Free the job's slot; returns it only if its outcome should be recorded."""
        job = self._jobs.get(job_id)
        if job is None:
            return None
        was_running = job_id in self.running_jobs
        self.running_jobs.discard(job_id)

        if job.status == JobStatus.CANCELLED:
            if job.completed_at is None:
                job.completed_at = utcnow()
            self._process_queue()
            return None
        if job.status != JobStatus.RUNNING or not was_running:
            logger.warning("Outcome reported for a job that is not running", job_id=job_id, status=job.status.value)
            return None
        return job

    def _max_retries_for(self, workflow_name: str) -> int:
        workflow = self._workflows.get(workflow_name)
        if workflow is not None and workflow.retries is not None:
            return workflow.retries
        return self.max_retries

    def _readmit(self, job_id: str) -> None:
        self._retry_timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return
        self._pending.append(job_id)
        self._emit("job:retry", job)
        self._process_queue()

    # ─── Admission ────────────────────────────────────────────

    def _process_queue(self) -> None:
        while (
            not self._shutting_down
            and self._pending
            and len(self.running_jobs) < self.max_concurrent
        ):
            job_id = self._pending.popleft()
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                continue

            workflow = self._workflows.get(job.workflow_name)
            if workflow is None:
                job.status = JobStatus.FAILED
                job.error = str(WorkflowNotFoundError(job.workflow_name))
                job.completed_at = utcnow()
                self._emit("job:failed", job)
                continue

            task = None
            if self.runner is not None:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError as e:
                    job.status = JobStatus.FAILED
                    job.error = f"Cannot schedule job: {e}"
                    job.completed_at = utcnow()
                    logger.error("Job could not be scheduled", job_id=job_id, workflow=job.workflow_name, error=str(e))
                    self._emit("job:failed", job)
                    continue
                task = loop.create_task(self._run(job, workflow))

            job.status = JobStatus.RUNNING
            job.attempts += 1
            job.started_at = utcnow()
            self.running_jobs.add(job_id)
            logger.debug("Job started", job_id=job_id, workflow=job.workflow_name, attempt=job.attempts)
            self._emit("job:started", job)
            self._emit("job:execute", {"job": job, "workflow": workflow})

            if task is not None:
                self._track(task)

    async def _run(self, job: WorkflowJob, workflow: WorkflowDefinition) -> None:
        try:
            result = await self.runner(job, workflow)
        except Exception as e:
            logger.exception("Job runner raised", job_id=job.id, workflow=workflow.name)
            self.fail_job(job.id, e)
            return

        if result.success:
            self.complete_job(job.id, result.result)
        else:
            self.fail_job(job.id, result.error)

    # ─── Maintenance ──────────────────────────────────────────

    def cleanup(self, older_than: float = 3600.0) -> int:
        """Drop terminal jobs finished more than ``older_than`` seconds ago."""
        cutoff = utcnow() - timedelta(seconds=older_than)
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal
            and job.completed_at is not None
            and job.completed_at < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]

        if stale:
            logger.info("Queue cleaned", removed=len(stale))
            self._emit("queue:cleaned", len(stale))
        return len(stale)

    def get_stats(self) -> dict:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return {
            **counts,
            "total": len(self._jobs),
            "workflows": len(self._workflows),
        }

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def shutdown(self, timeout: float = 30.0, poll_interval: float = 0.1) -> bool:
        """Stop admitting jobs and wait for running ones.

        Returns True if every running job finished within ``timeout``.
        In-flight work is never killed.
        """
        self._shutting_down = True
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()
        logger.info("Workflow queue shutting down", running=len(self.running_jobs))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.running_jobs and loop.time() < deadline:
            await asyncio.sleep(poll_interval)

        drained = not self.running_jobs
        if not drained:
            logger.warning("Shutdown timed out with jobs still running", running=len(self.running_jobs))
        return drained
