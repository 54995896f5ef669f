"""Workflow manager: wires the queue to the executor and routes triggers.

Triggers map onto workflow definitions like this:

    manual     trigger(name, data)                 every call
    entity     trigger_entity_event(...)           trigger.entity + trigger.event
                                                   (+ optional trigger.condition)
    webhook    trigger_webhook(path, ...)          trigger.webhook == path
    schedule   trigger_schedule(expression)        trigger.schedule == expression

Entity mutations made by workflows are fed back into
trigger_entity_event() one hop deeper, up to ``max_cascade_depth``.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog

from app.config import Settings, get_settings
from core.exceptions import CascadeDepthExceededError
from workflow.conditions import evaluate_condition
from workflow.executor import WorkflowExecutor
from workflow.models import (
    CascadeInfo,
    JobStatus,
    TriggerInfo,
    TriggerType,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowJob,
)
from workflow.ports import DataLayer, EmailService, HttpClient, NotificationService, PluginRegistry
from workflow.queue import WorkflowQueue

logger = structlog.get_logger(__name__)


class WorkflowManager:
    """Facade over WorkflowQueue and WorkflowExecutor."""

    def __init__(
        self,
        queue: Optional[WorkflowQueue] = None,
        executor: Optional[WorkflowExecutor] = None,
        max_cascade_depth: int = 5,
    ):
        self.queue = queue or WorkflowQueue()
        self.executor = executor or WorkflowExecutor()
        self.max_cascade_depth = max_cascade_depth

        self.executor.on_entity_event = self._on_entity_event
        self.queue.runner = self.executor.run_job

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        data_layer: Optional[DataLayer] = None,
        plugin_registry: Optional[PluginRegistry] = None,
        email_service: Optional[EmailService] = None,
        http_client: Optional[HttpClient] = None,
        notification_service: Optional[NotificationService] = None,
    ) -> "WorkflowManager":
        settings = settings or get_settings()
        executor = WorkflowExecutor(
            data_layer=data_layer,
            plugin_registry=plugin_registry,
            email_service=email_service,
            http_client=http_client,
            notification_service=notification_service,
        )
        return cls(
            queue=WorkflowQueue.from_settings(settings),
            executor=executor,
            max_cascade_depth=settings.WORKFLOW_MAX_CASCADE_DEPTH,
        )

    # ─── Workflows ────────────────────────────────────────────

    def register_workflow(self, workflow: Union[WorkflowDefinition, dict]) -> WorkflowDefinition:
        return self.queue.register_workflow(workflow)

    def unregister_workflow(self, name: str) -> bool:
        return self.queue.unregister_workflow(name)

    def get_workflow(self, name: str) -> Optional[WorkflowDefinition]:
        return self.queue.get_workflow(name)

    def get_all_workflows(self) -> list[WorkflowDefinition]:
        return self.queue.get_all_workflows()

    # ─── Triggers ─────────────────────────────────────────────

    def trigger(self, workflow_name: str, data: Any = None) -> WorkflowJob:
        """Run a workflow manually; ``data`` is exposed as ``variables.data``."""
        context = WorkflowContext(
            trigger=TriggerInfo(type=TriggerType.MANUAL, data=data),
            variables={"data": data},
        )
        if isinstance(data, dict) and data.get("session") is not None:
            context.session = data["session"]
        return self.queue.enqueue(workflow_name, context)

    async def trigger_entity_event(
        self,
        entity: str,
        event: str,
        before: Any = None,
        after: Any = None,
        cascade: Optional[CascadeInfo] = None,
    ) -> list[WorkflowJob]:
        """Enqueue every enabled workflow listening for this entity event.

        Args:
            entity: Entity name, e.g. "Ticket"
            event: create, update or delete
            before: Record before the change (update/delete)
            after: Record after the change (create/update)
            cascade: Position of the run that made the change; None when
                the change came from outside any workflow

        Raises:
            CascadeDepthExceededError: the change is too many hops deep
        """
        depth = 0 if cascade is None else cascade.depth + 1
        if depth > self.max_cascade_depth:
            raise CascadeDepthExceededError(depth, self.max_cascade_depth)

        data = after if after is not None else before
        condition_scope = {
            **(data if isinstance(data, dict) else {}),
            "before": before,
            "after": after,
            "data": data,
        }
        source_workflow = cascade.source_workflow if cascade else None

        jobs = []
        for workflow in self.queue.get_all_workflows():
            trigger = workflow.trigger
            if not workflow.enabled or trigger.entity != entity or trigger.event != event:
                continue
            if trigger.condition and not evaluate_condition(trigger.condition, condition_scope):
                continue

            context = WorkflowContext(
                trigger=TriggerInfo(
                    type=TriggerType.ENTITY,
                    entity=entity,
                    event=event,
                    data=data,
                    before=before,
                    after=after,
                    source_workflow=source_workflow,
                ),
                variables={"entity": data, "data": data, "before": before, "after": after},
                cascade=CascadeInfo(depth=depth),
            )
            jobs.append(self.queue.enqueue(workflow.name, context))

        if jobs:
            logger.info(
                "Entity event triggered workflows",
                entity=entity,
                entity_event=event,
                jobs=len(jobs),
                depth=depth,
                source_workflow=source_workflow,
            )
        return jobs

    async def trigger_webhook(
        self,
        path: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        query: Optional[dict[str, str]] = None,
    ) -> list[WorkflowJob]:
        """Enqueue every enabled workflow bound to this webhook path."""
        request = {"headers": headers or {}, "body": body, "query": query or {}}
        jobs = []
        for workflow in self.queue.get_all_workflows():
            if not workflow.enabled or not workflow.trigger.webhook:
                continue
            if workflow.trigger.webhook != path:
                continue
            context = WorkflowContext(
                trigger=TriggerInfo(type=TriggerType.WEBHOOK, data=body),
                variables={"webhook": dict(request)},
                request=request,
            )
            jobs.append(self.queue.enqueue(workflow.name, context))
        return jobs

    async def trigger_schedule(self, expression: str) -> list[WorkflowJob]:
        """Enqueue every enabled workflow whose schedule expression matches."""
        jobs = []
        for workflow in self.queue.get_all_workflows():
            if not workflow.enabled or not workflow.trigger.schedule:
                continue
            if workflow.trigger.schedule != expression:
                continue
            context = WorkflowContext(
                trigger=TriggerInfo(type=TriggerType.SCHEDULE),
                variables={"timestamp": datetime.now(timezone.utc).isoformat()},
            )
            jobs.append(self.queue.enqueue(workflow.name, context))
        return jobs

    async def _on_entity_event(
        self,
        entity: str,
        event: str,
        before: Any,
        after: Any,
        source_workflow: str,
        depth: int,
    ) -> None:
        try:
            await self.trigger_entity_event(
                entity,
                event,
                before=before,
                after=after,
                cascade=CascadeInfo(source_workflow=source_workflow, depth=depth),
            )
        except CascadeDepthExceededError as e:
            logger.warning(
                "Dropping cascaded entity event",
                entity=entity,
                entity_event=event,
                source_workflow=source_workflow,
                error=str(e),
            )

    # ─── Jobs ─────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[WorkflowJob]:
        return self.queue.get_job(job_id)

    def get_jobs(
        self,
        status: Optional[JobStatus] = None,
        workflow_name: Optional[str] = None,
    ) -> list[WorkflowJob]:
        return self.queue.get_jobs(status=status, workflow_name=workflow_name)

    def cancel_job(self, job_id: str) -> bool:
        return self.queue.cancel(job_id)

    def retry_job(self, job_id: str) -> bool:
        return self.queue.retry(job_id)

    def cleanup(self, older_than: float = 3600.0) -> int:
        return self.queue.cleanup(older_than)

    def get_stats(self) -> dict:
        return self.queue.get_stats()

    async def shutdown(self, timeout: float = 30.0) -> bool:
        return await self.queue.shutdown(timeout)
