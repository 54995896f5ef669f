"""Step interpreter: runs one workflow's steps against a context.

Steps run strictly in order. The first step that raises aborts the rest
of the run; nothing already applied is rolled back. ``execute()`` never
raises: every failure comes back as a failed ExecutionResult with a log
trail, and retry policy is left to the queue.
"""

import asyncio
import inspect
import re
from collections import ChainMap
from dataclasses import replace
from typing import Any, Optional

import structlog

from core.exceptions import (
    PluginActionNotFoundError,
    PluginNotFoundError,
    ServiceNotConfiguredError,
    StepValidationError,
)
from workflow.models import (
    ConditionStep,
    DelayStep,
    EmailStep,
    ExecutionResult,
    LoopStep,
    NotificationMessage,
    NotifyStep,
    PluginStep,
    QueryStep,
    WebhookStep,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowJob,
    WorkflowLog,
)
from workflow.ports import (
    DataLayer,
    EmailService,
    EntityEventSink,
    HttpClient,
    NotificationService,
    PluginRegistry,
)
from workflow.variables import resolve_value, resolve_variables

LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")

logger = structlog.get_logger(__name__)

QUERY_ACTIONS = ("create", "update", "delete", "find")


class LoopScope(ChainMap):
    """Variables seen by one loop iteration.

    ``item`` and ``index`` live in a private layer on top of the parent's
    variables; every other write goes through to the parent.
    """

    LOCAL_KEYS = ("item", "index")

    def __init__(self, parent, item: Any, index: int):
        super().__init__({"item": item, "index": index}, parent)

    def __setitem__(self, key, value):
        if key in self.LOCAL_KEYS:
            self.maps[0][key] = value
        else:
            self.maps[1][key] = value

    def __delitem__(self, key):
        if key in self.LOCAL_KEYS:
            del self.maps[0][key]
        else:
            del self.maps[1][key]


def _extract_id(where: Any) -> Optional[str]:
    if isinstance(where, (str, int)) and not isinstance(where, bool):
        return str(where) if where != "" else None
    if isinstance(where, dict) and where.get("id") not in (None, ""):
        return str(where["id"])
    return None


class WorkflowExecutor:
    """Executes workflow definitions step by step.

    Every collaborator is optional; a step that needs a missing one fails
    with ServiceNotConfiguredError.
    """

    def __init__(
        self,
        data_layer: Optional[DataLayer] = None,
        plugin_registry: Optional[PluginRegistry] = None,
        email_service: Optional[EmailService] = None,
        http_client: Optional[HttpClient] = None,
        notification_service: Optional[NotificationService] = None,
        on_entity_event: Optional[EntityEventSink] = None,
    ):
        self.data_layer = data_layer
        self.plugin_registry = plugin_registry
        self.email_service = email_service
        self.http_client = http_client
        self.notification_service = notification_service
        self.on_entity_event = on_entity_event

    async def execute(
        self,
        workflow: WorkflowDefinition,
        context: WorkflowContext,
    ) -> ExecutionResult:
        """Run every step of ``workflow``; return the variables as the result."""
        logs: list[WorkflowLog] = []
        if context.cascade.source_workflow is None:
            context.cascade.source_workflow = workflow.name

        logs.append(WorkflowLog("info", f"Starting workflow: {workflow.name}"))
        try:
            for index, step in enumerate(workflow.steps):
                logs.append(WorkflowLog(
                    "debug", f"Executing step {index + 1}: {step.type}",
                ))
                await self._run_step(step, context)
        except Exception as e:
            error = str(e) or type(e).__name__
            logs.append(WorkflowLog(
                "error", "Workflow failed",
                data={"error": error, "error_type": type(e).__name__},
            ))
            logger.warning(
                "Workflow execution failed",
                workflow=workflow.name,
                error=error,
            )
            return ExecutionResult(success=False, error=error, logs=logs)

        logs.append(WorkflowLog("info", "Workflow completed"))
        return ExecutionResult(success=True, result=dict(context.variables), logs=logs)

    async def run_job(self, job: WorkflowJob, workflow: WorkflowDefinition) -> ExecutionResult:
        """Job runner entry point used by the queue."""
        structlog.contextvars.bind_contextvars(job_id=job.id, workflow=workflow.name)
        try:
            return await self.execute(workflow, job.context)
        finally:
            structlog.contextvars.unbind_contextvars("job_id", "workflow")

    # ─── Dispatch ─────────────────────────────────────────────

    async def _run_step(self, step, context: WorkflowContext) -> Any:
        result = await self._execute_step(step, context)
        if step.assign_to:
            context.variables[step.assign_to] = result
        return result

    async def _execute_step(self, step, context: WorkflowContext) -> Any:
        if isinstance(step, QueryStep):
            return await self._execute_query(step, context)
        elif isinstance(step, EmailStep):
            return await self._execute_email(step, context)
        elif isinstance(step, WebhookStep):
            return await self._execute_webhook(step, context)
        elif isinstance(step, PluginStep):
            return await self._execute_plugin(step, context)
        elif isinstance(step, NotifyStep):
            return await self._execute_notify(step, context)
        elif isinstance(step, ConditionStep):
            return await self._execute_condition(step, context)
        elif isinstance(step, LoopStep):
            return await self._execute_loop(step, context)
        elif isinstance(step, DelayStep):
            return await self._execute_delay(step, context)
        raise StepValidationError(f"Unknown step type: {getattr(step, 'type', step)}")

    # ─── Step kinds ───────────────────────────────────────────

    async def _execute_query(self, step: QueryStep, context: WorkflowContext) -> Any:
        if self.data_layer is None:
            raise ServiceNotConfiguredError("Data layer")
        if not step.entity:
            raise StepValidationError("Query step requires entity")
        if not step.action:
            raise StepValidationError("Query step requires action")
        if step.action not in QUERY_ACTIONS:
            raise StepValidationError(f"Unknown query action: {step.action}")

        data = resolve_variables(step.data, context)
        where = resolve_variables(step.where, context)

        if step.action == "find":
            return await self.data_layer.execute({"entity": step.entity, "where": where})

        if step.action == "create":
            if not data:
                raise StepValidationError("Create action requires data")
            record = await self.data_layer.create(step.entity, data)
            await self._emit_entity_event(step.entity, "create", None, record, context)
            return record

        record_id = _extract_id(where)
        if record_id is None:
            raise StepValidationError(
                f"{step.action.capitalize()} action requires an id in the where clause"
            )
        before = await self._read_before(step.entity, record_id)

        if step.action == "update":
            record = await self.data_layer.update(step.entity, record_id, data or {})
            await self._emit_entity_event(step.entity, "update", before, record, context)
            return record

        result = await self.data_layer.delete(step.entity, record_id)
        await self._emit_entity_event(step.entity, "delete", before, None, context)
        return result

    async def _read_before(self, entity: str, record_id: str) -> Any:
        try:
            return await self.data_layer.find_by_id(entity, record_id)
        except Exception as e:
            logger.warning("Pre-image read failed", entity=entity, id=record_id, error=str(e))
            return None

    async def _emit_entity_event(
        self,
        entity: str,
        event: str,
        before: Any,
        after: Any,
        context: WorkflowContext,
    ) -> None:
        if self.on_entity_event is None:
            return
        # The mutation is committed; a failing listener must not fail the step.
        try:
            await self.on_entity_event(
                entity=entity,
                event=event,
                before=before,
                after=after,
                source_workflow=context.cascade.source_workflow or "unknown",
                depth=context.cascade.depth,
            )
        except Exception as e:
            logger.error("Entity event listener failed", entity=entity, entity_event=event, error=str(e))

    async def _execute_email(self, step: EmailStep, context: WorkflowContext) -> None:
        if self.email_service is None:
            raise ServiceNotConfiguredError("Email service")
        to = resolve_variables(step.to, context)
        subject = resolve_variables(step.subject, context)
        if not to:
            raise StepValidationError("Email step requires to")
        if not subject:
            raise StepValidationError("Email step requires subject")
        await self.email_service.send(
            to,
            subject,
            resolve_variables(step.body, context) or "",
            step.template,
        )

    async def _execute_webhook(self, step: WebhookStep, context: WorkflowContext) -> Any:
        if self.http_client is None:
            raise ServiceNotConfiguredError("HTTP client")
        if not step.url:
            raise StepValidationError("Webhook step requires url")
        return await self.http_client.request(
            resolve_variables(step.url, context),
            method=step.method or "POST",
            headers=resolve_variables(step.headers, context),
            body=resolve_variables(step.payload, context),
        )

    async def _execute_notify(self, step: NotifyStep, context: WorkflowContext) -> None:
        if self.notification_service is None:
            raise ServiceNotConfiguredError("Notification service")
        message = NotificationMessage(
            adapter=step.adapter,
            channel=resolve_variables(step.channel, context),
            to=resolve_variables(step.to, context),
            subject=resolve_variables(step.subject, context),
            body=resolve_variables(step.body, context),
            template=step.template,
            params=resolve_variables(step.params, context) or {},
            metadata=resolve_variables(step.metadata, context) or {},
        )
        await self.notification_service.send(message)

    async def _execute_plugin(self, step: PluginStep, context: WorkflowContext) -> Any:
        if self.plugin_registry is None:
            raise ServiceNotConfiguredError("Plugin registry")
        if not step.plugin:
            raise StepValidationError("Plugin step requires plugin")
        if not step.action_name:
            raise StepValidationError("Plugin step requires action_name")

        plugin = self.plugin_registry.get_plugin(step.plugin)
        if plugin is None:
            raise PluginNotFoundError(step.plugin)
        actions = plugin.get("actions") if isinstance(plugin, dict) else getattr(plugin, "actions", None)
        action = (actions or {}).get(step.action_name)
        if action is None:
            raise PluginActionNotFoundError(step.plugin, step.action_name)

        params = resolve_variables(step.params, context) or {}
        result = action(params, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _execute_condition(self, step: ConditionStep, context: WorkflowContext) -> None:
        if step.if_ is None:
            raise StepValidationError("Condition step requires if")
        branch = step.then if step.if_.evaluate(context) else step.else_
        for nested in branch:
            await self._run_step(nested, context)

    async def _execute_loop(self, step: LoopStep, context: WorkflowContext) -> list:
        if step.items is None:
            raise StepValidationError("Loop step requires items")
        if step.do is None:
            raise StepValidationError("Loop step requires do")

        items = resolve_value(step.items, context)
        if not isinstance(items, (list, tuple)):
            raise StepValidationError(
                f"Loop items must be an array, got {type(items).__name__}"
            )

        results = []
        for index, item in enumerate(items):
            iteration = replace(context, variables=LoopScope(context.variables, item, index))
            for nested in step.do:
                results.append(await self._run_step(nested, iteration))
        return results

    async def _execute_delay(self, step: DelayStep, context: WorkflowContext) -> None:
        if step.duration is None:
            raise StepValidationError("Delay step requires duration")

        duration = step.duration
        if isinstance(duration, str):
            # Leading integer only, so "1.5" waits 1ms and "10ms" waits 10ms.
            match = LEADING_INT_RE.match(str(resolve_variables(duration, context)))
            if match is None:
                raise StepValidationError(f"Invalid delay duration: {step.duration}")
            duration = int(match.group(1))
        if isinstance(duration, bool) or duration < 0:
            raise StepValidationError(f"Invalid delay duration: {step.duration}")

        await asyncio.sleep(duration / 1000)
