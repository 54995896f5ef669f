"""Tests for the step interpreter."""

import pytest

from core.exceptions import HttpStatusError
from workflow.executor import WorkflowExecutor
from workflow.models import CascadeInfo, NotificationMessage, WorkflowContext, WorkflowDefinition


def workflow(*steps, name="wf") -> WorkflowDefinition:
    return WorkflowDefinition.from_dict({"name": name, "steps": list(steps)})


class TestExecutionResult:
    @pytest.mark.asyncio
    async def test_empty_workflow_succeeds(self, executor):
        result = await executor.execute(workflow(), WorkflowContext(variables={"a": 1}))
        assert result.success is True
        assert result.result == {"a": 1}
        assert result.logs[0].message == "Starting workflow: wf"
        assert result.logs[-1].message == "Workflow completed"

    @pytest.mark.asyncio
    async def test_failure_is_returned_not_raised(self, executor):
        result = await executor.execute(workflow({"type": "webhook"}), WorkflowContext())
        assert result.success is False
        assert result.error == "Webhook step requires url"
        assert result.logs[-1].level == "error"
        assert result.logs[-1].message == "Workflow failed"

    @pytest.mark.asyncio
    async def test_first_failure_aborts_remaining_steps(self, executor, email_service):
        wf = workflow(
            {"type": "plugin", "plugin": "util", "action_name": "explode"},
            {"type": "email", "to": "a@example.com", "subject": "never"},
        )
        result = await executor.execute(wf, WorkflowContext())
        assert result.error == "plugin exploded"
        assert email_service.sent == []

    @pytest.mark.asyncio
    async def test_missing_services_reported(self):
        bare = WorkflowExecutor()
        result = await bare.execute(
            workflow({"type": "email", "to": "a@b.c", "subject": "s"}),
            WorkflowContext(),
        )
        assert result.error == "Email service not configured"

        result = await bare.execute(workflow({"type": "webhook", "url": "https://x/y"}), WorkflowContext())
        assert result.error == "HTTP client not configured"


class TestQueryStep:
    @pytest.mark.asyncio
    async def test_create_resolves_data_and_assigns(self, executor, data_layer):
        wf = workflow({
            "type": "query", "entity": "Ticket", "action": "create",
            "data": {"title": "{{variables.title}}"}, "assignTo": "ticket",
        })
        ctx = WorkflowContext(variables={"title": "Broken"})
        result = await executor.execute(wf, ctx)
        assert result.success
        assert ctx.variables["ticket"]["title"] == "Broken"
        assert data_layer.calls[0][:2] == ("create", "Ticket")

    @pytest.mark.asyncio
    async def test_create_requires_data(self, executor):
        result = await executor.execute(
            workflow({"type": "query", "entity": "Ticket", "action": "create"}),
            WorkflowContext(),
        )
        assert result.error == "Create action requires data"

    @pytest.mark.asyncio
    async def test_requires_entity(self, executor):
        result = await executor.execute(workflow({"type": "query", "action": "find"}), WorkflowContext())
        assert result.error == "Query step requires entity"

    @pytest.mark.asyncio
    async def test_update_requires_id(self, executor):
        result = await executor.execute(
            workflow({"type": "query", "entity": "Ticket", "action": "update", "data": {"x": 1}, "where": {}}),
            WorkflowContext(),
        )
        assert result.error == "Update action requires an id in the where clause"

    @pytest.mark.asyncio
    async def test_numeric_id_passed_as_string(self, executor, data_layer):
        data_layer.records["Ticket"] = {"7": {"id": "7", "status": "open"}}
        result = await executor.execute(
            workflow({"type": "query", "entity": "Ticket", "action": "delete", "where": {"id": 7}}),
            WorkflowContext(),
        )
        assert result.success, result.error
        assert ("delete", "Ticket", "7") in data_layer.calls
        assert data_layer.records["Ticket"] == {}

    @pytest.mark.asyncio
    async def test_update_with_string_where_emits_before_and_after(self, executor, data_layer):
        data_layer.records["Ticket"] = {"t1": {"id": "t1", "status": "open"}}
        events = []

        async def sink(**kwargs):
            events.append(kwargs)

        executor.on_entity_event = sink
        wf = workflow({
            "type": "query", "entity": "Ticket", "action": "update",
            "where": "{{variables.id}}", "data": {"status": "closed"},
        })
        result = await executor.execute(wf, WorkflowContext(variables={"id": "t1"}))

        assert result.success
        assert events == [{
            "entity": "Ticket",
            "event": "update",
            "before": {"id": "t1", "status": "open"},
            "after": {"id": "t1", "status": "closed"},
            "source_workflow": "wf",
            "depth": 0,
        }]

    @pytest.mark.asyncio
    async def test_pre_image_failure_does_not_abort(self, executor, data_layer):
        data_layer.fail_find = True
        events = []

        async def sink(**kwargs):
            events.append(kwargs)

        executor.on_entity_event = sink
        wf = workflow({"type": "query", "entity": "Ticket", "action": "delete", "where": {"id": "t9"}})
        result = await executor.execute(wf, WorkflowContext())
        assert result.success
        assert events[0]["before"] is None
        assert events[0]["after"] is None
        assert events[0]["event"] == "delete"

    @pytest.mark.asyncio
    async def test_cascade_metadata_forwarded(self, executor):
        events = []

        async def sink(**kwargs):
            events.append(kwargs)

        executor.on_entity_event = sink
        ctx = WorkflowContext(cascade=CascadeInfo(source_workflow="upstream-workflow", depth=2))
        wf = workflow({"type": "query", "entity": "Ticket", "action": "create", "data": {"title": "x"}})
        await executor.execute(wf, ctx)
        assert events[0]["source_workflow"] == "upstream-workflow"
        assert events[0]["depth"] == 2

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_fail_step(self, executor):
        async def sink(**kwargs):
            raise RuntimeError("listener down")

        executor.on_entity_event = sink
        wf = workflow({"type": "query", "entity": "Ticket", "action": "create", "data": {"title": "x"}})
        result = await executor.execute(wf, WorkflowContext())
        assert result.success

    @pytest.mark.asyncio
    async def test_find(self, executor, data_layer):
        data_layer.records["Ticket"] = {
            "1": {"id": "1", "status": "open"},
            "2": {"id": "2", "status": "closed"},
        }
        wf = workflow({
            "type": "query", "entity": "Ticket", "action": "find",
            "where": {"status": "open"}, "assignTo": "open",
        })
        ctx = WorkflowContext()
        await executor.execute(wf, ctx)
        assert ctx.variables["open"] == [{"id": "1", "status": "open"}]


class TestServiceSteps:
    @pytest.mark.asyncio
    async def test_email(self, executor, email_service):
        wf = workflow({
            "type": "email", "to": "{{variables.user.email}}",
            "subject": "Hi {{variables.user.name}}", "body": "Body", "template": "welcome",
        })
        ctx = WorkflowContext(variables={"user": {"email": "ada@example.com", "name": "Ada"}})
        result = await executor.execute(wf, ctx)
        assert result.success
        assert email_service.sent == [{
            "to": "ada@example.com", "subject": "Hi Ada", "body": "Body", "template": "welcome",
        }]

    @pytest.mark.asyncio
    async def test_email_requires_subject(self, executor):
        result = await executor.execute(workflow({"type": "email", "to": "a@b.c"}), WorkflowContext())
        assert result.error == "Email step requires subject"

    @pytest.mark.asyncio
    async def test_webhook(self, executor, http_client):
        wf = workflow({
            "type": "webhook", "url": "https://x/{{variables.path}}",
            "headers": {"X-Id": "{{variables.id}}"},
            "payload": {"id": "{{variables.id}}"}, "assignTo": "r",
        })
        ctx = WorkflowContext(variables={"id": "42", "path": "y"})
        result = await executor.execute(wf, ctx)
        assert result.success
        assert http_client.requests == [{
            "url": "https://x/y", "method": "POST",
            "headers": {"X-Id": "42"}, "body": {"id": "42"},
        }]
        assert result.result["r"] == {"ok": True}

    @pytest.mark.asyncio
    async def test_webhook_error_surfaces(self, executor, http_client):
        http_client.error = HttpStatusError(404, "Not Found")
        result = await executor.execute(workflow({"type": "webhook", "url": "https://x/y"}), WorkflowContext())
        assert result.error == "HTTP 404: Not Found"

    @pytest.mark.asyncio
    async def test_notify_leaves_adapter_and_template_unresolved(self, executor, notification_service):
        wf = workflow({
            "type": "notify", "adapter": "{{variables.adapter}}", "template": "{{variables.t}}",
            "channel": "#{{variables.team}}", "to": "{{variables.who}}",
            "params": {"n": "{{variables.n}}"}, "metadata": {"k": "v"},
        })
        ctx = WorkflowContext(variables={"team": "ops", "who": "ada", "n": 3, "adapter": "x", "t": "y"})
        result = await executor.execute(wf, ctx)
        assert result.success
        message = notification_service.sent[0]
        assert isinstance(message, NotificationMessage)
        assert message.adapter == "{{variables.adapter}}"
        assert message.template == "{{variables.t}}"
        assert message.channel == "#ops"
        assert message.to == "ada"
        assert message.params == {"n": "3"}
        assert message.metadata == {"k": "v"}

    @pytest.mark.asyncio
    async def test_plugin_action_gets_params_and_context(self, executor):
        wf = workflow({
            "type": "plugin", "plugin": "util", "action_name": "echo",
            "params": {"greeting": "hi {{variables.name}}"}, "assignTo": "out",
        })
        ctx = WorkflowContext(variables={"name": "Ada"})
        await executor.execute(wf, ctx)
        assert ctx.variables["out"] == {"greeting": "hi Ada"}

    @pytest.mark.asyncio
    async def test_unknown_plugin_and_action(self, executor):
        result = await executor.execute(
            workflow({"type": "plugin", "plugin": "nope", "action_name": "x"}), WorkflowContext(),
        )
        assert result.error == "Plugin not found: nope"

        result = await executor.execute(
            workflow({"type": "plugin", "plugin": "util", "action_name": "nope"}), WorkflowContext(),
        )
        assert result.error == "Action not found: util.nope"


class TestControlFlow:
    @pytest.mark.asyncio
    async def test_condition_then_branch(self, executor, email_service):
        wf = workflow({
            "type": "condition",
            "if": {"variables.total": {"$gt": 100}},
            "then": [{"type": "email", "to": "vip@example.com", "subject": "big"}],
            "else": [{"type": "email", "to": "std@example.com", "subject": "small"}],
        })
        await executor.execute(wf, WorkflowContext(variables={"total": 150}))
        await executor.execute(wf, WorkflowContext(variables={"total": 50}))
        assert [m["to"] for m in email_service.sent] == ["vip@example.com", "std@example.com"]

    @pytest.mark.asyncio
    async def test_condition_nested_steps_assign(self, executor):
        wf = workflow({
            "type": "condition",
            "if": {"variables.flag": True},
            "then": [{"type": "plugin", "plugin": "util", "action_name": "echo", "params": {"a": 1}, "assignTo": "x"}],
        })
        ctx = WorkflowContext(variables={"flag": True})
        await executor.execute(wf, ctx)
        assert ctx.variables["x"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_loop_collects_flat_results(self, executor):
        wf = workflow({
            "type": "loop",
            "items": "{{variables.numbers}}",
            "do": [{"type": "plugin", "plugin": "math", "action_name": "double"}],
            "assignTo": "doubled",
        })
        ctx = WorkflowContext(variables={"numbers": [1, 2, 3]})
        result = await executor.execute(wf, ctx)
        assert result.success
        assert ctx.variables["doubled"] == [2, 4, 6]
        assert "item" not in ctx.variables
        assert "index" not in ctx.variables
        assert set(ctx.variables) == {"numbers", "doubled"}

    @pytest.mark.asyncio
    async def test_loop_over_literal_list(self, executor):
        wf = workflow({
            "type": "loop", "items": [1, 2, 3],
            "do": [{"type": "plugin", "plugin": "math", "action_name": "double"}],
            "assignTo": "r",
        })
        ctx = WorkflowContext()
        await executor.execute(wf, ctx)
        assert ctx.variables["r"] == [2, 4, 6]

    @pytest.mark.asyncio
    async def test_loop_writes_reach_parent_variables(self, executor):
        wf = workflow({
            "type": "loop", "items": ["a", "b"],
            "do": [{
                "type": "plugin", "plugin": "util", "action_name": "echo",
                "params": {"value": "{{variables.item}}-{{variables.index}}"}, "assignTo": "last",
            }],
        })
        ctx = WorkflowContext(variables={"item": "outer"})
        await executor.execute(wf, ctx)
        assert ctx.variables["last"] == {"value": "b-1"}
        assert ctx.variables["item"] == "outer"

    @pytest.mark.asyncio
    async def test_loop_requires_array(self, executor):
        wf = workflow({"type": "loop", "items": "{{variables.n}}", "do": []})
        result = await executor.execute(wf, WorkflowContext(variables={"n": 5}))
        assert result.error.startswith("Loop items must be an array")

    @pytest.mark.asyncio
    async def test_loop_requires_do(self, executor):
        result = await executor.execute(workflow({"type": "loop", "items": [1]}), WorkflowContext())
        assert result.error == "Loop step requires do"

    @pytest.mark.asyncio
    async def test_delay(self, executor):
        wf = workflow(
            {"type": "delay", "duration": 1},
            {"type": "delay", "duration": "{{variables.ms}}"},
        )
        result = await executor.execute(wf, WorkflowContext(variables={"ms": "2"}))
        assert result.success

    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", ["1.5", " 3", "{{variables.ms}}ms"])
    async def test_delay_uses_leading_integer(self, executor, duration):
        result = await executor.execute(
            workflow({"type": "delay", "duration": duration}), WorkflowContext(variables={"ms": "2"}),
        )
        assert result.success, result.error

    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", [-5, "abc", "-1", "ms5", ""])
    async def test_invalid_delay(self, executor, duration):
        result = await executor.execute(workflow({"type": "delay", "duration": duration}), WorkflowContext())
        assert result.error.startswith("Invalid delay duration")


class TestDefinitionParsing:
    def test_unknown_step_type_rejected(self):
        from core.exceptions import WorkflowDefinitionError

        with pytest.raises(WorkflowDefinitionError):
            workflow({"type": "teleport"})

    def test_unknown_condition_operator_rejected(self):
        from core.exceptions import WorkflowDefinitionError

        with pytest.raises(WorkflowDefinitionError):
            workflow({"type": "condition", "if": {"a": {"$almost": 1}}, "then": []})
