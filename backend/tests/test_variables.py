"""Tests for placeholder resolution and path lookup."""

from workflow.models import TriggerInfo, WorkflowContext
from workflow.variables import get_value_by_path, resolve_value, resolve_variables, stringify


def make_context(**variables) -> WorkflowContext:
    return WorkflowContext(
        trigger=TriggerInfo(after={"status": "resolved", "tags": ["a", "b"]}),
        variables=variables,
    )


class TestGetValueByPath:
    def test_nested_dict(self):
        assert get_value_by_path({"a": {"b": {"c": 1}}}, "a.b.c") == 1

    def test_list_index(self):
        assert get_value_by_path({"items": [{"id": 7}]}, "items.0.id") == 7

    def test_attribute_access(self):
        ctx = make_context(name="Ada")
        assert get_value_by_path(ctx, "trigger.after.status") == "resolved"
        assert get_value_by_path(ctx, "variables.name") == "Ada"

    def test_missing_returns_default(self):
        assert get_value_by_path({"a": 1}, "a.b") is None
        assert get_value_by_path({"a": 1}, "b", default="x") == "x"

    def test_private_attributes_not_reachable(self):
        ctx = make_context()
        assert get_value_by_path(ctx, "__class__") is None


class TestStringify:
    def test_values(self):
        assert stringify(None) == "null"
        assert stringify(True) == "true"
        assert stringify(False) == "false"
        assert stringify(3) == "3"
        assert stringify({"a": 1}) == '{"a": 1}'
        assert stringify([1, 2]) == "[1, 2]"


class TestResolveVariables:
    def test_simple_substitution(self):
        ctx = WorkflowContext(variables={"name": "Ada"})
        assert resolve_variables("Hello {{variables.name}}", ctx) == "Hello Ada"

    def test_unresolved_placeholder_left_intact(self):
        ctx = WorkflowContext(variables={})
        assert resolve_variables("Hi {{variables.missing}}", ctx) == "Hi {{variables.missing}}"

    def test_multiple_placeholders(self):
        ctx = make_context(first="Ada", last="Lovelace")
        result = resolve_variables("{{variables.first}} {{variables.last}}: {{trigger.after.status}}", ctx)
        assert result == "Ada Lovelace: resolved"

    def test_present_none_renders_null(self):
        ctx = make_context(value=None)
        assert resolve_variables("[{{variables.value}}]", ctx) == "[null]"
        assert resolve_variables("[{{variables.absent}}]", ctx) == "[{{variables.absent}}]"

    def test_dict_and_list_recursion(self):
        ctx = make_context(id="42")
        payload = {"id": "{{variables.id}}", "tags": ["x", "{{variables.id}}"], "n": 5}
        assert resolve_variables(payload, ctx) == {"id": "42", "tags": ["x", "42"], "n": 5}

    def test_scalars_pass_through(self):
        ctx = make_context()
        assert resolve_variables(5, ctx) == 5
        assert resolve_variables(None, ctx) is None
        assert resolve_variables(True, ctx) is True


class TestResolveValue:
    def test_single_placeholder_returns_raw_value(self):
        ctx = make_context(orders=[1, 2, 3])
        assert resolve_value("{{variables.orders}}", ctx) == [1, 2, 3]

    def test_bare_path_returns_raw_value(self):
        ctx = make_context(orders=[1, 2])
        assert resolve_value("variables.orders", ctx) == [1, 2]

    def test_literal_list_passes_through(self):
        ctx = make_context()
        assert resolve_value([1, 2, 3], ctx) == [1, 2, 3]

    def test_unresolved_placeholder_kept(self):
        ctx = make_context()
        assert resolve_value("{{variables.nope}}", ctx) == "{{variables.nope}}"

    def test_mixed_text_is_interpolated(self):
        ctx = make_context(n=2)
        assert resolve_value("count: {{variables.n}}", ctx) == "count: 2"
