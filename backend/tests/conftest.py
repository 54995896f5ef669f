"""Shared pytest fixtures for the workflow orchestrator test suite.

Provides:
- In-memory fakes for the executor's collaborator ports
- A plugin registry with a couple of test plugins
- Queue / executor / manager instances with zero backoff
"""

import asyncio
import os
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from core.plugin_system import PluginRegistry  # noqa: E402
from workflow.executor import WorkflowExecutor  # noqa: E402
from workflow.manager import WorkflowManager  # noqa: E402
from workflow.ports import DataLayer, EmailService, HttpClient, NotificationService  # noqa: E402
from workflow.queue import WorkflowQueue  # noqa: E402
from workflow.retry_strategies import RetryStrategy  # noqa: E402


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeDataLayer(DataLayer):
    """Dict-backed data layer that records every call."""

    def __init__(self):
        self.records: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple] = []
        self.fail_find = False

    async def create(self, entity: str, data: dict) -> dict:
        self.calls.append(("create", entity, data))
        record = {"id": data.get("id") or uuid4().hex[:8], **data}
        self.records.setdefault(entity, {})[record["id"]] = record
        return record

    async def update(self, entity: str, id: str, data: dict) -> dict:
        self.calls.append(("update", entity, id, data))
        record = {**self.records.get(entity, {}).get(id, {"id": id}), **data}
        self.records.setdefault(entity, {})[id] = record
        return record

    async def delete(self, entity: str, id: str) -> None:
        self.calls.append(("delete", entity, id))
        self.records.get(entity, {}).pop(id, None)

    async def find_by_id(self, entity: str, id: str) -> Optional[dict]:
        self.calls.append(("find_by_id", entity, id))
        if self.fail_find:
            raise RuntimeError("storage unavailable")
        record = self.records.get(entity, {}).get(id)
        return dict(record) if record else None

    async def execute(self, query: dict) -> list[dict]:
        self.calls.append(("execute", query))
        where = query.get("where") or {}
        return [
            r for r in self.records.get(query["entity"], {}).values()
            if all(r.get(k) == v for k, v in where.items())
        ]


class FakeEmailService(EmailService):
    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, to, subject, body, template=None) -> None:
        self.sent.append({"to": to, "subject": subject, "body": body, "template": template})


class FakeNotificationService(NotificationService):
    def __init__(self):
        self.sent: list[Any] = []

    async def send(self, message) -> None:
        self.sent.append(message)


class FakeHttpClient(HttpClient):
    """Returns a canned response and records requests."""

    def __init__(self, response: Any = None, error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.requests: list[dict] = []

    async def request(self, url, method="GET", headers=None, body=None):
        self.requests.append({"url": url, "method": method, "headers": headers, "body": body})
        if self.error is not None:
            raise self.error
        return self.response


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def data_layer() -> FakeDataLayer:
    return FakeDataLayer()


@pytest.fixture
def email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def notification_service() -> FakeNotificationService:
    return FakeNotificationService()


@pytest.fixture
def http_client() -> FakeHttpClient:
    return FakeHttpClient(response={"ok": True})


@pytest.fixture
def plugin_registry() -> PluginRegistry:
    registry = PluginRegistry()

    async def double(params, context):
        return context.variables["item"] * 2

    def echo(params, context):
        return params

    async def explode(params, context):
        raise RuntimeError("plugin exploded")

    registry.register("math", {"double": double})
    registry.register("util", {"echo": echo, "explode": explode})
    return registry


@pytest.fixture
def executor(data_layer, email_service, notification_service, http_client, plugin_registry):
    return WorkflowExecutor(
        data_layer=data_layer,
        plugin_registry=plugin_registry,
        email_service=email_service,
        http_client=http_client,
        notification_service=notification_service,
    )


@pytest.fixture
def queue() -> WorkflowQueue:
    return WorkflowQueue(max_concurrent=10, max_retries=3, retry_strategy=RetryStrategy.fixed(delay=0))


@pytest_asyncio.fixture
async def manager(executor):
    mgr = WorkflowManager(
        queue=WorkflowQueue(max_concurrent=10, max_retries=1, retry_strategy=RetryStrategy.fixed(delay=0)),
        executor=executor,
        max_cascade_depth=2,
    )
    yield mgr
    await mgr.shutdown(timeout=1.0)


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until ``predicate()`` is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return wait_for
