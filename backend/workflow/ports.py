"""Collaborator interfaces consumed by the workflow executor and queue.

The executor only relies on the methods below; any object with matching
methods works (the ABCs are there to document the contract and to give
implementations a base class to inherit from).
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from workflow.models import ExecutionResult, WorkflowDefinition, WorkflowJob


class DataLayer(ABC):
    """CRUD port of the storage engine."""

    @abstractmethod
    async def create(self, entity: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def update(self, entity: str, id: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def delete(self, entity: str, id: str) -> None:
        ...

    @abstractmethod
    async def find_by_id(self, entity: str, id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def execute(self, query: dict) -> list[dict]:
        """Run a read query of the form ``{"entity": ..., "where": ...}``."""
        ...


class EmailService(ABC):
    """Outbound email port."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        template: Optional[str] = None,
    ) -> None:
        ...


class NotificationService(ABC):
    """Notification fan-out port (see notifications.manager)."""

    @abstractmethod
    async def send(self, message: Any) -> None:
        ...


class PluginRegistry(ABC):
    """Lookup of plugins exposing named actions."""

    @abstractmethod
    def get_plugin(self, name: str) -> Any:
        """Return an object with an ``actions`` mapping, or None."""
        ...


class HttpClient(ABC):
    """What a webhook step needs from an HTTP client."""

    @abstractmethod
    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
    ) -> Any:
        ...


# Called after a successful mutating query step with keyword arguments
# entity, event, before, after, source_workflow, depth.
EntityEventSink = Callable[..., Awaitable[None]]

# Runs one attempt of a job; installed on the queue by whoever executes jobs.
JobRunner = Callable[[WorkflowJob, WorkflowDefinition], Awaitable[ExecutionResult]]
