"""Workflow data model.

Definitions (workflows and their steps) are pydantic models so they can be
loaded straight from blueprint dicts; runtime records (context, jobs,
execution results) are plain dataclasses owned by the queue and executor.

Step kinds form a discriminated union on ``type``:

    {"type": "webhook", "url": "https://...", "payload": {...}, "assignTo": "r"}
    {"type": "condition", "if": {"variables.total": {"$gt": 100}},
     "then": [...], "else": [...]}
    {"type": "loop", "items": "{{variables.orders}}", "do": [...]}

Required step fields are checked when the step runs, not when it is
parsed, so a malformed step fails its job instead of its registration.
Condition expressions are the exception: they are compiled at parse time.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.exceptions import WorkflowDefinitionError
from workflow.conditions import ConditionNode, parse_condition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Enums ────────────────────────────────────────────────────

class JobStatus(str, Enum):
    """Lifecycle status of a workflow job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class TriggerType(str, Enum):
    """What caused a workflow run."""
    ENTITY = "entity"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    MANUAL = "manual"


EntityEvent = Literal["create", "update", "delete"]


# ─── Definitions ──────────────────────────────────────────────

class WorkflowTrigger(BaseModel):
    """When a workflow should run. An empty trigger means manual only."""

    model_config = ConfigDict(extra="ignore")

    entity: Optional[str] = None
    event: Optional[EntityEvent] = None
    condition: Optional[dict[str, Any]] = None
    webhook: Optional[str] = None
    schedule: Optional[str] = None

    @field_validator("condition")
    @classmethod
    def _check_condition(cls, value):
        if value is not None:
            parse_condition(value)
        return value

    @property
    def is_manual(self) -> bool:
        return not (self.entity or self.webhook or self.schedule)


class StepBase(BaseModel):
    """Fields shared by every step kind."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assign_to: Optional[str] = Field(default=None, alias="assignTo")


class QueryStep(StepBase):
    type: Literal["query"] = "query"
    entity: Optional[str] = None
    action: Optional[str] = None  # create, update, delete, find
    data: Optional[dict[str, Any]] = None
    where: Optional[Union[str, dict[str, Any]]] = None


class EmailStep(StepBase):
    type: Literal["email"] = "email"
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    template: Optional[str] = None


class WebhookStep(StepBase):
    type: Literal["webhook"] = "webhook"
    url: Optional[str] = None
    method: str = "POST"
    headers: Optional[dict[str, str]] = None
    payload: Optional[Any] = None


class PluginStep(StepBase):
    type: Literal["plugin"] = "plugin"
    plugin: Optional[str] = None
    action_name: Optional[str] = None
    params: Optional[dict[str, Any]] = None


class NotifyStep(StepBase):
    type: Literal["notify"] = "notify"
    adapter: Optional[str] = None
    channel: Optional[str] = None
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    template: Optional[str] = None
    params: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None


class DelayStep(StepBase):
    type: Literal["delay"] = "delay"
    duration: Optional[Union[int, float, str]] = None  # milliseconds


class ConditionStep(StepBase):
    type: Literal["condition"] = "condition"
    if_: Optional[Any] = Field(default=None, alias="if")
    then: list["Step"] = Field(default_factory=list)
    else_: list["Step"] = Field(default_factory=list, alias="else")

    @field_validator("if_", mode="before")
    @classmethod
    def _compile_condition(cls, value):
        if value is None or isinstance(value, ConditionNode):
            return value
        return parse_condition(value)


class LoopStep(StepBase):
    type: Literal["loop"] = "loop"
    items: Optional[Any] = None
    do: Optional[list["Step"]] = None


Step = Annotated[
    Union[
        QueryStep,
        EmailStep,
        WebhookStep,
        PluginStep,
        NotifyStep,
        DelayStep,
        ConditionStep,
        LoopStep,
    ],
    Field(discriminator="type"),
]

ConditionStep.model_rebuild()
LoopStep.model_rebuild()


class WorkflowDefinition(BaseModel):
    """A named, ordered list of steps. Treat as immutable once registered."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    description: Optional[str] = None
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    steps: list[Step] = Field(default_factory=list)
    enabled: bool = True
    retries: Optional[int] = Field(default=None, ge=0)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowDefinition":
        """Parse a blueprint dict, raising WorkflowDefinitionError on bad input."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            name = data.get("name", "<unnamed>") if isinstance(data, dict) else "<invalid>"
            raise WorkflowDefinitionError(f"Invalid workflow '{name}': {e}") from e


# ─── Runtime records ──────────────────────────────────────────

@dataclass
class TriggerInfo:
    """Details of the event that started a run."""
    type: TriggerType = TriggerType.MANUAL
    entity: Optional[str] = None
    event: Optional[str] = None
    data: Any = None
    before: Any = None
    after: Any = None
    source_workflow: Optional[str] = None  # upstream workflow of a cascaded event


@dataclass
class CascadeInfo:
    """Where a run sits in a chain of workflow-triggered entity events.

    ``source_workflow`` is the workflow its entity mutations are reported
    under; ``depth`` counts the workflow-triggered hops that led to it
    (0 for runs started from outside).
    """
    source_workflow: Optional[str] = None
    depth: int = 0


@dataclass
class WorkflowContext:
    """Trigger info plus the mutable variable map threaded through one job."""
    trigger: TriggerInfo = field(default_factory=TriggerInfo)
    variables: dict[str, Any] = field(default_factory=dict)
    cascade: CascadeInfo = field(default_factory=CascadeInfo)
    session: Any = None
    request: Optional[dict[str, Any]] = None


@dataclass
class WorkflowJob:
    """One queued/running/finished execution of a workflow."""
    id: str
    workflow_name: str
    context: WorkflowContext
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result,
            "error": self.error,
        }


@dataclass
class WorkflowLog:
    """One entry of a run's log trail."""
    level: str  # debug, info, warn, error
    message: str
    data: Any = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ExecutionResult:
    """Outcome of running a workflow once."""
    success: bool
    result: Any = None
    error: Optional[str] = None
    logs: list[WorkflowLog] = field(default_factory=list)


@dataclass
class NotificationMessage:
    """What a ``notify`` step hands to the notification service."""
    adapter: Optional[str] = None
    channel: Optional[str] = None
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    template: Optional[str] = None
    params: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
