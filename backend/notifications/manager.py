"""Notification manager: routes notify-step messages to adapters.

Implements the NotificationService port consumed by the workflow
executor. Messages name an adapter by its configured name; messages
without one go to the default adapter.

Adapters are built from a config of the form::

    {
        "default": "ops",
        "adapters": [
            {"name": "ops", "type": "slack", "config": {"bot_token": "xoxb-...", "default_channel": "#ops"}},
            {"name": "mail", "type": "email", "config": {"from_address": "bot@example.com"}},
        ],
    }

Each ``type`` maps to a factory registered with register_adapter_factory().
An empty config falls back to a single console adapter.
"""

import re
from dataclasses import replace
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from core.exceptions import NotificationError
from notifications.channels import (
    BaseAdapter,
    ConsoleAdapter,
    DeliveryResult,
    EmailAdapter,
    SlackAdapter,
    WebhookAdapter,
)
from workflow.models import NotificationMessage
from workflow.ports import HttpClient, NotificationService
from workflow.variables import get_value_by_path, stringify

logger = structlog.get_logger(__name__)

TEMPLATE_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def _render_value(value: Any) -> str:
    return "" if value is None else stringify(value)


def render_template(template: str, params: dict) -> str:
    """Fill ``{{ key.path }}`` placeholders from params; missing values render empty."""
    return TEMPLATE_RE.sub(
        lambda m: _render_value(get_value_by_path(params, m.group(1))),
        template,
    )


# ─── Configuration ─────────────────────────────────────────────

class NotificationAdapterConfig(BaseModel):
    name: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)


class NotificationsConfig(BaseModel):
    default: Optional[str] = None
    adapters: list[NotificationAdapterConfig] = Field(default_factory=list)


# (name, config, http_client) -> adapter
AdapterFactory = Callable[[str, dict, Optional[HttpClient]], BaseAdapter]

ADAPTER_FACTORIES: dict[str, AdapterFactory] = {}


def register_adapter_factory(adapter_type: str, factory: AdapterFactory) -> None:
    """Make ``adapter_type`` available to NotificationManager.from_config()."""
    ADAPTER_FACTORIES[adapter_type] = factory


def _webhook_factory(name: str, config: dict, http_client: Optional[HttpClient]) -> BaseAdapter:
    if http_client is None:
        raise ValueError("Webhook adapter requires an HTTP client")
    return WebhookAdapter(http_client, url=config.get("url"), headers=config.get("headers"), name=name)


register_adapter_factory("console", lambda name, config, http_client: ConsoleAdapter(name=name))
register_adapter_factory("slack", lambda name, config, http_client: SlackAdapter(name=name, **config))
register_adapter_factory("email", lambda name, config, http_client: EmailAdapter(name=name, **config))
register_adapter_factory("webhook", _webhook_factory)


def _normalize_config(config: Any) -> NotificationsConfig:
    if config is None:
        config = {}
    if not isinstance(config, NotificationsConfig):
        config = NotificationsConfig.model_validate(config)
    if config.adapters:
        return config
    return NotificationsConfig(
        default="console",
        adapters=[NotificationAdapterConfig(name="console", type="console")],
    )


# ─── Manager ───────────────────────────────────────────────────

class NotificationManager(NotificationService):
    """Central notification dispatcher."""

    def __init__(self, default_adapter: Optional[str] = "console"):
        self._adapters: dict[str, BaseAdapter] = {}
        self.default_adapter = default_adapter

    @classmethod
    def from_config(
        cls,
        config: Any = None,
        http_client: Optional[HttpClient] = None,
    ) -> "NotificationManager":
        """Build adapters from a notifications config.

        Adapters whose type has no factory, or whose factory rejects the
        config, are logged and skipped so one bad entry does not take
        the others down.
        """
        normalized = _normalize_config(config)
        manager = cls(default_adapter=normalized.default)

        for entry in normalized.adapters:
            factory = ADAPTER_FACTORIES.get(entry.type)
            if factory is None:
                logger.warning("No notification adapter factory for type", adapter=entry.name, type=entry.type)
                continue
            try:
                adapter = factory(entry.name, dict(entry.config), http_client)
            except (TypeError, ValueError) as e:
                logger.error("Failed to initialize notification adapter", adapter=entry.name, type=entry.type, error=str(e))
                continue
            manager.register_adapter(adapter, name=entry.name)

        return manager

    @classmethod
    def with_defaults(
        cls,
        http_client: Optional[HttpClient] = None,
        webhook_url: Optional[str] = None,
    ) -> "NotificationManager":
        """Manager with the console adapter, plus webhook when a client is given."""
        adapters = [{"name": "console", "type": "console"}]
        if http_client is not None:
            adapters.append({"name": "webhook", "type": "webhook", "config": {"url": webhook_url}})
        return cls.from_config({"default": "console", "adapters": adapters}, http_client=http_client)

    def register_adapter(self, adapter: BaseAdapter, name: Optional[str] = None) -> None:
        """Register an adapter under its own name (or ``name``)."""
        key = name or adapter.name
        self._adapters[key] = adapter
        logger.info("Notification adapter registered", adapter=key, type=adapter.type)

    def get_adapter(self, name: str) -> Optional[BaseAdapter]:
        return self._adapters.get(name)

    def list_adapters(self) -> list[str]:
        return sorted(self._adapters)

    def render(self, message: NotificationMessage) -> NotificationMessage:
        """Fill body from template and render subject with the message params."""
        params = message.params or {}
        body = message.body
        if not body and message.template:
            body = render_template(message.template, params)
        subject = render_template(message.subject, params) if message.subject else message.subject
        return replace(message, body=body, subject=subject)

    async def send(self, message: Any) -> DeliveryResult:
        """Render and deliver a message.

        Args:
            message: NotificationMessage, or a dict with the same keys

        Raises:
            NotificationError: no or unknown adapter, or failed delivery
        """
        if isinstance(message, dict):
            message = NotificationMessage(**message)

        name = message.adapter or self.default_adapter
        if not name:
            raise NotificationError("No notification adapter specified")
        adapter = self._adapters.get(name)
        if adapter is None:
            raise NotificationError(f"Notification adapter not found: {name}")

        result = await adapter.send(self.render(message))
        if not result.success:
            logger.warning("Notification failed", adapter=name, error=result.error)
            raise NotificationError(f"Notification via {name} failed: {result.error}")

        logger.info("Notification sent", adapter=name, recipient=result.recipient)
        return result

    def get_status(self) -> dict:
        return {
            "default_adapter": self.default_adapter,
            "adapters": {name: adapter.type for name, adapter in sorted(self._adapters.items())},
        }
