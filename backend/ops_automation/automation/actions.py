"""Built-in automation actions.

Each action declares a pydantic config model; together the models form a
tagged union keyed by ``kind``.
"""

import logging
from typing import Annotated, Any, Literal, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ops_automation.automation.action_registry import ActionHandler, ActionRegistry
from ops_automation.automation.errors import (
    EmptyList,
    EntityNotFound,
    MissingField,
    PartialFailure,
    TransientIOError,
)
from ops_automation.automation.models import ActionResult, DeliveryChannel

logger = logging.getLogger(__name__)

# Recipient used when neither the config, the entity nor the actor names one.
FALLBACK_RECIPIENT = "operators"


class _Config(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class NotifyConfig(_Config):
    kind: Literal["notify"] = "notify"
    title: str = "Automation notification"
    message: str | None = None
    recipients: list[str] = Field(default_factory=list)
    emails: list[str] = Field(default_factory=list)


class UpdateStatusConfig(_Config):
    kind: Literal["update-status"] = "update-status"
    new_status: str | None = Field(default=None, alias="newStatus")
    task_id: str | None = Field(default=None, alias="taskId")
    status_field: str = Field(default="status", alias="statusField")


class CreateSubtasksConfig(_Config):
    kind: Literal["create-subtasks"] = "create-subtasks"
    titles: list[str] = Field(default_factory=list)
    task_id: str | None = Field(default=None, alias="taskId")


class SendEmailConfig(_Config):
    kind: Literal["send-email"] = "send-email"
    to: list[str] = Field(min_length=1)
    subject: str
    body: str = ""

    @field_validator("to")
    @classmethod
    def addresses_look_valid(cls, v: list[str]) -> list[str]:
        for address in v:
            if "@" not in address:
                raise ValueError(f"invalid email address: {address}")
        return v


class EscalateConfig(_Config):
    kind: Literal["escalate"] = "escalate"
    escalate_to: list[str] = Field(alias="escalateTo", min_length=1)
    priority: str = "urgent"
    priority_field: str = Field(default="priority", alias="priorityField")
    message: str | None = None


class CallWebhookConfig(_Config):
    kind: Literal["call-webhook"] = "call-webhook"
    url: str
    method: Literal["POST", "PUT", "PATCH", "GET"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def url_is_http(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v


ActionConfig = Annotated[
    Union[
        NotifyConfig,
        UpdateStatusConfig,
        CreateSubtasksConfig,
        SendEmailConfig,
        EscalateConfig,
        CallWebhookConfig,
    ],
    Field(discriminator="kind"),
]


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, values: dict[str, Any]) -> str:
    """Fill ``{field}`` placeholders; unknown placeholders stay as written."""
    try:
        return template.format_map(_SafeDict(values))
    except (ValueError, IndexError, AttributeError, KeyError):
        return template


def _render_value(value: Any, values: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return render_template(value, values)
    if isinstance(value, dict):
        return {k: _render_value(v, values) for k, v in value.items()}
    if isinstance(value, list):
        return [_render_value(v, values) for v in value]
    return value


class NotifyAction(ActionHandler):
    kind = "notify"
    config_model = NotifyConfig

    def __init__(self, notifier):
        self.notifier = notifier

    async def execute(self, context, config, actor, delivery_channel):
        values = context.template_values()
        recipients = list(config.recipients)
        if not recipients:
            assignee = context.get("assignedTo") or context.get("assigneeId")
            recipients = [str(r) for r in (assignee, actor) if r][:1] or [FALLBACK_RECIPIENT]

        title = render_template(config.title, values)
        body = render_template(config.message or context.message or title, values)

        await self.notifier.notify(
            recipients,
            title,
            body,
            channel=delivery_channel,
            emails=config.emails or None,
            related_kind=context.entity_kind,
            related_id=context.entity_id,
        )
        return ActionResult(
            ok=True,
            message=f"Notification sent: {title}",
            details={"recipients": recipients, "channel": delivery_channel.value},
        )


class UpdateStatusAction(ActionHandler):
    """Set a task's status; a no-op when the task already has it."""

    kind = "update-status"
    config_model = UpdateStatusConfig

    def __init__(self, store):
        self.store = store

    async def execute(self, context, config, actor, delivery_channel):
        task_id = context.task_id or config.task_id
        if not task_id:
            raise MissingField("task_id", self.kind)
        new_status = context.new_status or config.new_status
        if not new_status:
            raise MissingField("new_status", self.kind)

        outcome = await self.store.update_entity(
            task_id, {config.status_field: new_status}, kind="task"
        )
        if not outcome.found:
            raise EntityNotFound(task_id, "task")

        message = f"Task {task_id} updated to {new_status}"
        if not outcome.changed:
            message += " (unchanged)"
        return ActionResult(ok=True, message=message, details={"changed": outcome.changed})


class CreateSubtasksAction(ActionHandler):
    kind = "create-subtasks"
    config_model = CreateSubtasksConfig

    def __init__(self, store):
        self.store = store

    async def execute(self, context, config, actor, delivery_channel):
        task_id = context.task_id or config.task_id
        if not task_id:
            raise MissingField("task_id", self.kind)

        titles = list(config.titles) or list(context.subtasks or [])
        if not titles:
            raise EmptyList("subtasks", self.kind)

        records = [{"title": title, "status": "todo"} for title in titles]
        statuses = await self.store.insert_related(task_id, "subtask", records)

        succeeded = [titles[s.index] for s in statuses if s.ok]
        failed = [(str(titles[s.index]), s.error or "insert failed") for s in statuses if not s.ok]
        if failed:
            raise PartialFailure(self.kind, succeeded, failed)

        return ActionResult(
            ok=True,
            message=f"{len(succeeded)} subtask(s) created for task {task_id}",
            details={"subtaskIds": [s.entity_id for s in statuses]},
        )


class SendEmailAction(ActionHandler):
    kind = "send-email"
    config_model = SendEmailConfig

    def __init__(self, notifier):
        self.notifier = notifier

    async def execute(self, context, config, actor, delivery_channel):
        values = context.template_values()
        subject = render_template(config.subject, values)
        body = render_template(config.body, values)
        await self.notifier.notify(
            [],
            subject,
            body,
            channel=DeliveryChannel.EMAIL,
            emails=list(config.to),
            related_kind=context.entity_kind,
            related_id=context.entity_id,
        )
        return ActionResult(ok=True, message=f"Email sent to {', '.join(config.to)}: {subject}")


class EscalateAction(ActionHandler):
    """Raise an entity's priority and notify the escalation targets."""

    kind = "escalate"
    config_model = EscalateConfig

    def __init__(self, store, notifier):
        self.store = store
        self.notifier = notifier

    async def execute(self, context, config, actor, delivery_channel):
        entity_id = context.entity_id or context.task_id
        if not entity_id:
            raise MissingField("entity_id", self.kind)

        outcome = await self.store.update_entity(entity_id, {config.priority_field: config.priority})
        if not outcome.found:
            raise EntityNotFound(entity_id, context.entity_kind)

        kind = outcome.entity.kind if outcome.entity else (context.entity_kind or "entity")
        title = f"Escalated {kind}: {context.get('title') or entity_id}"
        body = render_template(config.message or title, context.template_values())
        await self.notifier.notify(
            list(config.escalate_to),
            title,
            body,
            channel=delivery_channel,
            related_kind=kind,
            related_id=entity_id,
        )
        return ActionResult(
            ok=True,
            message=f"Escalated {kind} {entity_id} to {', '.join(config.escalate_to)}",
        )


class CallWebhookAction(ActionHandler):
    kind = "call-webhook"
    config_model = CallWebhookConfig

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.transport = transport

    async def execute(self, context, config, actor, delivery_channel):
        body = context.to_payload()
        if config.payload:
            body["data"] = _render_value(config.payload, context.template_values())
        if actor:
            body["actor"] = actor

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                if config.method == "GET":
                    response = await client.get(config.url, headers=config.headers)
                else:
                    response = await client.request(
                        config.method, config.url, json=body, headers=config.headers
                    )
        except httpx.HTTPError as e:
            raise TransientIOError(f"Webhook request failed: {e}") from e

        if response.status_code >= 400:
            raise TransientIOError(f"Webhook failed with status {response.status_code}")

        logger.info(f"Webhook {config.method} {config.url} returned {response.status_code}")
        return ActionResult(
            ok=True,
            message=f"Webhook {config.method} {config.url} returned {response.status_code}",
            details={"status": response.status_code},
        )


def build_default_registry(
    store,
    notifier,
    webhook_timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ActionRegistry:
    """Build and freeze the registry with every built-in action."""
    registry = ActionRegistry()
    for handler in (
        NotifyAction(notifier),
        UpdateStatusAction(store),
        CreateSubtasksAction(store),
        SendEmailAction(notifier),
        EscalateAction(store, notifier),
        CallWebhookAction(webhook_timeout, transport),
    ):
        registry.register(handler.kind, handler)
    return registry.freeze()
