"""Tests for the built-in actions."""

import json

import httpx
import pytest
from pydantic import TypeAdapter

from ops_automation.automation.actions import (
    ActionConfig,
    CallWebhookAction,
    CallWebhookConfig,
    CreateSubtasksConfig,
    render_template,
)
from ops_automation.automation.errors import (
    EmptyList,
    EntityNotFound,
    MissingField,
    PartialFailure,
    TransientIOError,
)
from ops_automation.automation.models import DeliveryChannel, TriggerContext


def test_render_template():
    values = {"title": "Fix roof", "entityId": "t1"}
    assert render_template("Task {title} ({entityId})", values) == "Task Fix roof (t1)"
    assert render_template("Hello {unknown}", values) == "Hello {unknown}"
    assert render_template("Broken {", values) == "Broken {"


def test_action_config_union_is_keyed_by_kind():
    adapter = TypeAdapter(ActionConfig)
    config = adapter.validate_python({"kind": "create-subtasks", "titles": ["A"]})
    assert isinstance(config, CreateSubtasksConfig)


class TestNotify:
    async def test_notifies_configured_recipients(self, action_registry, in_app_channel):
        context = TriggerContext(entity_kind="task", entity_id="t1", fields={"title": "Roof"})
        result = await action_registry.dispatch(
            "notify", context, {"title": "Overdue: {title}", "recipients": ["u1", "u2"]}
        )

        assert result.ok
        assert result.message == "Notification sent: Overdue: Roof"
        assert [n["recipient"] for n in in_app_channel.sent] == ["u1", "u2"]
        assert in_app_channel.sent[0]["related_id"] == "t1"

    async def test_falls_back_to_assignee(self, action_registry, in_app_channel):
        context = TriggerContext(entity_kind="task", entity_id="t1", fields={"assignedTo": "staff-9"})
        await action_registry.dispatch("notify", context, {}, actor="admin")
        assert in_app_channel.sent[0]["recipient"] == "staff-9"

    async def test_falls_back_to_actor(self, action_registry, in_app_channel):
        await action_registry.dispatch("notify", TriggerContext(), {}, actor="admin")
        assert in_app_channel.sent[0]["recipient"] == "admin"

    async def test_email_channel(self, action_registry, in_app_channel, email_channel):
        await action_registry.dispatch(
            "notify",
            TriggerContext(),
            {"recipients": ["u1"], "emails": ["ops@example.com"]},
            delivery_channel=DeliveryChannel.BOTH,
        )
        assert len(in_app_channel.sent) == 1
        assert email_channel.sent[0]["recipient"] == "ops@example.com"

    async def test_unreachable_channel(self, action_registry, in_app_channel):
        in_app_channel.fail = True
        with pytest.raises(TransientIOError):
            await action_registry.dispatch("notify", TriggerContext(), {"recipients": ["u1"]})


class TestUpdateStatus:
    async def test_updates_task(self, action_registry, store):
        task = await store.create_entity("task", {"title": "Roof", "status": "todo"})
        context = TriggerContext(extra={"taskId": task.id, "newStatus": "done"})

        result = await action_registry.dispatch("update-status", context, {})

        assert result.message == f"Task {task.id} updated to done"
        assert (await store.get_entity(task.id)).properties["status"] == "done"

    async def test_is_idempotent(self, action_registry, store):
        task = await store.create_entity("task", {"title": "Roof", "status": "done"})
        context = TriggerContext(extra={"taskId": task.id, "newStatus": "done"})

        result = await action_registry.dispatch("update-status", context, {})

        assert result.ok
        assert result.message.endswith("(unchanged)")
        assert (await store.get_entity(task.id)).properties == {"title": "Roof", "status": "done"}

    async def test_config_supplies_status(self, action_registry, store):
        task = await store.create_entity("task", {"status": "todo"})
        context = TriggerContext(entity_kind="task", entity_id=task.id)
        await action_registry.dispatch("update-status", context, {"newStatus": "blocked"})
        assert (await store.get_entity(task.id)).properties["status"] == "blocked"

    async def test_missing_task_id(self, action_registry):
        with pytest.raises(MissingField, match="task_id"):
            await action_registry.dispatch("update-status", TriggerContext(), {"newStatus": "done"})

    async def test_missing_new_status(self, action_registry, store):
        task = await store.create_entity("task", {"status": "todo"})
        with pytest.raises(MissingField, match="new_status"):
            await action_registry.dispatch(
                "update-status", TriggerContext(extra={"taskId": task.id}), {}
            )
        assert (await store.get_entity(task.id)).properties["status"] == "todo"

    async def test_unknown_task(self, action_registry):
        context = TriggerContext(extra={"taskId": "nope", "newStatus": "done"})
        with pytest.raises(EntityNotFound):
            await action_registry.dispatch("update-status", context, {})


class TestCreateSubtasks:
    async def test_creates_subtasks(self, action_registry, store):
        task = await store.create_entity("task", {"title": "Launch"})
        context = TriggerContext(extra={"taskId": task.id, "subtasks": ["A", "B"]})

        result = await action_registry.dispatch("create-subtasks", context, {})

        assert result.message == f"2 subtask(s) created for task {task.id}"
        children = await store.list_children(task.id, "subtask")
        assert sorted(c.properties["title"] for c in children) == ["A", "B"]

    async def test_config_titles_take_precedence(self, action_registry, store):
        task = await store.create_entity("task", {"title": "Launch"})
        context = TriggerContext(extra={"taskId": task.id, "subtasks": ["ignored"]})
        await action_registry.dispatch("create-subtasks", context, {"titles": ["Plan"]})
        children = await store.list_children(task.id)
        assert [c.properties["title"] for c in children] == ["Plan"]

    async def test_empty_list(self, action_registry, store):
        task = await store.create_entity("task", {"title": "Launch"})
        context = TriggerContext(extra={"taskId": task.id, "subtasks": []})
        with pytest.raises(EmptyList):
            await action_registry.dispatch("create-subtasks", context, {})
        assert await store.list_children(task.id) == []

    async def test_partial_failure_names_failed_titles(self, action_registry, store):
        task = await store.create_entity("task", {"title": "Launch"})
        context = TriggerContext(extra={"taskId": task.id, "subtasks": ["A", "  ", "C"]})

        with pytest.raises(PartialFailure) as exc_info:
            await action_registry.dispatch("create-subtasks", context, {})

        assert "'  '" in str(exc_info.value)
        assert "2 of 3" in str(exc_info.value)
        children = await store.list_children(task.id)
        assert sorted(c.properties["title"] for c in children) == ["A", "C"]

    async def test_missing_parent(self, action_registry):
        context = TriggerContext(extra={"taskId": "nope", "subtasks": ["A"]})
        with pytest.raises(EntityNotFound):
            await action_registry.dispatch("create-subtasks", context, {})


class TestSendEmail:
    async def test_sends_templated_email(self, action_registry, email_channel, in_app_channel):
        context = TriggerContext(entity_kind="invoice", entity_id="inv-1", fields={"number": "INV-7"})
        result = await action_registry.dispatch(
            "send-email",
            context,
            {"to": ["billing@example.com"], "subject": "Invoice {number} unpaid", "body": "Please pay."},
        )

        assert result.ok
        assert email_channel.sent[0]["subject"] == "Invoice INV-7 unpaid"
        assert in_app_channel.sent == []


class TestEscalate:
    async def test_raises_priority_and_notifies(self, action_registry, store, in_app_channel):
        task = await store.create_entity("task", {"title": "Roof", "priority": "normal"})
        context = TriggerContext(entity_kind="task", entity_id=task.id, fields={"title": "Roof"})

        result = await action_registry.dispatch("escalate", context, {"escalateTo": ["manager-1"]})

        assert result.ok
        assert (await store.get_entity(task.id)).properties["priority"] == "urgent"
        assert in_app_channel.sent[0]["recipient"] == "manager-1"
        assert in_app_channel.sent[0]["subject"] == "Escalated task: Roof"

    async def test_missing_entity(self, action_registry):
        context = TriggerContext(entity_kind="task", entity_id="nope")
        with pytest.raises(EntityNotFound):
            await action_registry.dispatch("escalate", context, {"escalateTo": ["m"]})


class TestCallWebhook:
    async def test_posts_context(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        action = CallWebhookAction(transport=httpx.MockTransport(handler))
        config = CallWebhookConfig(url="https://hooks.example.com/x", payload={"note": "{title}"})
        context = TriggerContext(entity_kind="task", entity_id="t1", fields={"title": "Roof"})

        result = await action.execute(context, config, "admin", DeliveryChannel.IN_APP)

        assert result.ok
        body = json.loads(requests[0].content)
        assert requests[0].method == "POST"
        assert body["entityId"] == "t1"
        assert body["data"] == {"note": "Roof"}
        assert body["actor"] == "admin"

    async def test_error_status_is_transient_failure(self):
        action = CallWebhookAction(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        config = CallWebhookConfig(url="https://hooks.example.com/x")
        with pytest.raises(TransientIOError, match="Webhook failed with status 500"):
            await action.execute(TriggerContext(), config, None, DeliveryChannel.IN_APP)

    async def test_network_error_is_transient_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        action = CallWebhookAction(transport=httpx.MockTransport(handler))
        config = CallWebhookConfig(url="https://hooks.example.com/x")
        with pytest.raises(TransientIOError):
            await action.execute(TriggerContext(), config, None, DeliveryChannel.IN_APP)
