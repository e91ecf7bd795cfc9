"""Tests for automations API endpoints."""

from datetime import datetime, timedelta

API_NOW = datetime(2026, 3, 10, 9, 0, 0)


def create(client, payload):
    response = client.post("/api/automations/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_list_rules_empty(client_with_automations):
    """Test listing rules when none exist."""
    response = client_with_automations.get("/api/automations/")
    assert response.status_code == 200
    data = response.json()
    assert data == {"rules": [], "count": 0}


def test_create_rule(client_with_automations, overdue_rule, api_env):
    """Test creating a rule successfully."""
    data = create(client_with_automations, overdue_rule)

    assert data["name"] == "Overdue reminder"
    assert data["entity_kind"] == "task"
    assert data["enabled"] is True
    assert data["trigger_condition"]["threshold"] == "1d"
    assert data["id"] in api_env.rules


def test_create_rule_invalid_config(client_with_automations, overdue_rule):
    """Invalid action configs are rejected before anything is stored."""
    overdue_rule["action_kind"] = "send-email"
    overdue_rule["action_config"] = {"to": []}

    response = client_with_automations.post("/api/automations/", json=overdue_rule)

    assert response.status_code == 422
    assert "send-email" in response.json()["detail"]
    assert client_with_automations.get("/api/automations/").json()["count"] == 0


def test_create_rule_with_or_condition(client_with_automations, overdue_rule):
    overdue_rule["trigger_condition"] = 'dueAt OVERDUE_BY 1d OR status == "blocked"'
    response = client_with_automations.post("/api/automations/", json=overdue_rule)
    assert response.status_code == 422
    assert "Disjunction" in response.json()["detail"]


def test_get_rule(client_with_automations, overdue_rule):
    rule = create(client_with_automations, overdue_rule)

    response = client_with_automations.get(f"/api/automations/{rule['id']}")

    assert response.status_code == 200
    assert response.json()["name"] == "Overdue reminder"


def test_get_rule_not_found(client_with_automations):
    response = client_with_automations.get("/api/automations/nonexistent")
    assert response.status_code == 404
    assert "nonexistent" in response.json()["detail"]


def test_update_rule(client_with_automations, overdue_rule):
    rule = create(client_with_automations, overdue_rule)

    response = client_with_automations.put(
        f"/api/automations/{rule['id']}", json={"delay": "2h", "delivery_channel": "both"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["delay_seconds"] == 7200.0
    assert data["delivery_channel"] == "both"
    assert data["name"] == "Overdue reminder"


def test_update_rule_invalid(client_with_automations, overdue_rule):
    rule = create(client_with_automations, overdue_rule)

    response = client_with_automations.put(
        f"/api/automations/{rule['id']}", json={"trigger_condition": "status CHANGED"}
    )

    assert response.status_code == 422


def test_update_rule_not_found(client_with_automations):
    response = client_with_automations.put("/api/automations/nonexistent", json={"name": "x"})
    assert response.status_code == 404


def test_toggle_rule(client_with_automations, overdue_rule, api_env):
    rule = create(client_with_automations, overdue_rule)

    flipped = client_with_automations.post(f"/api/automations/{rule['id']}/toggle")
    assert flipped.json()["enabled"] is False
    assert api_env.rules.lookup(rule["id"]).enabled is False

    explicit = client_with_automations.post(
        f"/api/automations/{rule['id']}/toggle", json={"enabled": True}
    )
    assert explicit.json()["enabled"] is True


def test_delete_rule(client_with_automations, overdue_rule, api_env):
    rule = create(client_with_automations, overdue_rule)

    response = client_with_automations.delete(f"/api/automations/{rule['id']}")

    assert response.status_code == 200
    assert rule["id"] not in api_env.rules
    assert client_with_automations.get(f"/api/automations/{rule['id']}").status_code == 404
    assert client_with_automations.delete(f"/api/automations/{rule['id']}").status_code == 404


def test_run_rule_now(client_with_automations, api_env, in_app_channel):
    task = client_with_automations.portal.call(
        api_env.store.create_entity, "task", {"title": "Roof", "status": "todo"}
    )
    rule = create(client_with_automations, {
        "name": "Complete task",
        "trigger_type": "entity-assigned",
        "entity_kind": "task",
        "action_kind": "update-status",
        "action_config": {"newStatus": "done"},
    })

    response = client_with_automations.post(
        f"/api/automations/{rule['id']}/run",
        json={"context": {"taskId": task.id}, "actor": "admin"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    stored = client_with_automations.portal.call(api_env.store.get_entity, task.id)
    assert stored.properties["status"] == "done"

    logs = client_with_automations.get(f"/api/automations/{rule['id']}/logs").json()
    assert logs["total"] == 1
    assert logs["logs"][0]["context"]["actor"] == "admin"


def test_run_rule_failure_is_reported_not_raised(client_with_automations):
    rule = create(client_with_automations, {
        "name": "Complete task",
        "trigger_type": "entity-assigned",
        "entity_kind": "task",
        "action_kind": "update-status",
        "action_config": {},
    })

    response = client_with_automations.post(f"/api/automations/{rule['id']}/run", json={})

    assert response.status_code == 200
    assert response.json()["status"] == "error"
    assert "MissingField" in response.json()["message"]


def test_run_rule_not_found(client_with_automations):
    response = client_with_automations.post("/api/automations/nonexistent/run", json={})
    assert response.status_code == 404


def test_ingest_event(client_with_automations, in_app_channel):
    create(client_with_automations, {
        "name": "Task completed",
        "trigger_type": "entity-field-changed",
        "entity_kind": "task",
        "trigger_condition": 'status CHANGED TO "done"',
        "action_kind": "notify",
        "action_config": {"title": "Done: {title}", "recipients": ["lead"]},
    })

    response = client_with_automations.post("/api/automations/events", json={
        "event_type": "task.updated",
        "entity_id": "t1",
        "after": {"title": "Roof", "status": "done"},
        "before": {"title": "Roof", "status": "todo"},
    })

    assert response.status_code == 200
    assert response.json()["matched"] == 1
    assert in_app_channel.sent[0]["subject"] == "Done: Roof"


def test_ingest_event_rejects_unknown_verb(client_with_automations):
    response = client_with_automations.post(
        "/api/automations/events", json={"event_type": "task.exploded", "entity_id": "t1"}
    )
    assert response.status_code == 422


def test_scheduler_tick_and_logs(client_with_automations, api_env, overdue_rule, in_app_channel):
    client_with_automations.portal.call(
        api_env.store.create_entity,
        "task",
        {"title": "Roof", "status": "todo", "dueAt": (API_NOW - timedelta(days=3)).isoformat()},
    )
    rule = create(client_with_automations, overdue_rule)

    tick = client_with_automations.post("/api/automations/scheduler/tick").json()
    assert tick["dispatched"] == 1
    assert tick["results"][0]["status"] == "ok"
    assert in_app_channel.sent[0]["subject"] == "Overdue: Roof"

    status = client_with_automations.get("/api/automations/scheduler").json()
    assert status["ticks_completed"] == 1
    assert status["last_tick_at"] == API_NOW.isoformat()

    logs = client_with_automations.get("/api/automations/logs", params={"rule_id": rule["id"]}).json()
    assert logs["total"] == 1
    assert logs["logs"][0]["status"] == "ok"

    again = client_with_automations.post("/api/automations/scheduler/tick").json()
    assert again["dispatched"] == 0


def test_logs_paging_validation(client_with_automations):
    response = client_with_automations.get("/api/automations/logs", params={"limit": 0})
    assert response.status_code == 422
