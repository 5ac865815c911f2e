"""Tests for the management API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from forgeflow.api import create_app
from forgeflow.config import AppConfig
from forgeflow.runtime import Runtime
from forgeflow.triggers import TriggerManager


@pytest.fixture
def runtime(tmp_path, store, trigger_settings, clipboard, hotkey_backend) -> Runtime:
    config = AppConfig(tmp_path / "absent.ini")
    runtime = Runtime.from_config(config, store=store)
    runtime.triggers = TriggerManager(
        runtime.engine,
        store,
        settings=trigger_settings,
        clipboard_provider=clipboard,
        hotkey_backend=hotkey_backend,
    )
    return runtime


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as client:
        yield client


def _flow_body(flow_id: str = "", **extra) -> dict:
    body = {
        "name": "API flow",
        "nodes": [
            {"id": "a", "type": "custom", "data": {"nodeType": "set_fields", "config": {"fields": {"x": 1}}}},
            {"id": "b", "type": "custom", "data": {"nodeType": "passthrough"}},
        ],
        "edges": [{"id": "e1", "source": "a", "target": "b"}],
    }
    if flow_id:
        body["id"] = flow_id
    body.update(extra)
    return body


def test_health_and_catalog(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    assert "passthrough" in client.get("/node-types").json()
    assert {"type": "delay", "description": "Waits for a number of seconds before continuing."} in client.get(
        "/node-catalog"
    ).json()
    assert client.get("/config").json()["engine"]["join_policy"] == "all"


def test_flow_crud(client) -> None:
    created = client.post("/flows", json=_flow_body()).json()
    flow_id = created["id"]
    assert flow_id.startswith("flow-")

    assert client.post("/flows", json=_flow_body(flow_id)).status_code == 409
    assert [summary["id"] for summary in client.get("/flows").json()] == [flow_id]
    assert client.get("/flows").json()[0]["nodeCount"] == 2

    updated = client.put(f"/flows/{flow_id}", json=_flow_body(flow_id, name="Renamed")).json()
    assert updated["name"] == "Renamed"
    assert updated["createdAt"] == created["createdAt"]
    assert client.put(f"/flows/{flow_id}", json=_flow_body("flow-other")).status_code == 400

    deleted = client.delete(f"/flows/{flow_id}").json()
    assert deleted == {"id": flow_id, "deleted": True, "triggersRemoved": 0}
    assert client.get(f"/flows/{flow_id}").status_code == 404


def test_invalid_flow_is_rejected(client) -> None:
    body = _flow_body()
    body["edges"].append({"id": "bad", "source": "a", "target": "ghost"})

    assert client.post("/flows", json=body).status_code == 422


def test_run_and_inspect_execution(client, runtime) -> None:
    flow_id = client.post("/flows", json=_flow_body()).json()["id"]

    response = client.post(f"/flows/{flow_id}/run", json={"input_data": {"seed": True}})

    assert response.status_code == 202
    execution_id = response.json()["id"]
    runtime.engine.wait(execution_id, timeout=5)

    execution = client.get(f"/executions/{execution_id}").json()
    assert execution["status"] == "success"
    assert execution["flowId"] == flow_id
    assert [result["nodeId"] for result in execution["results"]] == ["a", "b"]
    assert execution["results"][1]["output"] == {"seed": True, "x": 1}

    history = client.get("/executions/history", params={"flow_id": flow_id}).json()
    assert history[0]["successCount"] == 2
    assert [item["id"] for item in client.get("/executions").json()] == [execution_id]

    assert client.post(f"/executions/{execution_id}/stop").status_code == 404
    assert client.delete(f"/executions/{execution_id}").json() == {"id": execution_id, "deleted": True}
    assert client.get("/executions").json() == []
    assert client.delete(f"/executions/{execution_id}").status_code == 404


def test_unknown_ids_are_not_found(client) -> None:
    assert client.post("/flows/flow-missing/run").status_code == 404
    assert client.get("/executions/exec-missing").status_code == 404
    assert client.post("/executions/exec-missing/stop").status_code == 404


def test_saving_a_flow_registers_its_triggers(client) -> None:
    body = _flow_body()
    body["nodes"].append(
        {"id": "t", "type": "custom", "data": {"category": "trigger", "nodeType": "trigger_hotkey",
                                               "config": {"hotkey": "Ctrl+Shift+F"}}}
    )
    flow_id = client.post("/flows", json=body).json()["id"]

    hotkeys = client.get("/triggers").json()["hotkeys"]
    assert hotkeys == [{"flowId": flow_id, "hotkey": "ctrl+shift+f", "type": "hotkey"}]

    assert client.delete(f"/flows/{flow_id}").json()["triggersRemoved"] == 1
    assert client.get("/triggers").json()["hotkeys"] == []


def test_export_and_import(client) -> None:
    flow_id = client.post("/flows", json=_flow_body()).json()["id"]

    exported = client.get(f"/flows/{flow_id}/export", params={"fmt": "yaml"})
    assert exported.status_code == 200

    imported = client.post(
        "/flows/import",
        params={"fmt": "yaml"},
        content=exported.text,
        headers={"content-type": "text/plain"},
    ).json()
    assert imported["id"] != flow_id
    assert imported["name"] == "API flow"

    assert client.post("/flows/import", content="{nope").status_code == 400
    assert client.get(f"/flows/{flow_id}/export", params={"fmt": "xml"}).status_code == 400


def test_settings_round_trip(client) -> None:
    assert client.get("/settings").json() == {}
    assert client.put("/settings", json={"theme": "dark"}).json() == {"theme": "dark"}


def test_running_execution_cannot_be_deleted(client, runtime) -> None:
    body = {"name": "Slow", "nodes": [{"id": "wait", "data": {"nodeType": "delay", "config": {"seconds": 0.5}}}]}
    flow_id = client.post("/flows", json=body).json()["id"]
    execution_id = client.post(f"/flows/{flow_id}/run").json()["id"]

    assert client.delete(f"/executions/{execution_id}").status_code == 409

    runtime.engine.wait(execution_id, timeout=5)
    assert client.delete(f"/executions/{execution_id}").status_code == 200
    assert client.get(f"/executions/{execution_id}").status_code == 404
