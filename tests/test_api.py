from __future__ import annotations

from fastapi.testclient import TestClient


def test_health_is_public_and_reports_counts(client: TestClient, auth_headers) -> None:
    client.post("/tasks", json={"command": "echo hi"}, headers=auth_headers)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "tasks": 1, "results": 0}


def test_routes_require_bearer_token(client: TestClient) -> None:
    missing = client.post("/tasks", json={"command": "echo hi"})
    wrong = client.get("/worker/poll", params={"wait": 0}, headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json() == {"detail": "Unauthorized"}
    assert wrong.status_code == 401


def test_validation_errors_map_to_400(client: TestClient, auth_headers) -> None:
    no_command = client.post("/tasks", json={}, headers=auth_headers)
    no_content = client.post("/files/write", json={"path": "/tmp/x"}, headers=auth_headers)
    no_prompt = client.post("/claude", json={"sessionId": "abc"}, headers=auth_headers)
    not_json = client.post(
        "/files/read",
        content=b"not json",
        headers={**auth_headers, "Content-Type": "application/json"},
    )

    assert no_command.status_code == 400
    assert no_command.json() == {"error": "command is required"}
    assert no_content.json() == {"error": "path and content are required"}
    assert no_prompt.json() == {"error": "prompt is required"}
    assert not_json.status_code == 400


def test_command_round_trip_through_worker_routes(client: TestClient, auth_headers) -> None:
    submitted = client.post("/tasks", json={"command": "echo hi"}, headers=auth_headers)
    assert submitted.status_code == 200
    body = submitted.json()
    assert body["message"] == "Task created, waiting for worker"
    task_id = body["taskId"]

    polled = client.get("/worker/poll", params={"wait": 0}, headers=auth_headers).json()
    assert polled["id"] == task_id
    assert polled["type"] == "command"
    assert polled["command"] == "echo hi"
    assert polled["status"] == "running"
    assert polled["timeout"] == 30_000

    status = client.get(f"/tasks/{task_id}", headers=auth_headers).json()
    assert status == {"status": "running", "message": "Result not ready yet"}

    reported = client.post(
        "/worker/result",
        json={"taskId": task_id, "stdout": "hi\n", "stderr": "", "exitCode": 0},
        headers=auth_headers,
    )
    assert reported.json() == {"success": True}

    result = client.get(f"/tasks/{task_id}", params={"wait": 1000}, headers=auth_headers)
    assert result.status_code == 200
    payload = result.json()
    assert payload["taskId"] == task_id
    assert payload["stdout"] == "hi\n"
    assert payload["exitCode"] == 0
    assert "completedAt" in payload

    again = client.get(f"/tasks/{task_id}", headers=auth_headers)
    assert again.status_code == 404
    assert "error" in again.json()


def test_idle_poll_returns_null(client: TestClient, auth_headers) -> None:
    response = client.get("/worker/poll", params={"wait": 0}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json() is None


def test_report_requires_known_task_id(client: TestClient, auth_headers) -> None:
    missing = client.post("/worker/result", json={"stdout": "x"}, headers=auth_headers)
    unknown = client.post("/worker/result", json={"taskId": "ghost", "exitCode": 0}, headers=auth_headers)

    assert missing.status_code == 400
    assert missing.json() == {"error": "taskId is required"}
    assert unknown.status_code == 404


def test_file_routes_queue_tasks(client: TestClient, auth_headers) -> None:
    write = client.post(
        "/files/write",
        json={"path": "~/notes/todo.txt", "content": "aGk=", "encoding": "base64"},
        headers=auth_headers,
    ).json()
    read = client.post("/files/read", json={"path": "~/notes/todo.txt"}, headers=auth_headers).json()

    assert write["message"] == "File write task created"
    assert read["message"] == "File read task created"

    first = client.get("/worker/poll", params={"wait": 0}, headers=auth_headers).json()
    second = client.get("/worker/poll", params={"wait": 0}, headers=auth_headers).json()
    assert first["id"] == write["taskId"]
    assert first["type"] == "file-write"
    assert first["encoding"] == "base64"
    assert second["type"] == "file-read"


def test_backend_route_returns_session_id(client: TestClient, auth_headers) -> None:
    minted = client.post("/claude", json={"prompt": "list files"}, headers=auth_headers).json()
    explicit = client.post(
        "/claude",
        json={"prompt": "continue", "sessionId": "caller-session", "callbackChannel": "123456"},
        headers=auth_headers,
    ).json()

    assert minted["sessionId"]
    assert minted["message"] == "Backend CLI task created"
    assert explicit["sessionId"] == "caller-session"

    client.get("/worker/poll", params={"wait": 0}, headers=auth_headers)
    task = client.get("/worker/poll", params={"wait": 0}, headers=auth_headers).json()
    assert task["type"] == "backend-cli"
    assert task["sessionId"] == "caller-session"
    assert task["callbackChannel"] == "123456"
    assert task["callbackPlatform"] == "discord"
    assert task["timeout"] == 120_000


def test_metrics_endpoint_exposes_broker_series(client: TestClient, auth_headers) -> None:
    client.post("/tasks", json={"command": "uptime"}, headers=auth_headers)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")
    assert "taskrelay_tasks_submitted_total" in response.text
    assert 'taskrelay_store_size{store="tasks"}' in response.text


def test_blank_session_id_is_replaced_with_minted_one(client: TestClient, auth_headers) -> None:
    accepted = client.post(
        "/claude",
        json={"prompt": "hi", "sessionId": "", "callbackChannel": "", "callbackContainer": "gateway-2"},
        headers=auth_headers,
    ).json()

    assert accepted["sessionId"]

    task = client.get("/worker/poll", params={"wait": 0}, headers=auth_headers).json()
    assert task["sessionId"] == accepted["sessionId"]
    assert "callbackChannel" not in task
    assert task["callbackContainer"] == "gateway-2"
