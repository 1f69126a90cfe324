from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from coursegen.main import app

_HEADERS = {"X-User-Id": "user-1", "X-Organization-Id": "org-1"}
_START = {"title": "Intro to Python", "topic": "Python for beginners", "documents": [{"name": "notes.md", "text": "Python is a language."}]}


def _headers(key: str, **extra: str) -> dict[str, str]:
  return {**_HEADERS, "Idempotency-Key": key, **extra}


def test_health_check():
  client = TestClient(app)
  response = client.get("/health")
  assert response.status_code == 200
  assert response.json()["status"] == "ok"


def test_worker_health_reports_unavailable_when_not_running():
  client = TestClient(app)
  response = client.get("/worker/health")
  assert response.status_code == 503
  assert response.json()["embedded"] is False


def test_worker_metrics_are_exposed():
  client = TestClient(app)
  response = client.get("/worker/metrics")
  assert response.status_code == 200
  body = response.json()
  assert body["embedded"] is False
  assert {"processed", "outcomes", "queues"} <= set(body)


@pytest.mark.anyio
async def test_start_generation_is_accepted_and_replayable(async_client) -> None:
  first = await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("api-key-00001"))
  assert first.status_code == 202
  body = first.json()
  assert body["state"]["state"] == "stage_2_init"
  assert [entry["queue_name"] for entry in body["outbox_entries"]] == ["document-processing"]

  replay = await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("api-key-00001"))
  assert replay.status_code == 202
  assert replay.content == first.content


@pytest.mark.anyio
async def test_status_lists_pending_jobs(async_client) -> None:
  await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("api-key-00002"))
  response = await async_client.get("/v1/courses/course-1/generation", headers=_HEADERS)
  assert response.status_code == 200
  body = response.json()
  assert body["state"] == "stage_2_init"
  assert body["completed_stages"] == []
  assert [job["queue_name"] for job in body["pending_jobs"]] == ["document-processing"]


@pytest.mark.anyio
async def test_identity_headers_are_required(async_client) -> None:
  response = await async_client.post("/v1/courses/course-1/generation", json=_START, headers={"Idempotency-Key": "api-key-00003"})
  assert response.status_code == 401


@pytest.mark.anyio
async def test_short_idempotency_key_is_rejected(async_client) -> None:
  response = await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("short"))
  assert response.status_code == 422


@pytest.mark.anyio
async def test_unknown_course_without_create_is_not_found(async_client) -> None:
  response = await async_client.post("/v1/courses/ghost/generation", json={**_START, "create_if_missing": False}, headers=_headers("api-key-00004"))
  assert response.status_code == 404
  assert response.json()["code"] == "entity_not_found"


@pytest.mark.anyio
async def test_key_reuse_with_different_payload_is_rejected(async_client) -> None:
  await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("api-key-00005"))
  response = await async_client.post("/v1/courses/course-1/generation", json={**_START, "priority": 9}, headers=_headers("api-key-00005"))
  assert response.status_code == 422
  assert response.json()["code"] == "idempotency_key_reused"


@pytest.mark.anyio
async def test_cancel_then_start_conflicts_until_restart(async_client) -> None:
  await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("api-key-00006"))
  cancelled = await async_client.post("/v1/courses/course-1/generation/cancel", json={"reason": "wrong topic"}, headers=_HEADERS)
  assert cancelled.status_code == 200
  assert cancelled.json()["state"] == "cancelled"
  assert cancelled.json()["pending_jobs"] == []

  conflict = await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("api-key-00007"))
  assert conflict.status_code == 409
  assert conflict.json()["code"] == "invalid_transition"
  assert conflict.json()["detail"]["current_state"] == "cancelled"

  restarted = await async_client.post("/v1/courses/course-1/generation", json={**_START, "restart": True}, headers=_headers("api-key-00008"))
  assert restarted.status_code == 202
  assert restarted.json()["state"]["state"] == "stage_2_init"


@pytest.mark.anyio
async def test_events_expose_the_audit_trail(async_client) -> None:
  await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("api-key-00009"))
  await async_client.post("/v1/courses/course-1/generation/cancel", headers=_HEADERS)
  response = await async_client.get("/v1/courses/course-1/generation/events", headers=_HEADERS)
  assert response.status_code == 200
  events = response.json()["events"]
  assert [(event["old_state"], event["new_state"]) for event in events if event["event_type"] == "state_transition"] == [(None, "stage_2_init"), ("stage_2_init", "cancelled")]
  assert {event["created_by"] for event in events} == {"API"}


@pytest.mark.anyio
async def test_other_organization_cannot_read_course(async_client) -> None:
  await async_client.post("/v1/courses/course-1/generation", json=_START, headers=_headers("api-key-00010"))
  response = await async_client.get("/v1/courses/course-1/generation", headers={**_HEADERS, "X-Organization-Id": "org-2"})
  assert response.status_code == 404


@pytest.mark.anyio
async def test_unknown_fields_are_rejected(async_client) -> None:
  response = await async_client.post("/v1/courses/course-1/generation", json={**_START, "unexpected": 1}, headers=_headers("api-key-00011"))
  assert response.status_code == 422
  assert "input" not in response.json()["detail"][0]
