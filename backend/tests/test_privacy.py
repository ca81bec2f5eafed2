# tests/test_privacy.py - Data subject access requests
from datetime import datetime, timezone

import pytest
from httpx import AsyncClient

from routers.privacy import default_due_date
from tests.conftest import get_auth_headers


def test_default_due_date():
    requested = datetime(2026, 1, 15, tzinfo=timezone.utc)
    assert default_due_date(requested) == datetime(2026, 2, 14, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_references_are_sequential_per_year(client: AsyncClient, tenant, editor_user):
    headers = get_auth_headers(editor_user, client_id=tenant.id)
    refs = []
    for email in ("a@subject.test", "b@subject.test"):
        resp = await client.post(
            "/api/v1/privacy/dsar",
            json={"request_type": "access", "subject_email": email, "request_date": "2026-03-01T09:00:00Z"},
            headers=headers,
        )
        assert resp.status_code == 200
        refs.append(resp.json()["reference"])
    assert refs == ["DSAR-2026-001", "DSAR-2026-002"]

    resp = await client.post(
        "/api/v1/privacy/dsar",
        json={"request_type": "deletion", "subject_email": "c@subject.test", "request_date": "2025-12-30T09:00:00Z"},
        headers=headers,
    )
    assert resp.json()["reference"] == "DSAR-2025-001"


@pytest.mark.asyncio
async def test_reference_not_reused_after_delete(client: AsyncClient, tenant, editor_user):
    headers = get_auth_headers(editor_user, client_id=tenant.id)
    body = {"request_type": "access", "subject_email": "x@subject.test", "request_date": "2026-05-01T00:00:00Z"}
    first = (await client.post("/api/v1/privacy/dsar", json=body, headers=headers)).json()
    second = (await client.post("/api/v1/privacy/dsar", json=body, headers=headers)).json()
    await client.delete(f"/api/v1/privacy/dsar/{first['id']}", headers=headers)

    third = (await client.post("/api/v1/privacy/dsar", json=body, headers=headers)).json()
    assert second["reference"] == "DSAR-2026-002"
    assert third["reference"] == "DSAR-2026-003"


@pytest.mark.asyncio
async def test_due_date_defaults_to_thirty_days(client: AsyncClient, tenant, editor_user):
    resp = await client.post(
        "/api/v1/privacy/dsar",
        json={"request_type": "portability", "subject_email": "p@subject.test", "request_date": "2026-04-01T00:00:00Z"},
        headers=get_auth_headers(editor_user, client_id=tenant.id),
    )
    assert resp.json()["due_date"].startswith("2026-05-01")
    assert resp.json()["status"] == "new"
    assert resp.json()["verification_status"] == "pending"


@pytest.mark.asyncio
async def test_completion_stamps_completed_at(client: AsyncClient, tenant, editor_user):
    headers = get_auth_headers(editor_user, client_id=tenant.id)
    dsar = (await client.post(
        "/api/v1/privacy/dsar", json={"request_type": "access", "subject_email": "s@subject.test"}, headers=headers,
    )).json()
    assert dsar["completed_at"] is None

    resp = await client.patch(f"/api/v1/privacy/dsar/{dsar['id']}", json={"status": "in_progress"}, headers=headers)
    assert resp.json()["completed_at"] is None

    resp = await client.patch(f"/api/v1/privacy/dsar/{dsar['id']}", json={"status": "completed"}, headers=headers)
    assert resp.json()["status"] == "completed"
    assert resp.json()["completed_at"] is not None

    # Reopening clears the stamp
    resp = await client.patch(f"/api/v1/privacy/dsar/{dsar['id']}", json={"status": "review"}, headers=headers)
    assert resp.json()["completed_at"] is None


@pytest.mark.asyncio
async def test_list_and_filter(client: AsyncClient, tenant, editor_user, viewer_user):
    headers = get_auth_headers(editor_user, client_id=tenant.id)
    dsar = (await client.post(
        "/api/v1/privacy/dsar", json={"request_type": "rectification", "subject_email": "r@subject.test"}, headers=headers,
    )).json()
    await client.post(
        "/api/v1/privacy/dsar", json={"request_type": "access", "subject_email": "q@subject.test"}, headers=headers,
    )
    await client.patch(f"/api/v1/privacy/dsar/{dsar['id']}", json={"status": "rejected"}, headers=headers)

    viewer = get_auth_headers(viewer_user, client_id=tenant.id)
    assert len((await client.get("/api/v1/privacy/dsar", headers=viewer)).json()) == 2
    rejected = (await client.get("/api/v1/privacy/dsar", params={"status": "rejected"}, headers=viewer)).json()
    assert [d["id"] for d in rejected] == [dsar["id"]]


@pytest.mark.asyncio
async def test_invalid_subject_email(client: AsyncClient, tenant, editor_user):
    resp = await client.post(
        "/api/v1/privacy/dsar", json={"request_type": "access", "subject_email": "not-an-email"},
        headers=get_auth_headers(editor_user, client_id=tenant.id),
    )
    assert resp.status_code == 422
