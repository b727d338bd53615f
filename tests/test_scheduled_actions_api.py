import uuid
from datetime import datetime, timedelta, timezone

from metahub.persistence.models import AuditLog

RUN_AT = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _create(api_client, headers, thread, **overrides):
    body = {
        "thread_id": str(thread.id),
        "action_type": "send_message",
        "payload": {"text": "Checking in on your order"},
        "run_at": RUN_AT.isoformat(),
        **overrides,
    }
    return api_client.post("/api/scheduled-actions", json=body, headers=headers)


def test_create_scheduled_action(api_client, auth_headers, owner, thread):
    response = _create(api_client, auth_headers(), thread, max_attempts=2)

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["status"] == "pending"
    assert body["action_type"] == "send_message"
    assert body["attempt_count"] == 0
    assert body["max_attempts"] == 2


def test_create_resolves_action_aliases(api_client, auth_headers, owner, thread):
    response = _create(api_client, auth_headers(), thread, action_type="add_tag", payload={"tag": "vip"})
    assert response.status_code == 201
    assert response.json()["action_type"] == "apply_tag"


def test_create_for_unknown_thread_is_404(api_client, auth_headers, owner, thread):
    response = _create(api_client, auth_headers(), thread, thread_id=str(uuid.uuid4()))
    assert response.status_code == 404


def test_create_with_unknown_action_is_422(api_client, auth_headers, owner, thread):
    assert _create(api_client, auth_headers(), thread, action_type="fax").status_code == 422
    assert _create(api_client, auth_headers(), thread, max_attempts=0).status_code == 422


def test_members_cannot_schedule(api_client, auth_headers, agent_member, thread):
    assert _create(api_client, auth_headers(user_id="user-agent"), thread).status_code == 403


def test_list_with_summary_and_filters(api_client, auth_headers, owner, thread):
    headers = auth_headers()
    later = _create(api_client, headers, thread, run_at=(RUN_AT + timedelta(hours=2)).isoformat()).json()
    sooner = _create(api_client, headers, thread).json()
    api_client.post(f"/api/scheduled-actions/{later['id']}/cancel", headers=headers)

    body = api_client.get("/api/scheduled-actions", headers=headers).json()
    assert [item["id"] for item in body["items"]] == [sooner["id"], later["id"]]
    assert body["summary"] == {"pending": 1, "executed": 0, "failed": 0, "cancelled": 1}

    pending = api_client.get("/api/scheduled-actions", params={"status": "pending"}, headers=headers).json()
    assert [item["id"] for item in pending["items"]] == [sooner["id"]]


def test_cancel_pending_action_once(db_session, api_client, auth_headers, owner, thread):
    created = _create(api_client, auth_headers(), thread).json()

    first = api_client.post(f"/api/scheduled-actions/{created['id']}/cancel", headers=auth_headers())
    second = api_client.post(f"/api/scheduled-actions/{created['id']}/cancel", headers=auth_headers())

    assert first.status_code == 200
    assert first.json()["status"] == "cancelled"
    assert second.status_code == 409
    assert "cancelled" in second.json()["detail"]
    assert db_session.query(AuditLog).filter_by(action="scheduled_action.cancelled").count() == 1


def test_cancel_unknown_action_is_404(api_client, auth_headers, owner):
    response = api_client.post(f"/api/scheduled-actions/{uuid.uuid4()}/cancel", headers=auth_headers())
    assert response.status_code == 404
