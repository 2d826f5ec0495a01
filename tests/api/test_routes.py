"""Tests for the HTTP API: sequence management, enrollment, and callbacks."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from sequencer.app import create_app
from sequencer.config import Settings
from sequencer.delivery import unsubscribe_token
from sequencer.wiring import initialize_services

CONTACT = {
    "id": "c-1",
    "workspace_id": "ws-1",
    "first_name": "Ana",
    "phone": "+15550001111",
    "stage": "Lead",
}


@pytest.fixture
def services(db, gateway, clock) -> dict[str, Any]:
    settings = Settings(
        _env_file=None,  # type: ignore[call-arg]
        sweep_enabled=False,
        unsubscribe_secret=SecretStr("s3cret"),
    )
    return initialize_services(settings, db=db, gateway=gateway, clock=clock)


@pytest.fixture
def client(services: dict[str, Any]) -> TestClient:
    return TestClient(create_app(services))


def _create_sequence(client: TestClient, **fields: Any) -> str:
    body = {"workspace_id": "ws-1", "name": "Welcome", **fields}
    response = client.post("/sequences", json=body)
    assert response.status_code == 201
    sequence_id: str = response.json()["id"]
    return sequence_id


def _active_sequence(client: TestClient, **fields: Any) -> str:
    sequence_id = _create_sequence(client, **fields)
    client.post(
        f"/sequences/{sequence_id}/steps",
        json={"body": "Hi {first_name}", "delay_minutes": 0},
    )
    assert client.post(f"/sequences/{sequence_id}/activate").status_code == 200
    return sequence_id


def _put_contact(client: TestClient, **overrides: Any) -> None:
    contact = {**CONTACT, **overrides}
    assert client.put(f"/contacts/{contact['id']}", json=contact).status_code == 200


class TestSequences:
    def test_create_and_get_detail(self, client: TestClient) -> None:
        sequence_id = _create_sequence(client, trigger={"type": "keyword_join", "keyword": "JOIN"})

        response = client.get(f"/sequences/{sequence_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["sequence"]["status"] == "draft"
        assert body["sequence"]["trigger"] == {"type": "keyword_join", "keyword": "JOIN"}
        assert body["enrollment_stats"]["total"] == 0

    def test_invalid_body_is_422(self, client: TestClient) -> None:
        response = client.post("/sequences", json={"workspace_id": "ws-1", "name": ""})
        assert response.status_code == 422

    def test_list_filters(self, client: TestClient) -> None:
        active_id = _active_sequence(client)
        _create_sequence(client, name="Draft")
        _create_sequence(client, workspace_id="ws-2", name="Elsewhere")

        all_ws1 = client.get("/sequences", params={"workspace_id": "ws-1"}).json()
        active = client.get("/sequences", params={"status": "active"}).json()

        assert {s["name"] for s in all_ws1} == {"Welcome", "Draft"}
        assert [s["id"] for s in active] == [active_id]

    def test_unknown_sequence_is_404(self, client: TestClient) -> None:
        response = client.get("/sequences/missing")
        assert response.status_code == 404
        assert "missing" in response.json()["detail"]

    def test_activate_without_steps_is_400(self, client: TestClient) -> None:
        sequence_id = _create_sequence(client)
        assert client.post(f"/sequences/{sequence_id}/activate").status_code == 400

    def test_invalid_lifecycle_transition_is_409(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client)
        assert client.post(f"/sequences/{sequence_id}/activate").status_code == 409
        assert client.post(f"/sequences/{sequence_id}/archive").status_code == 200
        assert client.post(f"/sequences/{sequence_id}/pause").status_code == 409

    def test_update_rules_follow_status(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client)

        renamed = client.patch(f"/sequences/{sequence_id}", json={"name": "Hello"})
        audience = client.patch(
            f"/sequences/{sequence_id}", json={"audience": {"type": "stage", "stage": "Lead"}}
        )

        assert renamed.status_code == 200
        assert renamed.json()["name"] == "Hello"
        assert audience.status_code == 400

    def test_delete_requires_inactive(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client)
        assert client.delete(f"/sequences/{sequence_id}").status_code == 400

        client.post(f"/sequences/{sequence_id}/pause")
        assert client.delete(f"/sequences/{sequence_id}").status_code == 204
        assert client.get(f"/sequences/{sequence_id}").status_code == 404


class TestSteps:
    def test_add_reorder_edit_delete(self, client: TestClient) -> None:
        sequence_id = _create_sequence(client)
        first = client.post(f"/sequences/{sequence_id}/steps", json={"body": "One"}).json()
        second = client.post(
            f"/sequences/{sequence_id}/steps",
            json={"channel": "email", "subject": "Two", "body": "Two"},
        ).json()
        assert (first["order"], second["order"]) == (1, 2)

        reordered = client.post(
            f"/sequences/{sequence_id}/steps/reorder",
            json={"step_ids": [second["id"], first["id"]]},
        ).json()
        assert [s["id"] for s in reordered] == [second["id"], first["id"]]

        edited = client.patch(f"/steps/{first['id']}", json={"delay_minutes": 30})
        assert edited.json()["delay_minutes"] == 30

        assert client.delete(f"/steps/{second['id']}").status_code == 204
        steps = client.get(f"/sequences/{sequence_id}").json()["sequence"]["steps"]
        assert [(s["id"], s["order"]) for s in steps] == [(first["id"], 1)]

    def test_email_step_requires_subject(self, client: TestClient) -> None:
        sequence_id = _create_sequence(client)
        response = client.post(
            f"/sequences/{sequence_id}/steps", json={"channel": "email", "body": "Hi"}
        )
        assert response.status_code == 422

    def test_steps_locked_while_active(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client)
        response = client.post(f"/sequences/{sequence_id}/steps", json={"body": "More"})
        assert response.status_code == 400

    def test_reorder_requires_ids(self, client: TestClient) -> None:
        sequence_id = _create_sequence(client)
        response = client.post(f"/sequences/{sequence_id}/steps/reorder", json={"step_ids": []})
        assert response.status_code == 422

    def test_unknown_step_is_404(self, client: TestClient) -> None:
        assert client.delete("/steps/missing").status_code == 404


class TestEnrollments:
    def test_enroll_list_and_stop(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client)
        _put_contact(client)

        summary = client.post(
            f"/sequences/{sequence_id}/enrollments", json={"contact_ids": ["c-1", "ghost"]}
        ).json()
        assert (summary["enrolled"], summary["skipped"]) == (1, 1)
        enrollment_id = summary["results"][0]["enrollment_id"]

        page = client.get(f"/sequences/{sequence_id}/enrollments").json()
        assert (page["total"], page["page"], page["limit"]) == (1, 1, 20)
        assert client.get("/contacts/c-1/enrollments").json()[0]["id"] == enrollment_id

        stopped = client.post(f"/enrollments/{enrollment_id}/stop")
        assert stopped.status_code == 200
        assert stopped.json()["status"] == "stopped"
        assert stopped.json()["stopped_reason"] == "manual"

        again = client.post(f"/enrollments/{enrollment_id}/stop", json={"reason": "dupe"})
        assert again.status_code == 409

    def test_enroll_into_draft_is_400(self, client: TestClient) -> None:
        sequence_id = _create_sequence(client)
        response = client.post(
            f"/sequences/{sequence_id}/enrollments", json={"contact_ids": ["c-1"]}
        )
        assert response.status_code == 400

    @pytest.mark.parametrize("contact_ids", [[], [f"c-{i}" for i in range(501)]])
    def test_contact_id_bounds(self, client: TestClient, contact_ids: list[str]) -> None:
        sequence_id = _active_sequence(client)
        response = client.post(
            f"/sequences/{sequence_id}/enrollments", json={"contact_ids": contact_ids}
        )
        assert response.status_code == 422

    def test_page_limit_bounds(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client)
        url = f"/sequences/{sequence_id}/enrollments"
        assert client.get(url, params={"limit": 51}).status_code == 422
        assert client.get(url, params={"page": 0}).status_code == 422
        assert client.get(url, params={"status": "active", "limit": 50}).status_code == 200

    def test_enroll_by_audience(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client, audience={"type": "stage", "stage": "lead"})
        _put_contact(client)
        _put_contact(client, id="c-2", stage="Customer")

        summary = client.post(f"/sequences/{sequence_id}/enrollments/audience").json()

        assert [r["contact_id"] for r in summary["results"]] == ["c-1"]

    def test_unknown_enrollment_is_404(self, client: TestClient) -> None:
        assert client.post("/enrollments/missing/stop").status_code == 404


class TestStepStats:
    def test_counts_after_sweep(self, client: TestClient, services: dict[str, Any]) -> None:
        sequence_id = _active_sequence(client)
        _put_contact(client)
        client.post(f"/sequences/{sequence_id}/enrollments", json={"contact_ids": ["c-1"]})

        services["scheduler"].sweep()
        stats = client.get(f"/sequences/{sequence_id}/step-stats").json()

        assert len(stats) == 1
        assert stats[0]["sent"] == 1
        assert stats[0]["body_preview"] == "Hi {first_name}"


class TestContactsAndEvents:
    def test_put_contact_id_mismatch_is_400(self, client: TestClient) -> None:
        assert client.put("/contacts/other", json=CONTACT).status_code == 400

    def test_put_workspace(self, client: TestClient) -> None:
        workspace = {"id": "ws-1", "name": "Downtown Dental", "timezone": "America/New_York"}
        response = client.put("/workspaces/ws-1", json=workspace)
        assert response.status_code == 200
        assert response.json()["timezone"] == "America/New_York"

    def test_keyword_join_enrolls(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client, trigger={"type": "keyword_join", "keyword": "JOIN"})

        result = client.post(
            "/events/keyword-join", json={"contact": CONTACT, "keyword": "join"}
        ).json()

        assert result["enrolled"] == 1
        assert result["details"][0]["sequence_id"] == sequence_id

    def test_contact_created_enrolls(self, client: TestClient) -> None:
        _active_sequence(client, trigger={"type": "contact_created"})
        result = client.post("/events/contact-created", json=CONTACT).json()
        assert (result["sequences_checked"], result["enrolled"]) == (1, 1)

    def test_stage_change_stores_new_stage(self, client: TestClient, services) -> None:
        _active_sequence(client, trigger={"type": "stage_change", "stage": "Customer"})

        result = client.post(
            "/events/stage-change", json={"contact": CONTACT, "stage": "Customer"}
        ).json()

        assert result["enrolled"] == 1
        assert services["contact_store"].get_contact("c-1").stage == "Customer"

    def test_delivery_reply_event(self, client: TestClient) -> None:
        sequence_id = _active_sequence(client)
        _put_contact(client)
        summary = client.post(
            f"/sequences/{sequence_id}/enrollments", json={"contact_ids": ["c-1"]}
        ).json()
        enrollment_id = summary["results"][0]["enrollment_id"]

        response = client.post(
            "/events/delivery",
            json={"contact_id": "c-1", "enrollment_id": enrollment_id, "event": "replied"},
        )

        assert response.json() == {"updated": 1}

    def test_unknown_delivery_event_is_422(self, client: TestClient) -> None:
        response = client.post("/events/delivery", json={"contact_id": "c-1", "event": "bounced"})
        assert response.status_code == 422


class TestOptOut:
    def _enrolled(self, client: TestClient) -> str:
        sequence_id = _active_sequence(client)
        _put_contact(client)
        client.post(f"/sequences/{sequence_id}/enrollments", json={"contact_ids": ["c-1"]})
        return sequence_id

    def test_opt_out_route(self, client: TestClient, services) -> None:
        self._enrolled(client)

        response = client.post("/contacts/c-1/opt-out")

        assert response.json() == {"enrollments_opted_out": 1}
        assert services["contact_store"].get_contact("c-1").opted_out
        [enrollment] = client.get("/contacts/c-1/enrollments").json()
        assert enrollment["status"] == "opted_out"
        assert enrollment["stopped_reason"] == "contact_opted_out"

    def test_unsubscribe_link(self, client: TestClient) -> None:
        self._enrolled(client)

        response = client.post(f"/unsubscribe/{unsubscribe_token('c-1', 's3cret')}")

        assert response.json() == {"enrollments_opted_out": 1}
        [enrollment] = client.get("/contacts/c-1/enrollments").json()
        assert enrollment["stopped_reason"] == "unsubscribe_link"

    def test_delivered_link_path(self, client: TestClient, services) -> None:
        self._enrolled(client)

        response = client.get(f"/u/{unsubscribe_token('c-1', 's3cret')}")

        assert response.json() == {"enrollments_opted_out": 1}
        assert services["contact_store"].get_contact("c-1").opted_out

    def test_forged_unsubscribe_link_is_400(self, client: TestClient) -> None:
        assert client.post("/unsubscribe/c-1.000000000000").status_code == 400


class TestAppSurface:
    def test_request_id_and_health(self, client: TestClient) -> None:
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.json() == {"status": "healthy"}
        assert response.headers["X-Request-ID"] == "req-42"

    def test_ready_with_scheduler(self, client: TestClient) -> None:
        response = client.get("/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok", "scheduler": "ok"}

    def test_metrics_exposed(self, client: TestClient) -> None:
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "sequencer_step_outcomes_total" in response.text
