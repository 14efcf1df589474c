"""Role and ownership enforcement on the CRM resources."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from stormcrm import app as app_module
from stormcrm.service.runtime import get_runtime, reset_runtime_for_tests
from stormcrm.storage.memory import DEMO_PASSWORD
from stormcrm.storage.statements import InsertInto, ListAll, Partition


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _headers(client, email):
    response = client.post("/api/auth/login", json={"email": email, "password": DEMO_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['accessToken']}"}


@pytest.fixture
def admin(client):
    return _headers(client, "admin@example.com")


@pytest.fixture
def manager(client):
    return _headers(client, "manager@example.com")


@pytest.fixture
def sales(client):
    return _headers(client, "sales@example.com")


@pytest.fixture
def viewer(client):
    response = client.post(
        "/api/auth/register",
        json={"email": "viewer@example.com", "password": "password123",
              "firstName": "View", "lastName": "Only", "role": "viewer"},
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['accessToken']}"}


def _user_id(client, headers):
    return client.get("/api/auth/me", headers=headers).json()["id"]


def _lead_owned_by(client, admin_headers, owner_id):
    leads = client.get("/api/leads", headers=admin_headers).json()["leads"]
    return next(lead for lead in leads if lead["assignedTo"] == owner_id)


class TestHailEvents:
    def test_anonymous_gets_summary_fields(self, client):
        response = client.get("/api/hail")
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 3
        assert "lat" not in body["events"][0]
        assert {"id", "eventDate", "county", "hailSize", "severity"} <= set(body["events"][0])

    def test_authenticated_gets_full_records(self, client, sales):
        event = client.get("/api/hail", headers=sales).json()["events"][0]
        assert "lat" in event and "windSpeed" in event

    def test_invalid_token_falls_back_to_anonymous(self, client):
        response = client.get("/api/hail", headers={"Authorization": "Bearer junk"})
        assert response.status_code == 200
        assert "lat" not in response.json()["events"][0]


class TestLeadVisibility:
    def test_sales_rep_sees_only_assigned_leads(self, client, sales):
        body = client.get("/api/leads", headers=sales).json()
        me = _user_id(client, sales)
        assert body["count"] == 2
        assert all(lead["assignedTo"] == me for lead in body["leads"])

    def test_managers_and_admins_see_all(self, client, admin, manager):
        assert client.get("/api/leads", headers=admin).json()["count"] == 3
        assert client.get("/api/leads", headers=manager).json()["count"] == 3

    def test_owner_can_read_lead(self, client, admin, sales):
        lead = _lead_owned_by(client, admin, _user_id(client, sales))
        response = client.get(f"/api/leads/{lead['id']}", headers=sales)
        assert response.status_code == 200
        assert response.json()["name"] == lead["name"]

    def test_non_owner_denied(self, client, admin, sales):
        lead = _lead_owned_by(client, admin, _user_id(client, admin))
        response = client.get(f"/api/leads/{lead['id']}", headers=sales)
        assert response.status_code == 403
        assert response.json() == {
            "error": "Insufficient permissions",
            "message": "You can only access your own resources",
        }

    def test_admin_reads_any_lead(self, client, admin, sales):
        lead = _lead_owned_by(client, admin, _user_id(client, sales))
        assert client.get(f"/api/leads/{lead['id']}", headers=admin).status_code == 200

    def test_missing_lead_is_check_failure_for_non_admin(self, client, sales):
        response = client.get("/api/leads/does-not-exist", headers=sales)
        assert response.status_code == 500
        assert response.json()["error"] == "Authorization check failed"

    def test_missing_lead_is_not_found_for_admin(self, client, admin):
        response = client.get("/api/leads/does-not-exist", headers=admin)
        assert response.status_code == 404


class TestLeadWrites:
    def test_sales_rep_creates_own_lead(self, client, sales):
        response = client.post(
            "/api/leads",
            json={"name": "Pat Doe", "propertyAddress": "12 Birch Lane", "propertyZip": "53703",
                  "tags": ["roof"]},
            headers=sales,
        )
        assert response.status_code == 201
        lead = response.json()
        assert lead["assignedTo"] == _user_id(client, sales)
        assert lead["stage"] == "new"

        activity = asyncio.run(get_runtime().db.query(ListAll(Partition.ACTIVITY_LOG))).rows
        assert any(
            row["action"] == "lead_created" and row["entity_id"] == lead["id"] for row in activity
        )

    def test_sales_rep_cannot_assign_to_others(self, client, admin, sales):
        response = client.post(
            "/api/leads",
            json={"name": "Pat Doe", "propertyAddress": "12 Birch Lane",
                  "assignedTo": _user_id(client, admin)},
            headers=sales,
        )
        assert response.status_code == 403

    def test_manager_assigns_lead(self, client, manager, sales):
        rep_id = _user_id(client, sales)
        response = client.post(
            "/api/leads",
            json={"name": "Lee Park", "propertyAddress": "99 Cedar Court", "assignedTo": rep_id},
            headers=manager,
        )
        assert response.status_code == 201
        assert response.json()["assignedTo"] == rep_id

    def test_viewer_cannot_create(self, client, viewer):
        response = client.post(
            "/api/leads",
            json={"name": "Pat Doe", "propertyAddress": "12 Birch Lane"},
            headers=viewer,
        )
        assert response.status_code == 403
        assert "sales_rep" in response.json()["message"]

    def test_invalid_zip_rejected(self, client, sales):
        response = client.post(
            "/api/leads",
            json={"name": "Pat Doe", "propertyAddress": "12 Birch Lane", "propertyZip": "ABCDE"},
            headers=sales,
        )
        assert response.status_code == 400

    def test_owner_updates_stage_but_cannot_reassign(self, client, admin, sales):
        lead = _lead_owned_by(client, admin, _user_id(client, sales))

        updated = client.patch(f"/api/leads/{lead['id']}", json={"stage": "contacted"}, headers=sales)
        assert updated.status_code == 200
        assert updated.json()["stage"] == "contacted"

        reassigned = client.patch(
            f"/api/leads/{lead['id']}", json={"assignedTo": _user_id(client, admin)}, headers=sales
        )
        assert reassigned.status_code == 403

    def test_empty_update_rejected(self, client, admin):
        lead = client.get("/api/leads", headers=admin).json()["leads"][0]
        response = client.patch(f"/api/leads/{lead['id']}", json={}, headers=admin)
        assert response.status_code == 400

    def test_admin_deletes_lead(self, client, admin):
        lead = client.get("/api/leads", headers=admin).json()["leads"][0]
        assert client.delete(f"/api/leads/{lead['id']}", headers=admin).status_code == 200
        assert client.get(f"/api/leads/{lead['id']}", headers=admin).status_code == 404


class TestLeadNotes:
    def test_owner_adds_and_lists_notes(self, client, admin, sales):
        lead = _lead_owned_by(client, admin, _user_id(client, sales))

        response = client.post(
            f"/api/leads/{lead['id']}/notes", json={"text": "  Left voicemail  "}, headers=sales
        )
        assert response.status_code == 201
        note = response.json()
        assert note["leadId"] == lead["id"]
        assert note["text"] == "Left voicemail"
        assert note["author"] == "sales@example.com"
        assert note["createdAt"]

        listed = client.get(f"/api/leads/{lead['id']}/notes", headers=sales).json()
        assert listed["count"] == 1
        assert listed["notes"][0]["id"] == note["id"]

        activity = asyncio.run(get_runtime().db.query(ListAll(Partition.ACTIVITY_LOG))).rows
        assert any(row["action"] == "lead_note_added" for row in activity)

    def test_notes_are_scoped_to_their_lead(self, client, admin, sales):
        owned = _lead_owned_by(client, admin, _user_id(client, sales))
        other = _lead_owned_by(client, admin, _user_id(client, admin))
        client.post(f"/api/leads/{other['id']}/notes", json={"text": "Adjuster visit"}, headers=admin)

        assert client.get(f"/api/leads/{owned['id']}/notes", headers=sales).json()["count"] == 0
        assert client.get(f"/api/leads/{other['id']}/notes", headers=admin).json()["count"] == 1

    def test_non_owner_cannot_add_note(self, client, admin, sales):
        lead = _lead_owned_by(client, admin, _user_id(client, admin))
        response = client.post(
            f"/api/leads/{lead['id']}/notes", json={"text": "Not mine"}, headers=sales
        )
        assert response.status_code == 403

    def test_blank_note_rejected(self, client, admin):
        lead_id = client.get("/api/leads", headers=admin).json()["leads"][0]["id"]
        response = client.post(f"/api/leads/{lead_id}/notes", json={"text": "   "}, headers=admin)
        assert response.status_code == 400
        assert response.json()["error"] == "Validation failed"

    def test_note_on_missing_lead_for_admin(self, client, admin):
        response = client.post("/api/leads/nope/notes", json={"text": "Hello"}, headers=admin)
        assert response.status_code == 404
        assert len(get_runtime().db.partitions[Partition.LEAD_NOTES]) == 0


class TestApiKeys:
    def test_create_stores_encrypted_key_and_returns_preview(self, client, sales):
        response = client.post(
            "/api/settings/api-keys",
            json={"service": "sendgrid", "keyName": "Mail", "apiKey": "SG.abcdefgh1234"},
            headers=sales,
        )
        assert response.status_code == 201
        key = response.json()["apiKey"]
        assert key["preview"] == "****1234"
        assert "SG.abcdefgh1234" not in response.text

        runtime = get_runtime()
        stored = runtime.db.partitions[Partition.API_KEYS][key["id"]]
        assert stored["api_key_encrypted"] != "SG.abcdefgh1234"
        assert runtime.credentials.decrypt(stored["api_key_encrypted"]) == "SG.abcdefgh1234"

    def test_list_includes_shared_keys(self, client, sales, manager):
        asyncio.run(
            get_runtime().db.query(
                InsertInto(Partition.API_KEYS, {"user_id": None, "service": "noaa",
                                                "key_name": "NOAA", "is_active": True})
            )
        )
        client.post(
            "/api/settings/api-keys",
            json={"service": "ghl", "keyName": "Mine", "apiKey": "ghl-key-0001"},
            headers=sales,
        )
        client.post(
            "/api/settings/api-keys",
            json={"service": "twilio", "keyName": "Theirs", "apiKey": "tw-key-0002"},
            headers=manager,
        )

        services = {k["service"] for k in client.get("/api/settings/api-keys", headers=sales).json()["apiKeys"]}
        assert services == {"noaa", "ghl"}

    def test_only_owner_or_admin_modifies_key(self, client, sales, manager, admin):
        key_id = client.post(
            "/api/settings/api-keys",
            json={"service": "ghl", "keyName": "Mine", "apiKey": "ghl-key-0001"},
            headers=sales,
        ).json()["apiKey"]["id"]

        assert client.delete(f"/api/settings/api-keys/{key_id}", headers=manager).status_code == 403
        patched = client.patch(
            f"/api/settings/api-keys/{key_id}", json={"isActive": False}, headers=sales
        )
        assert patched.status_code == 200
        assert patched.json()["apiKey"]["isActive"] is False
        assert client.delete(f"/api/settings/api-keys/{key_id}", headers=admin).status_code == 200

    def test_system_settings_admin_only(self, client, admin, manager):
        asyncio.run(
            get_runtime().db.query(
                InsertInto(Partition.API_KEYS, {"user_id": None, "service": "sendgrid",
                                                "key_name": "System mail", "is_active": True})
            )
        )
        assert client.get("/api/settings/system", headers=manager).status_code == 403

        response = client.get("/api/settings/system", headers=admin)
        assert response.status_code == 200
        body = response.json()
        assert body["features"]["emailEnabled"] is True
        assert body["features"]["smsEnabled"] is False
        assert [k["service"] for k in body["systemKeys"]] == ["sendgrid"]


class TestCampaigns:
    def _create(self, client, headers, lead_ids, **overrides):
        payload = {
            "name": "Spring hail follow-up",
            "type": "email",
            "subject": "Free roof inspection",
            "template": "Hello {{name}}, we can help with storm damage.",
            "leads": lead_ids,
        }
        payload.update(overrides)
        return client.post("/api/campaigns", json=payload, headers=headers)

    def test_manager_creates_and_launches(self, client, manager):
        lead_ids = [lead["id"] for lead in client.get("/api/leads", headers=manager).json()["leads"]]
        created = self._create(client, manager, lead_ids)
        assert created.status_code == 201
        campaign = created.json()
        assert campaign["status"] == "draft"
        assert campaign["leadIds"] == lead_ids
        assert len(get_runtime().db.partitions[Partition.CAMPAIGN_LEADS]) == len(lead_ids)

        launched = client.post(f"/api/campaigns/{campaign['id']}/launch", headers=manager)
        assert launched.status_code == 200
        assert launched.json()["status"] == "launched"
        assert launched.json()["launchedAt"]

        again = client.post(f"/api/campaigns/{campaign['id']}/launch", headers=manager)
        assert again.status_code == 409

    def test_unknown_lead_ids_rejected(self, client, manager):
        known = client.get("/api/leads", headers=manager).json()["leads"][0]["id"]
        response = self._create(client, manager, [known, "no-such-lead"])
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert body["details"] == [{"field": "leads", "message": "Lead not found: no-such-lead"}]

        db = get_runtime().db
        assert len(db.partitions[Partition.CAMPAIGNS]) == 0
        assert len(db.partitions[Partition.CAMPAIGN_LEADS]) == 0

    def test_duplicate_lead_ids_collapsed(self, client, manager):
        known = client.get("/api/leads", headers=manager).json()["leads"][0]["id"]
        response = self._create(client, manager, [known, known])
        assert response.status_code == 201
        assert response.json()["leadIds"] == [known]
        assert len(get_runtime().db.partitions[Partition.CAMPAIGN_LEADS]) == 1

    def test_email_campaign_requires_subject(self, client, manager):
        response = self._create(client, manager, ["lead-1"], subject=None)
        assert response.status_code == 400

    def test_sales_rep_cannot_create(self, client, sales):
        assert self._create(client, sales, ["lead-1"]).status_code == 403

    def test_launch_missing_campaign(self, client, admin):
        assert client.post("/api/campaigns/nope/launch", headers=admin).status_code == 404


class TestSkiptrace:
    def test_sales_rep_queues_own_lead(self, client, admin, sales):
        lead = _lead_owned_by(client, admin, _user_id(client, sales))
        response = client.post("/api/skiptrace", json={"leadId": lead["id"]}, headers=sales)
        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        assert response.json()["leadId"] == lead["id"]

    def test_sales_rep_denied_on_other_lead(self, client, admin, sales):
        lead = _lead_owned_by(client, admin, _user_id(client, admin))
        response = client.post("/api/skiptrace", json={"leadId": lead["id"]}, headers=sales)
        assert response.status_code == 403

    def test_costly_limit(self, client, monkeypatch):
        monkeypatch.setenv("COSTLY_RATE_LIMIT_MAX_REQUESTS", "1")
        reset_runtime_for_tests()
        admin = _headers(client, "admin@example.com")
        lead = client.get("/api/leads", headers=admin).json()["leads"][0]

        assert client.post("/api/skiptrace", json={"leadId": lead["id"]}, headers=admin).status_code == 202
        limited = client.post("/api/skiptrace", json={"leadId": lead["id"]}, headers=admin)
        assert limited.status_code == 429
        assert limited.json()["retryAfter"] in ("1 hour", "60 minutes")
