from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.database import get_db
from app.main import app
from app.services.result import Result

TOKEN = {"X-Admin-Token": "admin-secret"}
NOW = datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)


def _request(status="support_required"):
    return SimpleNamespace(
        phone_e164="+33612345678",
        status=status,
        attempts=2,
        last_prompted_at=NOW,
        last_email_attempted="lea@example.com",
        linked_account_id=None,
        updated_at=NOW,
    )


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def client(db):
    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    with patch.object(settings, "admin_token", "admin-secret"):
        yield TestClient(app)
    app.dependency_overrides.clear()


class TestAuth:
    def test_missing_token(self, client):
        assert client.get("/admin/link-requests/33612345678").status_code == 401

    def test_not_configured(self, client):
        with patch.object(settings, "admin_token", None):
            response = client.get("/admin/link-requests/33612345678", headers=TOKEN)
        assert response.status_code == 500


class TestLinkRequests:
    @patch("app.routers.admin.get_link_request")
    def test_detail_with_recent_messages(self, mock_get, client, db):
        mock_get.return_value = _request()
        message = SimpleNamespace(wa_message_id="wamid.1", text="lea@example.com", created_at=NOW)
        db.query.return_value.filter.return_value.order_by.return_value.limit.return_value.all.return_value = [message]

        response = client.get("/admin/link-requests/33612345678", headers=TOKEN)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "support_required"
        assert data["recent_messages"][0]["wa_message_id"] == "wamid.1"
        mock_get.assert_called_once_with(db, "+33612345678")

    @patch("app.routers.admin.get_link_request")
    def test_detail_not_found(self, mock_get, client):
        mock_get.return_value = None
        assert client.get("/admin/link-requests/33612345678", headers=TOKEN).status_code == 404

    def test_invalid_phone(self, client):
        assert client.get("/admin/link-requests/not-a-phone", headers=TOKEN).status_code == 400

    @patch("app.routers.admin.reset_link_request")
    def test_reset(self, mock_reset, client, db):
        reopened = _request(status="pending")
        reopened.attempts = 0
        mock_reset.return_value = Result.success(reopened)

        response = client.post("/admin/link-requests/33612345678/reset", headers=TOKEN)

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["attempts"] == 0
        db.commit.assert_called_once()

    @patch("app.routers.admin.reset_link_request")
    def test_reset_conflict(self, mock_reset, client, db):
        mock_reset.return_value = Result.failure("Link request is linked", "not_resettable", status="linked")

        response = client.post("/admin/link-requests/33612345678/reset", headers=TOKEN)

        assert response.status_code == 409
        db.commit.assert_not_called()

    @patch("app.routers.admin.reset_link_request")
    def test_reset_not_found(self, mock_reset, client):
        mock_reset.return_value = Result.failure("No link request for this phone", "not_found")
        assert client.post("/admin/link-requests/33612345678/reset", headers=TOKEN).status_code == 404


class TestAlerts:
    @patch("app.routers.admin.send_alert")
    def test_alert_sent(self, mock_alert, client):
        mock_alert.return_value = True

        response = client.post("/admin/alerts/test", headers=TOKEN)

        assert response.json() == {"success": True, "message": "Alert sent"}


def test_health():
    assert TestClient(app).get("/health").json() == {"status": "ok"}


def test_linked_account_id_serialized(client):
    account_id = uuid4()
    with patch("app.routers.admin.get_link_request") as mock_get:
        linked = _request(status="linked")
        linked.linked_account_id = account_id
        mock_get.return_value = linked
        response = client.get("/admin/link-requests/33612345678", headers=TOKEN)

    assert response.json()["linked_account_id"] == str(account_id)
