"""
Tests for the REST API endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from api import app, get_uow
from infrastructure import InMemoryUnitOfWork
from serialization import DraftSerializer


serializer = DraftSerializer()


@pytest.fixture
def client(db):
    """Test client backed by a fresh in-memory database."""
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def content(complete_project):
    return serializer.to_content(complete_project)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestDraftEndpoints:
    """Tests for /api/v1/drafts."""

    def test_create_and_get(self, client, content):
        response = client.post("/api/v1/drafts", json={"title": "Alpha", "content": content})
        assert response.status_code == 201
        draft = response.json()["data"]

        fetched = client.get(f"/api/v1/drafts/{draft['id']}").json()["data"]
        assert fetched["title"] == "Alpha"
        assert fetched["content"]["name"] == "Alpha"

    def test_list(self, client, content):
        client.post("/api/v1/drafts", json={"title": "Alpha", "content": content})
        drafts = client.get("/api/v1/drafts").json()["data"]
        assert [d["title"] for d in drafts] == ["Alpha"]

    def test_update(self, client, content):
        draft_id = client.post(
            "/api/v1/drafts", json={"title": "Alpha", "content": content}
        ).json()["data"]["id"]
        response = client.put(
            f"/api/v1/drafts/{draft_id}", json={"title": "Renamed", "content": content}
        )
        assert response.status_code == 200
        assert response.json()["data"]["title"] == "Renamed"

    def test_delete(self, client, content):
        draft_id = client.post(
            "/api/v1/drafts", json={"title": "Alpha", "content": content}
        ).json()["data"]["id"]
        assert client.delete(f"/api/v1/drafts/{draft_id}").status_code == 204
        assert client.get(f"/api/v1/drafts/{draft_id}").status_code == 404

    def test_missing_draft(self, client):
        response = client.get("/api/v1/drafts/missing")
        assert response.status_code == 404
        assert "missing" in response.json()["detail"]

    def test_empty_title_rejected(self, client):
        response = client.post("/api/v1/drafts", json={"title": "", "content": {}})
        assert response.status_code == 422

    def test_unreadable_content_rejected(self, client):
        response = client.post(
            "/api/v1/drafts", json={"title": "Bad", "content": {"overhead": "lots"}}
        )
        assert response.status_code == 422

    def test_completion(self, client, content):
        data = client.post("/api/v1/drafts/completion", json={"content": content}).json()["data"]
        assert data["summary"] is True

        data = client.post("/api/v1/drafts/completion", json={"content": {}}).json()["data"]
        assert data["basic_info"] is False
        assert data["summary"] is False


class TestProjectEndpoints:
    """Tests for /api/v1/projects."""

    def submit(self, client, content, draft_id=None):
        return client.post(
            "/api/v1/projects", json={"payload": content, "draft_id": draft_id}
        )

    def test_submit(self, client, content):
        response = self.submit(client, content)
        assert response.status_code == 201
        assert response.json()["data"]["state"] == "pending"

    def test_submit_deletes_draft(self, client, content):
        draft_id = client.post(
            "/api/v1/drafts", json={"title": "Alpha", "content": content}
        ).json()["data"]["id"]
        self.submit(client, content, draft_id=draft_id)
        assert client.get(f"/api/v1/drafts/{draft_id}").status_code == 404

    def test_submit_incomplete(self, client):
        response = self.submit(client, {"name": "Alpha"})
        assert response.status_code == 422
        assert client.get("/api/v1/projects").json()["data"] == []

    def test_approve_then_views(self, client, content):
        project_id = self.submit(client, content).json()["data"]["project_id"]
        response = client.post(
            f"/api/v1/projects/{project_id}/validation", json={"approve": True}
        )
        assert response.status_code == 200
        result = response.json()["data"]
        assert result["success"] and result["project_remains"]

        project = client.get(
            f"/api/v1/projects/{project_id}", params={"mode": "submitted"}
        ).json()["data"]
        assert project["view"] == "submitted"
        assert project["has_submitted_view"] is True
        assert project["approved_at"] is not None
        assert project["workpackages"][0]["allocations"][0]["occupancy"] == "0.5"

    def test_reject(self, client, content):
        project_id = self.submit(client, content).json()["data"]["project_id"]
        result = client.post(
            f"/api/v1/projects/{project_id}/validation", json={"approve": False}
        ).json()["data"]
        assert result["project_remains"] is False
        assert client.get(f"/api/v1/projects/{project_id}").status_code == 404

    def test_validate_twice(self, client, content):
        project_id = self.submit(client, content).json()["data"]["project_id"]
        client.post(f"/api/v1/projects/{project_id}/validation", json={"approve": True})
        response = client.post(
            f"/api/v1/projects/{project_id}/validation", json={"approve": True}
        )
        assert response.status_code == 422

    def test_list_by_state(self, client, content):
        self.submit(client, content)
        assert len(client.get("/api/v1/projects", params={"state": "pending"}).json()["data"]) == 1
        assert client.get("/api/v1/projects", params={"state": "approved"}).json()["data"] == []

    def test_unknown_mode(self, client, content):
        project_id = self.submit(client, content).json()["data"]["project_id"]
        response = client.get(f"/api/v1/projects/{project_id}", params={"mode": "both"})
        assert response.status_code == 422


class TestAllocationEndpoints:
    """Tests for /api/v1/users/{user_id}/allocations and the totals report."""

    @pytest.fixture
    def stored(self, uow, approved_project):
        uow.projects.save(approved_project)
        return approved_project

    def test_feed(self, client, stored):
        data = client.get("/api/v1/users/u1/allocations").json()["data"]
        assert data["user_id"] == "u1"
        assert [r["occupancy"] for r in data["real"]] == ["0.500"]
        assert [r["occupancy"] for r in data["submitted"]] == ["0.600"]
        assert data["available_years"] == [2024]

    def test_save_balanced(self, client, stored):
        response = client.put(
            "/api/v1/users/u1/allocations",
            json={"year": 2024, "edits": [{"workpackage_id": "wp1", "month": 1, "value": "0,6"}]},
        )
        assert response.status_code == 200
        assert [r["occupancy"] for r in response.json()["data"]["real"]] == ["0.600"]

    def test_save_unbalanced(self, client, stored):
        response = client.put(
            "/api/v1/users/u1/allocations",
            json={"year": 2024, "edits": [{"workpackage_id": "wp1", "month": 1, "value": "0,7"}]},
        )
        assert response.status_code == 422
        assert "not saved" in response.json()["detail"]

    @pytest.mark.parametrize("value", ["2", "0.5", "0,123", "0,5\n"])
    def test_invalid_cell_text(self, client, stored, value):
        response = client.put(
            "/api/v1/users/u1/allocations",
            json={"year": 2024, "edits": [{"workpackage_id": "wp1", "month": 1, "value": value}]},
        )
        assert response.status_code == 422

    def test_unknown_workpackage(self, client, stored):
        response = client.put(
            "/api/v1/users/u1/allocations",
            json={"year": 2024, "edits": [{"workpackage_id": "wp9", "month": 1, "value": "0,6"}]},
        )
        assert response.status_code == 404

    def test_totals(self, client, stored):
        data = client.get("/api/v1/projects/allocation-totals").json()["data"]
        assert data == [
            {"project_id": "p1", "name": "Alpha", "real_total": "0.5", "submitted_total": "0.6"}
        ]
