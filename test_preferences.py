"""
Tests for the /api/preferences endpoints.

Tests cover:
- Default course for users without a stored preference
- Saving and overwriting the selected course
- Access to other users' preferences
- Unreachable store and non-persisting deployments
"""

import pytest
from fastapi.testclient import TestClient

from coursechat.auth import get_options
from coursechat.gateway import GatewayOptions, IdentityMode
from coursechat.main import app
from coursechat.storage import Base, engine, get_db


def login(client, username: str = "user1", password: str = "password1"):
    """Helper to log a client in with one of the default users."""
    response = client.post("/api/login", json={"username": username, "password": password})
    assert response.status_code == 200


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def user1(client):
    login(client)
    return client


class TestGetPreference:
    """Test GET /api/preferences."""

    def test_requires_login(self, client):
        assert client.get("/api/preferences").status_code == 401

    def test_default_course(self, user1):
        response = user1.get("/api/preferences")

        assert response.status_code == 200
        assert response.json()["selectedCourse"] == "mathematik"
        assert response.json()["userId"] == "user1"

    def test_own_preference_by_user_id(self, user1):
        response = user1.get("/api/preferences/user1")

        assert response.status_code == 200
        assert response.json()["selectedCourse"] == "mathematik"

    def test_other_users_preference_forbidden(self, user1):
        response = user1.get("/api/preferences/user2")

        assert response.status_code == 403


class TestSavePreference:
    """Test POST /api/preferences."""

    def test_save_and_read_back(self, user1):
        response = user1.post("/api/preferences", json={"selectedCourse": "betriebssysteme"})

        assert response.status_code == 201
        assert response.json() == {"success": True}
        assert user1.get("/api/preferences").json()["selectedCourse"] == "betriebssysteme"

    def test_overwrite(self, user1):
        user1.post("/api/preferences", json={"selectedCourse": "betriebssysteme"})
        user1.post("/api/preferences", json={"selectedCourse": "algorithmenUndProgrammiertechniken"})

        response = user1.get("/api/preferences")

        assert response.json()["selectedCourse"] == "algorithmenUndProgrammiertechniken"

    def test_preferences_are_per_user(self, user1):
        user1.post("/api/preferences", json={"selectedCourse": "betriebssysteme"})
        user1.post("/api/logout")
        login(user1, "user2", "password2")

        assert user1.get("/api/preferences").json()["selectedCourse"] == "mathematik"

    @pytest.mark.parametrize("body", [{}, {"selectedCourse": ""}])
    def test_missing_course_rejected(self, user1, body):
        response = user1.post("/api/preferences", json=body)

        assert response.status_code == 400

    def test_saving_for_other_user_forbidden(self, user1):
        response = user1.post(
            "/api/preferences", json={"selectedCourse": "betriebssysteme", "userId": "user2"}
        )

        assert response.status_code == 403

    def test_unreachable_store(self, user1, broken_db):
        app.dependency_overrides[get_db] = lambda: broken_db

        saved = user1.post("/api/preferences", json={"selectedCourse": "betriebssysteme"})
        loaded = user1.get("/api/preferences")

        assert saved.status_code == 201
        assert loaded.status_code == 200
        assert loaded.json()["selectedCourse"] == "mathematik"


class TestDeploymentVariants:
    """Preference behaviour of the other deployment variants."""

    def test_not_persisted(self, user1):
        app.dependency_overrides[get_options] = lambda: GatewayOptions(persist_preferences=False)

        assert user1.post("/api/preferences", json={"selectedCourse": "betriebssysteme"}).status_code == 201
        assert user1.get("/api/preferences").json()["selectedCourse"] == "mathematik"

    def test_shared_identity_names_user_in_request(self, client):
        app.dependency_overrides[get_options] = lambda: GatewayOptions(
            require_auth=False, identity_mode=IdentityMode.SHARED
        )

        client.post("/api/preferences", json={"selectedCourse": "betriebssysteme", "userId": "alice"})

        assert client.get("/api/preferences/alice").json()["selectedCourse"] == "betriebssysteme"
        assert client.get("/api/preferences/bob").json()["selectedCourse"] == "mathematik"
