"""
Tests for infrastructure endpoints: health check and JWT tokens.
"""

import pytest
from django.contrib.auth import get_user_model
from django.db import DatabaseError
from rest_framework.test import APIClient


@pytest.fixture
def api_client():
    return APIClient()


@pytest.mark.django_db
class TestHealthCheck:
    def test_healthy(self, api_client):
        response = api_client.get("/health/")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "connected"}

    def test_database_down(self, api_client, mocker):
        connection = mocker.patch("core.views.connection")
        connection.cursor.side_effect = DatabaseError("connection refused")

        response = api_client.get("/health/")

        assert response.status_code == 503
        assert response.json()["database"] == "disconnected"


@pytest.mark.django_db
class TestTokenEndpoints:
    @pytest.fixture
    def user(self):
        return get_user_model().objects.create_user(username="courier", password="s3cret-pass")

    def test_obtain_and_refresh(self, api_client, user):
        response = api_client.post(
            "/api/v1/auth/token/",
            {"username": "courier", "password": "s3cret-pass"},
            format="json",
        )

        assert response.status_code == 200
        tokens = response.json()
        assert {"access", "refresh"} <= tokens.keys()

        refreshed = api_client.post("/api/v1/auth/token/refresh/", {"refresh": tokens["refresh"]}, format="json")
        assert refreshed.status_code == 200
        assert "access" in refreshed.json()

    def test_wrong_password(self, api_client, user):
        response = api_client.post(
            "/api/v1/auth/token/",
            {"username": "courier", "password": "nope"},
            format="json",
        )

        assert response.status_code == 401

    def test_escrow_api_requires_token(self, api_client):
        assert api_client.get("/api/v1/escrow/payments/00000000-0000-0000-0000-000000000000/").status_code == 401
