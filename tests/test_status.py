"""Unit tests for the health and build-info endpoints."""

import os
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app import main
from app.main import app

client = TestClient(app)


class TestStatusEndpoint:
    """Test cases for the /status endpoint."""

    def test_status_endpoint_basic(self):
        response = client.get("/status")

        assert response.status_code == 200
        data = response.json()
        assert set(data) == {"status", "build", "sha", "env"}
        assert data["status"] == "ok"

    def test_ci_variables_are_reported(self):
        test_env_vars = {
            "BUILD_NUMBER": "123",
            "GIT_SHA": "abc123def456",
            "GITHUB_SHA": "fallback_sha",
            "ENVIRONMENT": "production",
            "ENV": "fallback_env",
        }

        with patch.dict(os.environ, test_env_vars):
            data = client.get("/status").json()

        # GIT_SHA and ENVIRONMENT win over their fallbacks
        assert data["build"] == "123"
        assert data["sha"] == "abc123def456"
        assert data["env"] == "production"

    def test_github_sha_and_env_fallbacks(self):
        with patch.dict(os.environ, {"GITHUB_SHA": "github123sha456", "ENV": "staging"}, clear=True):
            data = client.get("/status").json()

        assert data["sha"] == "github123sha456"
        assert data["env"] == "staging"
        assert data["build"] == "local-dev"

    def test_local_development_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            data = client.get("/status").json()

        assert data["build"] == "local-dev"
        assert data["env"] == "development"
        # Either the checkout's short hash or the placeholder
        assert data["sha"] == "local-dev" or len(data["sha"]) == 8


class TestRootAndDatabaseHealth:
    def test_root_lists_docs(self):
        data = client.get("/").json()

        assert data["status"] == "operational"
        assert data["docs"] == "/docs"

    def test_database_available(self, monkeypatch):
        monkeypatch.setattr(main, "ping_database", AsyncMock(return_value=(True, "Database reachable")))

        response = client.get("/health/db")

        assert response.status_code == 200
        assert response.json()["db"] == "available"

    def test_database_unavailable_is_degraded(self, monkeypatch):
        monkeypatch.setattr(main, "ping_database", AsyncMock(return_value=(False, "Database not initialized")))

        response = client.get("/health/db")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
