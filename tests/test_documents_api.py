"""Endpoint tests for /v1/documents with the database session faked out."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

from app.db.db import get_session
from app.main import app
from app.models.document import Document
from app.services.sync_engine import PLACEHOLDER_MODIFIED_TIME
from app.utils.local_tokens import create_local_token

client = TestClient(app)


def _document(user_id, file_id="f1", modified="2024-02-01T00:00:00Z", **overrides):
    values = dict(
        user_id=UUID(user_id),
        external_file_id=file_id,
        title=f"Title {file_id}",
        mime_type="application/vnd.google-apps.document",
        full_text=f"Body of {file_id}",
        source_modified_time=modified,
        chunk_count=1,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        updated_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return Document(**values)


@pytest.fixture
def user_id():
    return str(uuid4())


@pytest.fixture
def auth_headers(user_id):
    return {"Authorization": f"Bearer {create_local_token(user_id)}"}


@pytest.fixture
def session():
    fake = MagicMock()
    fake.execute = AsyncMock()

    async def override():
        yield fake

    app.dependency_overrides[get_session] = override
    yield fake
    app.dependency_overrides.pop(get_session, None)


def _returns(session, rows=None, one=None):
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows or []
    result.scalar_one_or_none.return_value = one
    session.execute.return_value = result


class TestListDocuments:
    def test_requires_a_token(self, session):
        assert client.get("/v1/documents").status_code == 401

    def test_lists_the_users_documents(self, session, auth_headers, user_id):
        _returns(session, rows=[
            _document(user_id, "f1"),
            _document(user_id, "f2", modified=PLACEHOLDER_MODIFIED_TIME, chunk_count=0),
        ])

        response = client.get("/v1/documents", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 2
        assert [doc["file_id"] for doc in data["documents"]] == ["f1", "f2"]
        assert [doc["indexed"] for doc in data["documents"]] == [True, False]
        assert "full_text" not in data["documents"][0]
        query = str(session.execute.call_args.args[0])
        assert "documents.user_id" in query

    def test_empty_index(self, session, auth_headers):
        _returns(session)

        response = client.get("/v1/documents", headers=auth_headers)

        assert response.json()["data"] == {"documents": [], "total": 0}


class TestGetDocument:
    def test_returns_full_text(self, session, auth_headers, user_id):
        document = _document(user_id)
        _returns(session, one=document)

        response = client.get(f"/v1/documents/{document.id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == str(document.id)
        assert data["full_text"] == "Body of f1"
        assert data["indexed"] is True

    def test_other_users_document_is_not_found(self, session, auth_headers):
        _returns(session, one=None)

        response = client.get(f"/v1/documents/{uuid4()}", headers=auth_headers)

        assert response.status_code == 404

    def test_malformed_id_is_not_found(self, session, auth_headers):
        response = client.get("/v1/documents/not-a-uuid", headers=auth_headers)

        assert response.status_code == 404
        session.execute.assert_not_called()
