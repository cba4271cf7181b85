"""Tests for the portability HTTP API.

Tests cover:
- App factory and health endpoint
- Request ID propagation
- Request creation and administrator transitions
- Requeueing the failed jobs of a request
- Lifecycle errors mapped to JSON error responses
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI

from portability.api import create_app
from portability.api.middleware.errors import (
    ConflictError,
    NotFoundError,
    ValidationAPIError,
    build_error_response,
)
from portability.api.middleware.request_id import REQUEST_ID_HEADER
from portability.api.routers.portability import get_lifecycle_service
from portability.db.models.base import RequestState
from portability.services.lifecycle import (
    DuplicateActiveRequestError,
    NoFailedJobsError,
    PortabilityRequestNotFoundError,
)
from portability.services.state_machine import InvalidTransitionError, RequestEvent

BASE = "/api/portability-requests"


@pytest.fixture
def lifecycle():
    """Lifecycle service mock injected into the routes."""
    service = MagicMock()
    for name in ("create_request", "find_active_requests", "get_request", "approve", "deny",
                 "cancel", "retry_failed_jobs"):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
def test_app(lifecycle):
    app = create_app()
    app.dependency_overrides[get_lifecycle_service] = lambda: lifecycle
    return app


class TestAppFactory:
    """Tests for create_app."""

    def test_returns_fastapi_app(self):
        app = create_app()
        assert isinstance(app, FastAPI)
        assert app.title == "Data Portability API"
        assert app.openapi_url == "/api/openapi.json"

    async def test_health(self, api_client):
        response = await api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_request_id_generated(self, api_client):
        response = await api_client.get("/health")
        uuid.UUID(response.headers[REQUEST_ID_HEADER])

    async def test_request_id_propagated(self, api_client):
        response = await api_client.get("/health", headers={REQUEST_ID_HEADER: "trace-123"})
        assert response.headers[REQUEST_ID_HEADER] == "trace-123"


class TestCreate:
    """Tests for POST /api/portability-requests."""

    async def test_create(self, api_client, lifecycle, make_request):
        request = make_request()
        lifecycle.create_request.return_value = request

        response = await api_client.post(BASE, json={"owner_type": "User", "owner_id": "42"})

        assert response.status_code == 201
        body = response.json()
        assert body["request_id"] == str(request.request_id)
        assert body["state"] == "waiting_for_approval"
        assert body["allowed_events"] == ["approve", "cancel", "deny"]
        lifecycle.create_request.assert_awaited_once_with(
            owner_type="User", owner_id="42", requested_by=None
        )

    async def test_duplicate(self, api_client, lifecycle):
        """Test the uniqueness guard is reported on owner_id."""
        lifecycle.create_request.side_effect = DuplicateActiveRequestError("User", "42", None)

        response = await api_client.post(BASE, json={"owner_type": "User", "owner_id": "42"})

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["detail"] == {"errors": {"owner_id": ["not_unique"]}}
        assert "request_id" in body

    async def test_unknown_field_rejected(self, api_client, lifecycle):
        response = await api_client.post(
            BASE, json={"owner_type": "User", "owner_id": "42", "state": "done"}
        )

        assert response.status_code == 422
        lifecycle.create_request.assert_not_awaited()


class TestTransitions:
    """Tests for approve/deny/cancel endpoints."""

    @pytest.mark.parametrize(
        ("action", "state"),
        [
            ("approve", RequestState.PENDING),
            ("deny", RequestState.DENIED),
            ("cancel", RequestState.CANCELED),
        ],
    )
    async def test_transition(self, api_client, lifecycle, make_request, action, state):
        request = make_request(state=state)
        lifecycle.get_request.return_value = request

        response = await api_client.post(f"{BASE}/{request.request_id}/{action}")

        assert response.status_code == 200
        assert response.json()["state"] == state.value
        getattr(lifecycle, action).assert_awaited_once_with(request.request_id)

    async def test_invalid_transition(self, api_client, lifecycle):
        request_id = uuid.uuid4()
        lifecycle.approve.side_effect = InvalidTransitionError(
            RequestState.RUNNING, RequestEvent.APPROVE, request_id
        )

        response = await api_client.post(f"{BASE}/{request_id}/approve")

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "invalid_transition"
        assert body["detail"] == {"state": "running", "event": "approve"}

    async def test_not_found(self, api_client, lifecycle):
        request_id = uuid.uuid4()
        lifecycle.get_request.side_effect = PortabilityRequestNotFoundError(request_id)

        response = await api_client.get(f"{BASE}/{request_id}")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_side_effect_failure_is_internal_error(self, api_client, lifecycle):
        """Test an unexpected failure is hidden behind internal_error."""
        lifecycle.deny.side_effect = RuntimeError("smtp down")

        response = await api_client.post(f"{BASE}/{uuid.uuid4()}/deny")

        assert response.status_code == 500
        assert response.json()["error"] == "internal_error"
        assert "smtp" not in response.text

    async def test_list_active(self, api_client, lifecycle, make_request):
        lifecycle.find_active_requests.return_value = [make_request(state=RequestState.RUNNING)]

        response = await api_client.get(BASE, params={"owner_type": "User", "owner_id": "42"})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["allowed_events"] == ["complete"]
        lifecycle.find_active_requests.assert_awaited_once_with("User", "42", None)


class TestRetry:
    """Tests for requeueing dead-lettered jobs."""

    async def test_retry_failed_export(self, api_client, lifecycle):
        request_id = uuid.uuid4()
        job_id = uuid.uuid4()
        lifecycle.retry_failed_jobs.return_value = [job_id]

        response = await api_client.post(f"{BASE}/{request_id}/retry")

        assert response.status_code == 200
        assert response.json() == {"request_id": str(request_id), "job_ids": [str(job_id)]}
        lifecycle.retry_failed_jobs.assert_awaited_once_with(request_id)

    async def test_nothing_to_retry(self, api_client, lifecycle):
        request_id = uuid.uuid4()
        lifecycle.retry_failed_jobs.side_effect = NoFailedJobsError(request_id)

        response = await api_client.post(f"{BASE}/{request_id}/retry")

        assert response.status_code == 409
        assert response.json()["error"] == "no_failed_jobs"


class TestErrorResponses:
    """Tests for the API error types."""

    def test_build_error_response(self):
        response = build_error_response("conflict", "Nope", 409, {"a": 1})
        assert response.status_code == 409

    def test_error_types(self):
        assert NotFoundError("Portability request", "x").status_code == 404
        assert ConflictError("Nope").error == "invalid_transition"
        error = ValidationAPIError("bad", {"owner_id": ["not_unique"]})
        assert error.detail == {"errors": {"owner_id": ["not_unique"]}}
