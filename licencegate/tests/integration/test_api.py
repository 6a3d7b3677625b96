from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from licencegate.apps.api.main import create_app
from licencegate.core.config import get_settings
from licencegate.services.notifications.dispatcher import NotificationDispatcher
from licencegate.tests.utils.world import TODAY, FakeClock, RecordingEnqueue, SlowStore, seed_world


APPROVER_HEADERS = {"X-Actor-Id": "qa-anna", "X-Actor-Roles": "QAManager", "X-Calling-System": "d365"}


def _payload(*lines: tuple[str, str, str], external_id: str = "SO-2000", **extra) -> dict:
    body = {
        "external_id": external_id,
        "customer_account": "C001",
        "customer_data_area": "nlpd",
        "transaction_type": "Domestic",
        "transaction_date": TODAY.isoformat(),
        "lines": [{"substance_code": code, "quantity": quantity, "unit": unit} for code, quantity, unit in lines],
    }
    body.update(extra)
    return body


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok", "service": "licencegate"}
    assert body["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_validate_pass_and_fetch(client) -> None:
    response = await client.post(
        "/v1/transactions/validate",
        json=_payload(("MORPH", "10", "g")),
        headers={"X-Calling-System": "d365", "X-Request-Id": "req-abc"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "Pass"
    assert data["violations"] == []
    assert data["calling_system"] == "d365"
    assert response.headers["ETag"] == '"1"'
    assert response.json()["meta"]["request_id"] == "req-abc"

    fetched = await client.get(f"/v1/transactions/{data['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["external_id"] == "SO-2000"
    assert fetched.headers["ETag"] == '"1"'


@pytest.mark.asyncio
async def test_validate_reports_every_violation(client) -> None:
    response = await client.post(
        "/v1/transactions/validate",
        json=_payload(("MORPH", "1", "g"), ("EPHED", "2", "kg")),
    )
    data = response.json()["data"]
    assert data["status"] == "Pending"
    assert data["codes"] == ["LICENCE_MISSING"]
    violation = data["violations"][0]
    assert violation["line_number"] == 2
    assert violation["substance_code"] == "EPHED"
    assert violation["blocking"] is True


@pytest.mark.asyncio
async def test_malformed_request_is_rejected(client) -> None:
    empty = await client.post("/v1/transactions/validate", json=_payload())
    assert empty.status_code == 422
    assert empty.json()["error"]["code"] == "VALIDATION_ERROR"

    bad_type = await client.post("/v1/transactions/validate", json=_payload(("MORPH", "1", "g"), transaction_type="Teleport"))
    assert bad_type.status_code == 422

    missing_field = await client.post("/v1/transactions/validate", json={"external_id": "x"})
    assert missing_field.status_code == 422
    assert "errors" in missing_field.json()["error"]["details"]


@pytest.mark.asyncio
async def test_unknown_customer_is_a_failed_verdict(client) -> None:
    response = await client.post(
        "/v1/transactions/validate", json=_payload(("MORPH", "1", "g"), customer_account="C404")
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "Failed"
    assert response.json()["data"]["codes"] == ["CUSTOMER_NOT_FOUND"]


@pytest.mark.asyncio
async def test_override_flow(client) -> None:
    created = await client.post("/v1/transactions/validate", json=_payload(("EPHED", "1", "kg")))
    transaction_id = created.json()["data"]["id"]

    pending = await client.get("/v1/transactions", params={"status": "Pending"})
    assert [row["id"] for row in pending.json()["data"]] == [transaction_id]

    body = {"reason_code": "LicenceRenewalInProgress", "justification": "Renewal filed with Farmatec on 2026-02-20"}
    forbidden = await client.post(
        f"/v1/transactions/{transaction_id}/override/approve",
        json=body,
        headers={"X-Actor-Id": "sales-bob", "X-Actor-Roles": "SalesAdmin"},
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "UNAUTHORIZED"

    short = await client.post(
        f"/v1/transactions/{transaction_id}/override/approve",
        json={**body, "justification": "too short"},
        headers=APPROVER_HEADERS,
    )
    assert short.status_code == 422

    stale = await client.post(
        f"/v1/transactions/{transaction_id}/override/approve",
        json=body,
        headers={**APPROVER_HEADERS, "If-Match": '"9"'},
    )
    assert stale.status_code == 409
    assert stale.json()["error"]["code"] == "CONCURRENCY_CONFLICT"
    assert stale.json()["error"]["details"]["current_version"] == "1"

    approved = await client.post(
        f"/v1/transactions/{transaction_id}/override/approve",
        json=body,
        headers={**APPROVER_HEADERS, "If-Match": '"1"'},
    )
    assert approved.status_code == 200
    assert approved.json()["data"]["status"] == "OverrideApproved"
    assert approved.json()["data"]["approver_id"] == "qa-anna"
    assert approved.headers["ETag"] == '"2"'

    again = await client.post(
        f"/v1/transactions/{transaction_id}/override/reject", json=body, headers=APPROVER_HEADERS
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_unknown_transaction_is_not_found(client) -> None:
    response = await client.get("/v1/transactions/nope")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_openapi_is_served_under_v1(client) -> None:
    response = await client.get("/v1/openapi.json")
    assert response.status_code == 200
    paths = response.json()["paths"]
    assert "/v1/transactions/validate" in paths
    assert "/v1/licences/{licence_id}" in paths


@pytest.mark.asyncio
async def test_validation_deadline_maps_to_gateway_timeout(monkeypatch) -> None:
    store = SlowStore(delay_s=1.0)
    await seed_world(store)
    monkeypatch.setattr(get_settings(), "evaluation_timeout_ms", 10)
    app = create_app(store=store, dispatcher=NotificationDispatcher(store, enqueue=RecordingEnqueue(), clock=FakeClock()))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as slow_client:
        response = await slow_client.post("/v1/transactions/validate", json=_payload(("MORPH", "1", "g")))

    assert response.status_code == 504
    assert response.json()["error"]["code"] == "TIMEOUT"
    assert await store.list_transactions() == []
