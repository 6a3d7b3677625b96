from __future__ import annotations

import pytest


@pytest.mark.asyncio
async def test_licence_read_carries_etag(client) -> None:
    response = await client.get("/v1/licences/lic-cust-1")
    assert response.status_code == 200
    assert response.headers["ETag"] == '"1"'
    data = response.json()["data"]
    assert data["holder_kind"] == "customer"
    assert data["effective_status"] == "Valid"


@pytest.mark.asyncio
async def test_licence_patch_requires_if_match(client) -> None:
    response = await client.patch("/v1/licences/lic-cust-1", json={"status": "Suspended"})
    assert response.status_code == 428
    assert response.json()["error"]["code"] == "PRECONDITION_REQUIRED"


@pytest.mark.asyncio
async def test_second_writer_with_same_etag_conflicts(client) -> None:
    first = await client.patch(
        "/v1/licences/lic-cust-1",
        json={"expiry_date": "2031-06-30"},
        headers={"If-Match": '"1"', "X-Actor-Id": "qa-anna"},
    )
    assert first.status_code == 200
    assert first.headers["ETag"] == '"2"'

    second = await client.patch(
        "/v1/licences/lic-cust-1",
        json={"status": "Suspended"},
        headers={"If-Match": '"1"', "X-Actor-Id": "qa-piet"},
    )
    assert second.status_code == 409
    error = second.json()["error"]
    assert error["code"] == "CONCURRENCY_CONFLICT"
    assert error["details"]["expected_version"] == "1"
    assert error["details"]["current_version"] == "2"
    assert error["details"]["conflicting_fields"] == ["status"]
    assert second.headers["ETag"] == '"2"'

    current = await client.get("/v1/licences/lic-cust-1")
    assert current.json()["data"]["status"] == "Valid"
    assert current.json()["data"]["expiry_date"] == "2031-06-30"


@pytest.mark.asyncio
async def test_immutable_licence_fields_are_rejected(client) -> None:
    response = await client.patch("/v1/licences/lic-cust-1", json={"status": "Lapsed"}, headers={"If-Match": '"1"'})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_customer_suspension_blocks_next_validation(client) -> None:
    customer = await client.get("/v1/customers/cust-1")
    assert customer.status_code == 200
    etag = customer.headers["ETag"]

    patched = await client.patch(
        "/v1/customers/cust-1/compliance",
        json={"is_suspended": True, "suspension_reason": "IGJ inspection"},
        headers={"If-Match": etag},
    )
    assert patched.status_code == 200
    assert patched.json()["data"]["is_suspended"] is True

    verdict = await client.post(
        "/v1/transactions/validate",
        json={
            "external_id": "SO-3000",
            "customer_account": "C001",
            "customer_data_area": "nlpd",
            "transaction_type": "Domestic",
            "transaction_date": "2026-03-01",
            "lines": [{"substance_code": "MORPH", "quantity": "1", "unit": "g"}],
        },
    )
    assert "CUSTOMER_SUSPENDED" in verdict.json()["data"]["codes"]


@pytest.mark.asyncio
async def test_missing_records_are_not_found(client) -> None:
    assert (await client.get("/v1/licences/nope")).status_code == 404
    assert (await client.get("/v1/customers/nope")).status_code == 404
