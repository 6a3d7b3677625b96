from __future__ import annotations

import pytest


RECLASSIFICATION = {
    "substance_code": "MORPH",
    "new_opium_act_list": "ListI",
    "new_precursor_category": "Category1",
    "effective_date": "2026-03-01",
    "regulatory_reference": "Stcrt. 2026-4411",
    "regulatory_authority": "Farmatec",
}


@pytest.mark.asyncio
async def test_reclassification_flow(client) -> None:
    created = await client.post("/v1/reclassifications", json=RECLASSIFICATION, headers={"X-Actor-Id": "compliance-eva"})
    assert created.status_code == 201
    body = created.json()["data"]
    assert body["status"] == "Pending"
    assert body["is_upgrade"] is True
    reclassification_id = body["id"]

    impact = await client.get(f"/v1/reclassifications/{reclassification_id}/impact")
    assert impact.status_code == 200
    assert impact.json()["data"]["flagged_count"] == 1
    # Preview never persists impacts.
    stored = await client.get(f"/v1/reclassifications/{reclassification_id}/customers")
    assert stored.json()["data"] == []

    processed = await client.post(f"/v1/reclassifications/{reclassification_id}/process")
    assert processed.status_code == 200
    assert processed.json()["data"]["reclassification"]["status"] == "Completed"

    again = await client.post(f"/v1/reclassifications/{reclassification_id}/process")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_STATE"

    customers = await client.get(f"/v1/reclassifications/{reclassification_id}/customers")
    rows = customers.json()["data"]
    assert [row["customer_id"] for row in rows] == ["cust-1"]
    assert rows[0]["requires_requalification"] is True

    requalified = await client.post(
        f"/v1/reclassifications/{reclassification_id}/customers/cust-1/requalify",
        headers={"If-Match": f'"{rows[0]["version"]}"'},
    )
    assert requalified.status_code == 200
    assert requalified.json()["data"]["requires_requalification"] is False


@pytest.mark.asyncio
async def test_classification_as_of(client) -> None:
    created = await client.post("/v1/reclassifications", json=RECLASSIFICATION)
    reclassification_id = created.json()["data"]["id"]
    await client.post(f"/v1/reclassifications/{reclassification_id}/process")

    before = await client.get("/v1/substances/MORPH/classification", params={"as_of": "2026-02-15"})
    after = await client.get("/v1/substances/MORPH/classification", params={"as_of": "2026-03-02"})
    assert before.json()["data"]["precursor_category"] == "None"
    assert after.json()["data"]["precursor_category"] == "Category1"


@pytest.mark.asyncio
async def test_unknown_substance_and_reclassification(client) -> None:
    missing_substance = await client.post("/v1/reclassifications", json={**RECLASSIFICATION, "substance_code": "NOPE"})
    assert missing_substance.status_code == 404
    missing = await client.get("/v1/reclassifications/nope")
    assert missing.status_code == 404
