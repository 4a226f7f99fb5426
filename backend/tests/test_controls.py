"""Control Catalog endpoints: listing, frameworks, manual entry and deletion."""
import pytest
from httpx import AsyncClient

API = "/api/v1/controls"


@pytest.mark.asyncio
async def test_list_controls_ordered(client: AsyncClient, make_controls):
    await make_controls("ISO 27001", [("A.8.1", "Asset inventory"), ("A.5.1", "Policies")])

    r = await client.get(f"{API}/", params={"framework": "ISO 27001"})
    assert r.status_code == 200
    assert [c["control_id"] for c in r.json()] == ["A.5.1", "A.8.1"]


@pytest.mark.asyncio
async def test_list_controls_requires_framework(client: AsyncClient):
    r = await client.get(f"{API}/")
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_list_controls_tenant_scope(client: AsyncClient, make_controls):
    await make_controls("ISO 27001", [("A.5.1", "Policies")])
    await make_controls("ISO 27001", [("X.1", "Tenant extension")], client_id=9)

    r = await client.get(f"{API}/", params={"framework": "ISO 27001"})
    assert [c["control_id"] for c in r.json()] == ["A.5.1"]

    r = await client.get(f"{API}/", params={"framework": "ISO 27001", "client_id": 9})
    assert [c["control_id"] for c in r.json()] == ["A.5.1", "X.1"]


@pytest.mark.asyncio
async def test_list_frameworks(client: AsyncClient, seed_frameworks, make_controls):
    await make_controls("Internal", [("INT-1", "Tenant policy")], client_id=2)

    r = await client.get(f"{API}/frameworks")
    assert r.json() == ["ISO 27001", "NIST CSF", "SOC2"]

    r = await client.get(f"{API}/frameworks", params={"client_id": 2})
    assert r.json() == ["ISO 27001", "Internal", "NIST CSF", "SOC2"]


@pytest.mark.asyncio
async def test_create_control(client: AsyncClient):
    body = {"control_id": "A.5.1", "name": "Policies", "framework": "ISO 27001", "category": "Organizational"}
    r = await client.post(f"{API}/", json=body)
    assert r.status_code == 201
    data = r.json()
    assert data["id"] > 0
    assert data["client_id"] is None
    assert data["category"] == "Organizational"

    dup = await client.post(f"{API}/", json=body)
    assert dup.status_code == 409
    assert dup.json()["detail"]["existing_id"] == data["id"]

    # same code in a tenant scope is a different control
    r = await client.post(f"{API}/", json={**body, "client_id": 4})
    assert r.status_code == 201


@pytest.mark.asyncio
async def test_create_control_validation(client: AsyncClient):
    r = await client.post(f"{API}/", json={"control_id": "", "name": "x", "framework": "ISO"})
    assert r.status_code == 422

    r = await client.post(f"{API}/", json={"control_id": "A.1", "name": "  ", "framework": "ISO"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_delete_control_referenced(client: AsyncClient, seed_frameworks):
    iso, soc2 = seed_frameworks["iso"], seed_frameworks["soc2"]
    r = await client.post("/api/v1/control-mappings/", json={
        "source_control_id": iso[0].id, "target_control_id": soc2[0].id,
    })
    assert r.status_code == 201

    r = await client.delete(f"{API}/{iso[0].id}")
    assert r.status_code == 409

    r = await client.delete(f"{API}/{iso[0].id}", params={"cascade": "true"})
    assert r.status_code == 200
    assert r.json() == {"id": iso[0].id, "mappings_deleted": 1}

    r = await client.get("/api/v1/control-mappings/")
    assert r.json() == []


@pytest.mark.asyncio
async def test_delete_control_unreferenced_and_missing(client: AsyncClient, seed_frameworks):
    nist = seed_frameworks["nist"][0]

    r = await client.delete(f"{API}/{nist.id}")
    assert r.status_code == 200
    assert r.json()["mappings_deleted"] == 0

    r = await client.delete(f"{API}/{nist.id}")
    assert r.status_code == 404
