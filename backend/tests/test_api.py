"""End-to-end HTTP tests for the pallet, systems and location routers."""

import pytest

from tests.conftest import IN_DEBUG, RMA_VID, make_ppid


async def register(client, headers, tag, serial, to_rma=False):
    resp = await client.post("/api/v1/systems", json={"service_tag": tag}, headers=headers)
    assert resp.status_code == 201, resp.text
    resp = await client.patch(
        f"/api/v1/systems/{tag}/ppid", json={"ppid": make_ppid(serial)}, headers=headers
    )
    assert resp.status_code == 200, resp.text
    if to_rma:
        resp = await client.patch(
            f"/api/v1/systems/{tag}/location",
            json={"to_location_id": RMA_VID, "note": "failed L10"},
            headers=headers,
        )
        assert resp.status_code == 200, resp.text
        return resp.json()
    return None


@pytest.mark.api
@pytest.mark.asyncio
class TestHealthAndAuth:

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_ready(self, client):
        resp = await client.get("/health/ready")
        assert resp.status_code == 200
        assert resp.json()["checks"]["database"] == "ok"

    async def test_mutations_need_a_token(self, client):
        resp = await client.post(
            "/api/v1/pallets", json={"part_number": "X1234", "factory_code": "MX"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "HTTP_401"

    async def test_garbage_token(self, client):
        resp = await client.post(
            "/api/v1/pallets",
            json={"part_number": "X1234", "factory_code": "MX"},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401


@pytest.mark.api
@pytest.mark.asyncio
class TestPalletEndpoints:

    async def test_create_and_fetch(self, client, auth_headers):
        resp = await client.post(
            "/api/v1/pallets",
            json={"part_number": "X1234", "factory_code": "MX"},
            headers=auth_headers,
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "open"
        assert body["locked"] is False
        assert body["units"] == []

        resp = await client.get(f"/api/v1/pallets/{body['pallet_number']}")
        assert resp.status_code == 200
        assert resp.json()["factory_code"] == "MX"

    async def test_unknown_pallet_error_body(self, client):
        resp = await client.get("/api/v1/pallets/PAL-NOPE")
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["details"] == {"resource": "Pallet", "identifier": "PAL-NOPE"}

    async def test_full_lifecycle(self, client, auth_headers):
        moved = await register(client, auth_headers, "API001", 1, to_rma=True)
        number = moved["pallet_number"]
        assert moved["note"] == f"failed L10 - added to {number}"

        resp = await client.patch(
            f"/api/v1/pallets/{number}/lock", json={"locked": True}, headers=auth_headers
        )
        assert resp.status_code == 200
        assert resp.json()["locked_by"] == "user-alice"

        # Locked pallet pins its units
        resp = await client.patch(
            "/api/v1/systems/API001/location",
            json={"to_location_id": IN_DEBUG, "note": "retest"},
            headers=auth_headers,
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "INVALID_STATE"

        resp = await client.post(
            f"/api/v1/pallets/{number}/release",
            json={"doa_number": "DOA00001"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        released = resp.json()
        assert released["status"] == "released"
        assert released["locked"] is False
        assert [u["service_tag"] for u in released["units"]] == ["API001"]
        assert released["units"][0]["removed_at"] == released["released_at"]

        # Snapshot is stable after release
        resp = await client.get(f"/api/v1/pallets/{number}")
        assert [u["service_tag"] for u in resp.json()["units"]] == ["API001"]

        resp = await client.post(
            f"/api/v1/pallets/{number}/release",
            json={"doa_number": "DOA00002"},
            headers=auth_headers,
        )
        assert resp.status_code == 409

    async def test_release_short_doa(self, client, auth_headers):
        moved = await register(client, auth_headers, "API010", 10, to_rma=True)

        resp = await client.post(
            f"/api/v1/pallets/{moved['pallet_number']}/release",
            json={"doa_number": "DOA"},
            headers=auth_headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_INPUT"

    async def test_list_with_filters(self, client, auth_headers):
        await register(client, auth_headers, "API020", 20, to_rma=True)
        await client.post(
            "/api/v1/pallets",
            json={"part_number": "Y5678", "factory_code": "A1"},
            headers=auth_headers,
        )

        resp = await client.get(
            "/api/v1/pallets",
            params={
                "filters": '{"op": "AND", "conditions": '
                '[{"field": "factory", "op": "=", "values": ["MX"]}]}',
            },
        )
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] == 1
        assert page["items"][0]["units"][0]["service_tag"] == "API020"

        resp = await client.get("/api/v1/pallets", params={"filters": "{oops"})
        assert resp.status_code == 400

    async def test_move_between_pallets(self, client, auth_headers):
        moved = await register(client, auth_headers, "API030", 30, to_rma=True)
        resp = await client.post(
            "/api/v1/pallets",
            json={"part_number": "X1234", "factory_code": "MX"},
            headers=auth_headers,
        )
        target = resp.json()["pallet_number"]

        resp = await client.post(
            "/api/v1/pallets/move",
            json={
                "service_tag": "API030",
                "from_pallet_number": moved["pallet_number"],
                "to_pallet_number": target,
            },
            headers=auth_headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["from_pallet"]["units"] == []
        assert [u["service_tag"] for u in body["to_pallet"]["units"]] == ["API030"]

    async def test_delete_is_admin_only(self, client, auth_headers, admin_headers):
        resp = await client.post(
            "/api/v1/pallets",
            json={"part_number": "X1234", "factory_code": "MX"},
            headers=auth_headers,
        )
        number = resp.json()["pallet_number"]

        resp = await client.delete(f"/api/v1/pallets/{number}", headers=auth_headers)
        assert resp.status_code == 403

        resp = await client.delete(f"/api/v1/pallets/{number}", headers=admin_headers)
        assert resp.status_code == 200

        resp = await client.get(f"/api/v1/pallets/{number}")
        assert resp.status_code == 404


@pytest.mark.api
@pytest.mark.asyncio
class TestSystemEndpoints:

    async def test_unit_detail(self, client, auth_headers):
        await register(client, auth_headers, "SYS001", 1, to_rma=True)

        resp = await client.get("/api/v1/systems/SYS001")
        assert resp.status_code == 200
        body = resp.json()
        assert body["location"]["name"] == "RMA VID"
        assert body["factory_code"] == "MX"
        assert body["part_number"] == "X1234"
        assert body["added_by"] == "alice"
        assert body["pallet_number"].startswith("PAL-MX-X1234-")

    async def test_history_and_undo(self, client, auth_headers, bob_headers):
        await register(client, auth_headers, "SYS010", 2)
        await client.patch(
            "/api/v1/systems/SYS010/location",
            json={"to_location_id": IN_DEBUG, "note": "no post"},
            headers=auth_headers,
        )

        resp = await client.get("/api/v1/systems/SYS010/history")
        assert [e["to_location"] for e in resp.json()] == ["In Debug - Wistron", "Processed"]

        resp = await client.delete("/api/v1/systems/SYS010/history/last", headers=bob_headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

        resp = await client.delete("/api/v1/systems/SYS010/history/last", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["new_location_id"] == 1

        resp = await client.delete("/api/v1/systems/SYS010/history/last", headers=auth_headers)
        assert resp.status_code == 409

    async def test_location_change_requires_note(self, client, auth_headers):
        await register(client, auth_headers, "SYS020", 3)

        resp = await client.patch(
            "/api/v1/systems/SYS020/location",
            json={"to_location_id": IN_DEBUG},
            headers=auth_headers,
        )
        assert resp.status_code == 400

    async def test_rma_without_ppid(self, client, auth_headers):
        await client.post("/api/v1/systems", json={"service_tag": "SYS030"}, headers=auth_headers)

        resp = await client.patch(
            "/api/v1/systems/SYS030/location",
            json={"to_location_id": RMA_VID, "note": "rma"},
            headers=auth_headers,
        )
        assert resp.status_code == 400
        assert "Update PPID first" in resp.json()["error"]["message"]

    async def test_bad_ppid(self, client, auth_headers):
        await client.post("/api/v1/systems", json={"service_tag": "SYS040"}, headers=auth_headers)

        resp = await client.patch(
            "/api/v1/systems/SYS040/ppid", json={"ppid": "short"}, headers=auth_headers
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid PPID format"

    async def test_snapshot(self, client, auth_headers):
        await register(client, auth_headers, "SYS050", 5)

        resp = await client.get(
            "/api/v1/systems/snapshot",
            params={"date": "2999-01-01", "includeNote": True, "noCache": True},
        )
        assert resp.status_code == 200
        rows = resp.json()
        assert [(r["service_tag"], r["location"]) for r in rows] == [("SYS050", "Processed")]
        assert rows[0]["note"] == "Added to system"

        resp = await client.get("/api/v1/systems/snapshot", params={"date": "2000-01-01"})
        assert resp.json() == []

        resp = await client.get("/api/v1/systems/snapshot", params={"date": "yesterday"})
        assert resp.status_code == 400

    async def test_list_units(self, client, auth_headers):
        for i in range(3):
            await client.post(
                "/api/v1/systems", json={"service_tag": f"LIST{i}"}, headers=auth_headers
            )

        resp = await client.get("/api/v1/systems", params={"page_size": 2})
        page = resp.json()
        assert page["total"] == 3
        assert [u["service_tag"] for u in page["items"]] == ["LIST0", "LIST1"]

        resp = await client.get("/api/v1/systems", params={"all": True})
        assert len(resp.json()["items"]) == 3


@pytest.mark.api
@pytest.mark.asyncio
class TestLocationEndpoints:

    async def test_catalog(self, client):
        resp = await client.get("/api/v1/locations")
        assert resp.status_code == 200
        rma = [loc["name"] for loc in resp.json() if loc["is_rma"]]
        assert rma == ["RMA VID", "RMA PID", "RMA CID"]

    async def test_next_locations(self, client):
        resp = await client.get("/api/v1/locations/1/next")
        assert [loc["name"] for loc in resp.json()] == ["In Debug - Wistron"]

    async def test_location_history(self, client, auth_headers):
        await register(client, auth_headers, "LOC001", 1)
        await client.patch(
            "/api/v1/systems/LOC001/location",
            json={"to_location_id": IN_DEBUG, "note": "bench"},
            headers=auth_headers,
        )

        resp = await client.get("/api/v1/locations/1/history")
        assert resp.json()["total"] == 2

        resp = await client.get(f"/api/v1/locations/{IN_DEBUG}/history")
        assert resp.json()["total"] == 1

        resp = await client.get("/api/v1/locations/999/history")
        assert resp.status_code == 404
