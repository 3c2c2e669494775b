"""Tests for farm CRUD, grid configuration, revisions and ownership."""

import pytest
from httpx import AsyncClient
from sqlalchemy import select, update
from sqlalchemy.orm.exc import StaleDataError

from farmgrid.models import Farm


@pytest.mark.api
@pytest.mark.asyncio
class TestFarmCrud:

    async def test_create_uses_default_grid(self, client, auth_headers, test_farm):
        assert test_farm["grid_rows"] == 4
        assert test_farm["grid_cols"] == 4
        assert test_farm["plot_size"] == 0.15625
        assert [p["plot_number"] for p in test_farm["plots"]] == list(range(1, 17))
        assert test_farm["description"] == (
            "Wheat and mustard rotation Grid: 4x4, PlotSize: 0.15625"
        )
        assert test_farm["location"]["coordinates"] == {
            "latitude": 28.8955, "longitude": 79.0974,
        }
        assert test_farm["revision"] == 1

    async def test_create_with_plots(self, client, auth_headers, farm_payload):
        payload = farm_payload(
            description="Grid: 1x2, PlotSize: 0.5",
            total_size=1.0,
            plots=[
                {"plot_number": 1, "size": 0.5, "crop": {"name": "Onion", "stage": "planted"}},
                {"plot_number": 2, "size": 0.5},
            ],
        )
        response = await client.post("/api/farms/", json=payload, headers=auth_headers)
        assert response.status_code == 201, response.text
        farm = response.json()
        assert (farm["grid_rows"], farm["grid_cols"]) == (1, 2)
        assert farm["plots"][0]["crop"] == {"name": "Onion", "stage": "planted", "health": "good"}
        assert farm["plots"][1]["irrigation"]["type"] == "manual"

    async def test_create_rejects_oversized_plots(self, client, auth_headers, farm_payload):
        payload = farm_payload(
            total_size=1.0,
            plots=[{"plot_number": n, "size": 0.5} for n in (1, 2, 3)],
        )
        response = await client.post("/api/farms/", json=payload, headers=auth_headers)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "PLOT_AREA_EXCEEDS_FARM"

    async def test_create_rejects_duplicate_plot_numbers(self, client, auth_headers, farm_payload):
        payload = farm_payload(plots=[{"plot_number": 1, "size": 0.5}] * 2)
        response = await client.post("/api/farms/", json=payload, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    async def test_create_validation(self, client, auth_headers, farm_payload):
        response = await client.post(
            "/api/farms/", json=farm_payload(total_size=0.05, soil_type="gravel"),
            headers=auth_headers,
        )
        assert response.status_code == 422
        fields = {e["field"] for e in response.json()["error"]["details"]["errors"]}
        assert "body -> total_size" in fields
        assert "body -> soil_type" in fields

    async def test_list_and_get(self, client, auth_headers, test_farm):
        listed = await client.get("/api/farms/", headers=auth_headers)
        assert [f["id"] for f in listed.json()] == [test_farm["id"]]

        fetched = await client.get(f"/api/farms/{test_farm['id']}", headers=auth_headers)
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "Riverside Farm"

    async def test_other_owner_cannot_see_farm(self, client, other_headers, test_farm):
        response = await client.get(f"/api/farms/{test_farm['id']}", headers=other_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "FARM_NOT_FOUND"

        listed = await client.get("/api/farms/", headers=other_headers)
        assert listed.json() == []

    async def test_requires_token(self, client, test_farm):
        response = await client.get("/api/farms/")
        assert response.status_code == 401

        bad = await client.get("/api/farms/", headers={"Authorization": "Bearer nonsense"})
        assert bad.status_code == 401

    async def test_update_fields(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}",
            json={"name": "Riverside North", "soil_type": "clay", "description": "Renamed"},
            headers=auth_headers,
        )
        assert response.status_code == 200, response.text
        farm = response.json()
        assert farm["name"] == "Riverside North"
        assert farm["soil_type"] == "clay"
        # Stored shape is kept in the rewritten description
        assert farm["description"] == "Renamed Grid: 4x4, PlotSize: 0.15625"
        assert farm["revision"] == 2

    async def test_update_rejects_unknown_fields(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}", json={"owner_id": "someone-else"},
            headers=auth_headers,
        )
        assert response.status_code == 422

    async def test_update_description_pattern_syncs_columns(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}",
            json={"description": "Resurveyed Grid: 2x8, PlotSize: 0.15625"},
            headers=auth_headers,
        )
        farm = response.json()
        assert (farm["grid_rows"], farm["grid_cols"]) == (2, 8)

    async def test_update_description_plot_size_is_recalculated(
        self, client, auth_headers, test_farm
    ):
        response = await client.put(
            f"/api/farms/{test_farm['id']}",
            json={"description": "Resurveyed Grid: 4x4, PlotSize: 99"},
            headers=auth_headers,
        )
        assert response.status_code == 200, response.text
        farm = response.json()
        assert farm["plot_size"] == 0.15625
        assert farm["description"] == "Resurveyed Grid: 4x4, PlotSize: 0.15625"

        grid = await client.get(f"/api/farms/{test_farm['id']}/grid", headers=auth_headers)
        assert grid.json()["plot_size"] == 0.15625

    async def test_update_description_shape_must_fit_plots(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}",
            json={"description": "Grid: 5x5, PlotSize: 0.1"},
            headers=auth_headers,
        )
        assert response.status_code == 200, response.text
        farm = response.json()
        assert (farm["grid_rows"], farm["grid_cols"]) == (4, 4)
        assert farm["description"] == "Default farm - Grid: 4x4, PlotSize: 0.15625"

    async def test_create_rewrites_stale_plot_size(self, client, auth_headers, farm_payload):
        payload = farm_payload(
            description="Two beds Grid: 1x2, PlotSize: 7",
            total_size=1.0,
            plots=[{"plot_number": n, "size": 0.5} for n in (1, 2)],
        )
        response = await client.post("/api/farms/", json=payload, headers=auth_headers)
        assert response.status_code == 201, response.text
        farm = response.json()
        assert farm["plot_size"] == 0.5
        assert farm["description"] == "Two beds Grid: 1x2, PlotSize: 0.5"

    async def test_update_mismatched_description_without_stored_shape(
        self, client, auth_headers, test_farm
    ):
        farm_id = test_farm["id"]
        await client.put(
            f"/api/farms/{farm_id}",
            json={"plots": [{"plot_number": n, "size": 0.25} for n in range(1, 10)]},
            headers=auth_headers,
        )

        response = await client.put(
            f"/api/farms/{farm_id}",
            json={"description": "Orchard Grid: 2x2, PlotSize: 0.5"},
            headers=auth_headers,
        )
        farm = response.json()
        assert farm["grid_rows"] is None
        assert farm["description"] == "Orchard"

        grid = await client.get(f"/api/farms/{farm_id}/grid", headers=auth_headers)
        assert (grid.json()["rows"], grid.json()["source"]) == (3, "inferred")

    async def test_update_plots_with_other_shape_clears_columns(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}",
            json={
                "plots": [{"plot_number": n, "size": 0.25} for n in range(1, 10)],
                "description": "Nine plots",
            },
            headers=auth_headers,
        )
        assert response.status_code == 200, response.text
        farm = response.json()
        assert farm["grid_rows"] is None and farm["grid_cols"] is None
        assert farm["description"] == "Nine plots"

        grid = await client.get(f"/api/farms/{test_farm['id']}/grid", headers=auth_headers)
        assert grid.json() == {
            "rows": 3, "cols": 3, "plot_size": pytest.approx(2.5 / 9),
            "plot_count": 9, "source": "inferred",
        }

    async def test_shrinking_total_size_is_rejected(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}", json={"total_size": 1.0}, headers=auth_headers,
        )
        assert response.status_code == 422
        body = response.json()["error"]
        assert body["code"] == "PLOT_AREA_EXCEEDS_FARM"
        assert body["details"]["total_plot_area"] == 2.5

        unchanged = await client.get(f"/api/farms/{test_farm['id']}", headers=auth_headers)
        assert unchanged.json()["total_size"] == 2.5

    async def test_soft_delete(self, client, auth_headers, test_farm):
        response = await client.delete(f"/api/farms/{test_farm['id']}", headers=auth_headers)
        assert response.status_code == 204

        gone = await client.get(f"/api/farms/{test_farm['id']}", headers=auth_headers)
        assert gone.status_code == 404


@pytest.mark.api
@pytest.mark.asyncio
class TestGridConfiguration:

    async def test_get_grid(self, client, auth_headers, test_farm):
        response = await client.get(f"/api/farms/{test_farm['id']}/grid", headers=auth_headers)
        assert response.json() == {
            "rows": 4, "cols": 4, "plot_size": 0.15625, "plot_count": 16, "source": "structured",
        }

    async def test_resize_4x4_to_2x2_keeps_history(self, client, auth_headers, test_farm):
        farm_id = test_farm["id"]
        for number in (1, 4, 9):
            await client.put(
                f"/api/farms/{farm_id}/plots/{number}",
                json={
                    "crop": {"name": "Sugarcane", "stage": "growing", "health": "excellent"},
                    "activities": [{"type": "planting", "description": f"Planted setts {number}"}],
                },
                headers=auth_headers,
            )

        response = await client.put(
            f"/api/farms/{farm_id}/grid", json={"rows": 2, "cols": 2}, headers=auth_headers,
        )
        assert response.status_code == 200, response.text
        body = response.json()
        farm = body["farm"]

        assert [p["plot_number"] for p in farm["plots"]] == [1, 2, 3, 4]
        assert all(p["size"] == 0.625 for p in farm["plots"])
        assert body["grid"]["plot_size"] == 0.625
        assert body["kept_plot_numbers"] == [1, 2, 3, 4]
        assert body["dropped_plot_numbers"] == list(range(5, 17))
        assert farm["plots"][0]["crop"]["name"] == "Sugarcane"
        assert farm["plots"][0]["activities"][0]["description"] == "Planted setts 1"
        assert farm["plots"][3]["crop"]["name"] == "Sugarcane"
        assert farm["plots"][1]["crop"]["name"] == "Empty"
        assert farm["description"] == "Wheat and mustard rotation Grid: 2x2, PlotSize: 0.625"
        assert sum(p["size"] for p in farm["plots"]) == pytest.approx(farm["total_size"])

    async def test_resize_grows_and_changes_total(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}/grid",
            json={"rows": 5, "cols": 5, "total_size": 5.0},
            headers=auth_headers,
        )
        body = response.json()
        assert body["farm"]["total_size"] == 5.0
        assert len(body["farm"]["plots"]) == 25
        assert body["created_plot_numbers"] == list(range(17, 26))
        assert body["grid"]["plot_size"] == 0.2

    async def test_resize_validation(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}/grid", json={"rows": 0, "cols": 3},
            headers=auth_headers,
        )
        assert response.status_code == 422


@pytest.mark.api
@pytest.mark.asyncio
class TestRevisions:

    async def test_matching_if_match_is_accepted(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}/grid",
            json={"rows": 3, "cols": 3},
            headers={**auth_headers, "If-Match": '"1"'},
        )
        assert response.status_code == 200
        assert response.json()["farm"]["revision"] == 2

    async def test_stale_if_match_conflicts(self, client, auth_headers, test_farm):
        farm_id = test_farm["id"]
        await client.put(
            f"/api/farms/{farm_id}/plots/1", json={"crop": {"health": "fair"}},
            headers=auth_headers,
        )

        response = await client.put(
            f"/api/farms/{farm_id}/plots/bulk-clear",
            json={"plot_numbers": [1]},
            headers={**auth_headers, "If-Match": "1"},
        )
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "REVISION_CONFLICT"
        assert error["details"]["current_revision"] == 2

    async def test_malformed_if_match(self, client, auth_headers, test_farm):
        response = await client.put(
            f"/api/farms/{test_farm['id']}/plots/1",
            json={"crop": {"health": "fair"}},
            headers={**auth_headers, "If-Match": "yesterday"},
        )
        assert response.status_code == 400

    async def test_concurrent_write_raises_stale_data(self, session_factory, test_farm):
        async with session_factory() as session:
            farm = (
                await session.execute(select(Farm).where(Farm.id == test_farm["id"]))
            ).scalar_one()

            # Another writer saves first
            await session.execute(
                update(Farm)
                .where(Farm.id == farm.id)
                .values(revision=Farm.revision + 1)
                .execution_options(synchronize_session=False)
            )

            farm.plots = farm.plots[:1]
            with pytest.raises(StaleDataError):
                await session.flush()
            await session.rollback()
