"""Tests for the HTTP API: router management, subscriber operations, usage
queries and the mapping of service errors to status codes."""

import pytest


ROUTER_BODY = {
    "name": "Main",
    "host": "10.0.0.1",
    "username": "admin",
    "password": "secret",
    "isolate_profile": "isolir",
}


@pytest.fixture()
async def api_router_id(client) -> int:
    response = await client.post("/api/routers", json=ROUTER_BODY)
    assert response.status_code == 200
    return response.json()["id"]


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert "version" in response.json()


class TestRouterManagement:
    async def test_create_and_list(self, client, api_router_id):
        response = await client.get("/api/routers")
        assert response.status_code == 200
        routers = response.json()
        assert [r["id"] for r in routers] == [api_router_id]
        assert routers[0]["port"] == 8728
        assert "password" not in routers[0]
        assert routers[0]["telegram_configured"] is False

    async def test_create_requires_host(self, client):
        body = dict(ROUTER_BODY)
        del body["host"]
        response = await client.post("/api/routers", json=body)
        assert response.status_code == 422

    async def test_partial_update(self, client, api_router_id):
        response = await client.put(f"/api/routers/{api_router_id}", json={"name": "Branch"})
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Branch"
        assert data["host"] == "10.0.0.1"
        assert data["isolate_profile"] == "isolir"

    async def test_delete(self, client, api_router_id):
        response = await client.delete(f"/api/routers/{api_router_id}")
        assert response.status_code == 200
        response = await client.get(f"/api/routers/{api_router_id}")
        assert response.status_code == 404

    async def test_unknown_router_is_404(self, client):
        for response in (
            await client.get("/api/routers/999"),
            await client.put("/api/routers/999", json={"name": "x"}),
            await client.delete("/api/routers/999"),
            await client.get("/api/routers/999/ppp"),
            await client.post("/api/routers/999/sync"),
        ):
            assert response.status_code == 404
            assert "not found" in response.json()["detail"]

    async def test_connection_test(self, client, api_router_id, device):
        response = await client.post(f"/api/routers/{api_router_id}/test")
        assert response.json() == {"is_connected": True, "identity": "Core-RTR"}

        device.unreachable = True
        response = await client.post(f"/api/routers/{api_router_id}/test")
        assert response.json() == {"is_connected": False, "identity": None}

    async def test_profiles(self, client, api_router_id, device):
        device.add_secret_entry("alice", profile="10mbps")
        response = await client.get(f"/api/routers/{api_router_id}/profiles")
        assert response.json()["profiles"] == ["default", "10mbps"]

    async def test_sync_now(self, client, api_router_id, device):
        device.add_secret_entry("alice")
        device.login("alice", tx=100, rx=100)
        response = await client.post(f"/api/routers/{api_router_id}/sync")
        assert response.status_code == 200
        assert response.json()["logins"] == ["alice"]

        # Router name is refreshed from the system identity
        response = await client.get(f"/api/routers/{api_router_id}")
        assert response.json()["name"] == "Core-RTR"

    async def test_sync_now_unreachable_is_502(self, client, api_router_id, device):
        device.unreachable = True
        response = await client.post(f"/api/routers/{api_router_id}/sync")
        assert response.status_code == 502


class TestSubscribers:
    async def test_list_subscribers(self, client, api_router_id, device):
        device.add_secret_entry("alice", profile="10mbps")
        device.login("alice", tx=100, rx=200)
        response = await client.get(f"/api/routers/{api_router_id}/ppp")
        assert response.status_code == 200
        users = response.json()
        assert users[0]["name"] == "alice"
        assert users[0]["is_online"] is True
        assert users[0]["total_tx_bytes"] == 100
        assert users[0]["total_rx_bytes"] == 200

    async def test_list_subscribers_router_down_is_empty(self, client, api_router_id, device):
        device.unreachable = True
        response = await client.get(f"/api/routers/{api_router_id}/ppp")
        assert response.status_code == 200
        assert response.json() == []

    async def test_create_subscriber(self, client, api_router_id, device):
        body = {"name": "dave", "password": "pw", "profile": "10mbps", "comment": "Block C"}
        response = await client.post(f"/api/routers/{api_router_id}/ppp", json=body)
        assert response.status_code == 200
        assert device.secrets["dave"].profile == "10mbps"

        users = (await client.get(f"/api/routers/{api_router_id}/ppp")).json()
        assert [u["name"] for u in users] == ["dave"]
        assert users[0]["comment"] == "Block C"

    async def test_create_duplicate_subscriber_is_502(self, client, api_router_id, device):
        device.add_secret_entry("dave")
        body = {"name": "dave", "password": "pw", "profile": "default"}
        response = await client.post(f"/api/routers/{api_router_id}/ppp", json=body)
        assert response.status_code == 502

    async def test_set_comment(self, client, api_router_id, device):
        device.add_secret_entry("alice")
        response = await client.post(f"/api/routers/{api_router_id}/ppp/alice/comment", json={"comment": "Paid"})
        assert response.status_code == 200
        assert device.secrets["alice"].comment == "Paid"

        response = await client.post(f"/api/routers/{api_router_id}/ppp/nobody/comment", json={"comment": "x"})
        assert response.status_code == 404

    async def test_isolate_toggle(self, client, api_router_id, device):
        device.add_secret_entry("alice", profile="10mbps")
        response = await client.post(f"/api/routers/{api_router_id}/ppp/alice/isolate")
        assert response.status_code == 200
        assert response.json()["action"] == "isolate"

        response = await client.post(
            f"/api/routers/{api_router_id}/ppp/alice/isolate", json={"targetProfile": "20mbps"}
        )
        assert response.json()["action"] == "restore"
        assert device.secrets["alice"].profile == "20mbps"

    async def test_isolate_without_profile_is_400(self, client, api_router_id, device):
        await client.put(f"/api/routers/{api_router_id}", json={"isolate_profile": None})
        device.add_secret_entry("alice")
        response = await client.post(f"/api/routers/{api_router_id}/ppp/alice/isolate")
        assert response.status_code == 400

    async def test_coordinates(self, client, api_router_id, device):
        device.add_secret_entry("alice")
        await client.post(f"/api/routers/{api_router_id}/sync")

        response = await client.put(
            f"/api/routers/{api_router_id}/ppp/alice/coordinates", json={"latitude": -1.28, "longitude": 36.82}
        )
        assert response.status_code == 200

        users = (await client.get(f"/api/routers/{api_router_id}/ppp")).json()
        assert (users[0]["latitude"], users[0]["longitude"]) == (-1.28, 36.82)

    async def test_coordinates_validation(self, client, api_router_id):
        response = await client.put(
            f"/api/routers/{api_router_id}/ppp/alice/coordinates", json={"latitude": 100, "longitude": 0}
        )
        assert response.status_code == 422

    async def test_coordinates_for_unsynced_subscriber_is_404(self, client, api_router_id):
        response = await client.put(
            f"/api/routers/{api_router_id}/ppp/ghost/coordinates", json={"latitude": 1, "longitude": 1}
        )
        assert response.status_code == 404


class TestUsage:
    async def test_router_usage(self, client, api_router_id, device):
        device.add_secret_entry("alice")
        device.login("alice", tx=700, rx=900)
        await client.post(f"/api/routers/{api_router_id}/sync")
        device.logout("alice")
        await client.post(f"/api/routers/{api_router_id}/sync")

        response = await client.get(f"/api/usage/router/{api_router_id}")
        assert response.status_code == 200
        usage = response.json()
        assert usage[0]["secret_name"] == "alice"
        assert usage[0]["total_tx_bytes"] == 700
        assert usage[0]["recent_history"][0]["rx_bytes"] == 900

    async def test_user_usage(self, client, api_router_id, device):
        device.add_secret_entry("alice")
        device.login("alice", tx=5, rx=6)
        await client.post(f"/api/routers/{api_router_id}/sync")

        response = await client.get(f"/api/usage/router/{api_router_id}/user/alice")
        assert response.json()["total_rx_bytes"] == 6

        response = await client.get(f"/api/usage/router/{api_router_id}/user/nobody")
        assert response.json() == {"message": "No usage data found"}
