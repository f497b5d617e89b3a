import httpx
import pytest
import respx
from asgi_lifespan import LifespanManager


@pytest.mark.asyncio
async def test_catalog_routes(client):
    roles = (await client.get("/api/roles")).json()["roles"]
    assert len(roles) == 10
    coder = next(role for role in roles if role["id"] == "code_assistant")
    assert coder["default_port"] == 8000
    assert coder["display_name"] == "Code Assistant"

    backends = (await client.get("/api/backends")).json()["backends"]
    assert {backend["id"] for backend in backends} == {"mlx", "vllm", "ollama", "llama_cpp", "exllamav2"}
    assert all("available" in backend for backend in backends)


@pytest.mark.asyncio
async def test_list_instances_has_bootstrap_defaults(client):
    res = await client.get("/api/instances")
    assert res.status_code == 200
    data = res.json()
    assert sorted(inst["role"] for inst in data["instances"]) == ["code_assistant", "model_router"]
    assert data["statuses"] == {}


@pytest.mark.asyncio
async def test_create_instance_fills_role_defaults(client):
    res = await client.post("/api/instances", json={"role": "embedder", "backend": "llama_cpp"})
    assert res.status_code == 200
    inst = res.json()["instance"]
    assert inst["port"] == 8012
    assert inst["model"] == "nomic-ai/nomic-embed-text-v1.5"
    assert inst["backend"] == "llama_cpp"
    assert inst["auto_start"] is False

    by_role = await client.get("/api/instances/by-role/embedder")
    assert by_role.status_code == 200
    assert by_role.json()["instance"]["id"] == inst["id"]


@pytest.mark.asyncio
async def test_create_instance_validation(client):
    assert (await client.post("/api/instances", json={})).status_code == 400
    assert (await client.post("/api/instances", json={"role": "wizard"})).status_code == 400
    bad_port = await client.post("/api/instances", json={"role": "custom", "port": 70000})
    assert bad_port.status_code == 422
    assert bad_port.json()["detail"][0]["loc"] == ["port"]

    first = await client.post("/api/instances", json={"role": "custom", "id": "fixed"})
    assert first.status_code == 200
    dup = await client.post("/api/instances", json={"role": "custom", "id": "fixed"})
    assert dup.status_code == 409


@pytest.mark.asyncio
async def test_by_role_errors(client):
    assert (await client.get("/api/instances/by-role/reasoner")).status_code == 404
    assert (await client.get("/api/instances/by-role/wizard")).status_code == 404


@pytest.mark.asyncio
async def test_start_stop_cycle(client):
    created = (await client.post("/api/instances", json={"role": "summarizer", "model": "org/Sum-4bit"})).json()
    instance_id = created["instance"]["id"]

    started = await client.post(f"/api/instances/{instance_id}/start")
    assert started.json() == {"ok": True}
    assert client.spawner.calls[-1][:5] == ["python3", "-m", "mlx_lm.server", "--model", "org/Sum-4bit"]

    detail = (await client.get(f"/api/instances/{instance_id}")).json()
    assert detail["instance"]["id"] == instance_id

    stopped = await client.post(f"/api/instances/{instance_id}/stop")
    body = stopped.json()
    assert body["ok"] is True
    assert body["status"]["running"] is False
    assert client.spawner.alive() == []

    statuses = (await client.get("/api/statuses")).json()["statuses"]
    assert statuses[instance_id]["running"] is False


@pytest.mark.asyncio
async def test_unknown_instance_routes_404(client):
    assert (await client.get("/api/instances/nope")).status_code == 404
    assert (await client.post("/api/instances/nope/start")).status_code == 404
    assert (await client.post("/api/instances/nope/stop")).status_code == 404
    assert (await client.put("/api/instances/nope", json={"port": 9000})).status_code == 404
    assert (await client.delete("/api/instances/nope")).status_code == 404


@pytest.mark.asyncio
async def test_update_instance(client):
    created = (await client.post("/api/instances", json={"role": "reasoner"})).json()["instance"]
    instance_id = created["id"]
    await client.post(f"/api/instances/{instance_id}/start")

    res = await client.put(f"/api/instances/{instance_id}", json={"port": 8101})

    assert res.status_code == 200
    body = res.json()
    assert body["instance"]["port"] == 8101
    assert body["running"] is True
    assert client.spawner.calls[-1][-1] == "8101"
    assert len(client.spawner.alive()) == 1

    mismatch = await client.put(f"/api/instances/{instance_id}", json={"id": "other"})
    assert mismatch.status_code == 400
    invalid = await client.put(f"/api/instances/{instance_id}", json={"port": 0})
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_delete_instance(client):
    created = (await client.post("/api/instances", json={"role": "reasoner"})).json()["instance"]
    instance_id = created["id"]
    await client.post(f"/api/instances/{instance_id}/start")

    res = await client.delete(f"/api/instances/{instance_id}")

    assert res.json() == {"ok": True}
    assert client.spawner.alive() == []
    assert (await client.get(f"/api/instances/{instance_id}")).status_code == 404


@pytest.mark.asyncio
async def test_start_all_and_stop_all(client):
    res = await client.post("/api/instances/start-all")
    assert res.json() == {"started": 2, "failed": 0}
    assert len(client.spawner.alive()) == 2

    res = await client.post("/api/instances/stop-all")
    assert res.json() == {"ok": True}
    assert client.spawner.alive() == []


@pytest.mark.asyncio
async def test_logs_routes(client):
    orch = client.orchestrator
    orch.log_buffer.append("[Reasoner] warming up")
    orch.log_buffer.append("[Summarizer] ready")

    everything = (await client.get("/api/logs")).json()["logs"]
    assert [entry["message"] for entry in everything][-2:] == ["[Reasoner] warming up", "[Summarizer] ready"]

    tagged = (await client.get("/api/logs", params={"tag": "Reasoner"})).json()["logs"]
    assert [entry["message"] for entry in tagged] == ["[Reasoner] warming up"]

    assert (await client.delete("/api/logs")).json() == {"ok": True}
    assert (await client.get("/api/logs")).json()["logs"] == []


@pytest.mark.asyncio
async def test_models_routes(client, monkeypatch):
    orch = client.orchestrator

    async def discover():
        return []

    monkeypatch.setattr(orch.discovery, "discover_installed", discover)
    res = await client.post("/api/models/discover")
    assert res.json() == {"models": []}
    listing = (await client.get("/api/models")).json()
    assert listing == {"discovering": False, "models": []}


@pytest.mark.asyncio
async def test_search_route(app_factory):
    async with httpx.AsyncClient() as hub_client:
        app, _ = app_factory(http_client=hub_client)
        async with LifespanManager(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as api:
                with respx.mock(assert_all_called=False) as mock:
                    route = mock.get("http://hub.test/api/models").mock(
                        return_value=httpx.Response(200, json=[{"id": "mlx-community/Qwen2.5-7B-Instruct-4bit"}])
                    )
                    res = await api.get("/api/models/search", params={"q": "qwen", "backend": "mlx"})
                    short = await api.get("/api/models/search", params={"q": "qw"})
                    bad = await api.get("/api/models/search", params={"q": "qwen", "backend": "tpu"})

    assert res.status_code == 200
    models = res.json()["models"]
    assert models[0]["id"] == "mlx-community/Qwen2.5-7B-Instruct-4bit"
    assert models[0]["recommended_roles"] == ["summarizer", "task_classifier"]
    assert route.call_count == 1
    assert short.json() == {"models": []}
    assert bad.status_code == 400
