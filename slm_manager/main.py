import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config import AppSettings, load_settings
from .instance_store import DuplicateInstanceError, UnknownInstanceError
from .orchestrator import LocalModelOrchestrator
from .registry import BACKEND_CATALOG, ROLE_CATALOG, default_config_for
from .schemas import InferenceBackend, InstanceConfig, ModelRole


router = APIRouter()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> LocalModelOrchestrator:
    return request.app.state.orchestrator


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=True)}\n\n"


def _dump_config(config: InstanceConfig) -> Dict[str, Any]:
    return config.model_dump(mode="json")


def _parse_role(value: str) -> ModelRole:
    try:
        return ModelRole(value)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown role: {value}")


def _parse_backend(value: str) -> InferenceBackend:
    try:
        return InferenceBackend(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown backend: {value}")


def _require_instance(orch: LocalModelOrchestrator, instance_id: str) -> InstanceConfig:
    config = orch.store.get(instance_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return config


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/roles")
async def list_roles():
    return {"roles": [info.to_dict() for info in ROLE_CATALOG.values()]}


@router.get("/api/backends")
async def list_backends():
    return {"backends": [info.to_dict() for info in BACKEND_CATALOG.values()]}


@router.get("/api/instances")
async def list_instances(orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    return {
        "instances": [_dump_config(config) for config in orch.instances.values()],
        "statuses": {key: status.model_dump(mode="json") for key, status in orch.statuses.items()},
    }


@router.post("/api/instances")
async def create_instance(
    payload: Dict[str, Any] = Body(...),
    orch: LocalModelOrchestrator = Depends(get_orchestrator),
):
    raw_role = payload.get("role")
    if not raw_role:
        raise HTTPException(status_code=400, detail="role is required")
    try:
        role = ModelRole(str(raw_role))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {raw_role}")
    # Fields not supplied fall back to the role's defaults.
    base = default_config_for(role).model_dump()
    overrides = {k: v for k, v in payload.items() if v is not None}
    try:
        config = InstanceConfig.model_validate({**base, **overrides})
        created = await orch.add_instance(config)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))
    except DuplicateInstanceError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"instance": _dump_config(created)}


@router.get("/api/instances/by-role/{role}")
async def get_instance_for_role(role: str, orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    config = orch.get_instance(_parse_role(role))
    if config is None:
        raise HTTPException(status_code=404, detail="No enabled instance for role")
    return {"instance": _dump_config(config)}


@router.post("/api/instances/start-all")
async def start_all_instances(orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    started, failed = await orch.start_all()
    return {"started": started, "failed": failed}


@router.post("/api/instances/stop-all")
async def stop_all_instances(orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    await orch.stop_all()
    return {"ok": True}


@router.get("/api/instances/{instance_id}")
async def get_instance(instance_id: str, orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    config = _require_instance(orch, instance_id)
    status = orch.status_board.get(instance_id)
    return {"instance": _dump_config(config), "status": status.model_dump(mode="json") if status else None}


@router.put("/api/instances/{instance_id}")
async def update_instance(
    instance_id: str,
    payload: Dict[str, Any] = Body(...),
    orch: LocalModelOrchestrator = Depends(get_orchestrator),
):
    current = _require_instance(orch, instance_id)
    if payload.get("id") not in (None, instance_id):
        raise HTTPException(status_code=400, detail="Instance id mismatch")
    merged = {**current.model_dump(), **payload, "id": instance_id}
    try:
        config = InstanceConfig.model_validate(merged)
        updated = await orch.update_instance(config)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))
    except UnknownInstanceError:
        raise HTTPException(status_code=404, detail="Instance not found")
    return {"instance": _dump_config(updated), "running": orch.supervisor.is_tracked(instance_id)}


@router.delete("/api/instances/{instance_id}")
async def delete_instance(instance_id: str, orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    removed = await orch.remove_instance(instance_id)
    if removed is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return {"ok": True}


@router.post("/api/instances/{instance_id}/start")
async def start_instance(instance_id: str, orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    _require_instance(orch, instance_id)
    ok = await orch.start(instance_id)
    return {"ok": ok}


@router.post("/api/instances/{instance_id}/stop")
async def stop_instance(instance_id: str, orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    _require_instance(orch, instance_id)
    await orch.stop(instance_id)
    status = orch.status_board.get(instance_id)
    return {"ok": True, "status": status.model_dump(mode="json") if status else None}


@router.get("/api/statuses")
async def list_statuses(orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    return {"statuses": {key: status.model_dump(mode="json") for key, status in orch.statuses.items()}}


@router.get("/api/models")
async def list_discovered(orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    return {
        "discovering": orch.is_discovering,
        "models": [model.model_dump(mode="json") for model in orch.discovered_models],
    }


@router.post("/api/models/discover")
async def discover_models(orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    models = await orch.discover_installed_models()
    return {"models": [model.model_dump(mode="json") for model in models]}


@router.get("/api/models/search")
async def search_models(
    q: str = "",
    backend: str = InferenceBackend.MLX.value,
    orch: LocalModelOrchestrator = Depends(get_orchestrator),
):
    results = await orch.search_models(q, _parse_backend(backend))
    return {"models": [model.model_dump(mode="json") for model in results]}


@router.get("/api/logs")
async def get_logs(tag: Optional[str] = None, orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    return {"logs": [entry.to_dict() for entry in orch.log_buffer.snapshot(tag)]}


@router.delete("/api/logs")
async def clear_logs(orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    orch.clear_logs()
    return {"ok": True}


@router.get("/events")
async def stream_events(orch: LocalModelOrchestrator = Depends(get_orchestrator)):
    async def event_generator():
        queue = orch.bus.subscribe_queue()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            orch.bus.unsubscribe_queue(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    orchestrator: Optional[LocalModelOrchestrator] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.orchestrator.startup()
        try:
            yield
        finally:
            await app.state.orchestrator.shutdown()

    app = FastAPI(title="SLM Manager", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator or LocalModelOrchestrator(settings)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("SLM_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "slm_manager.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
