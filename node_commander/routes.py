"""
Node Commander — Control API Routes
═══════════════════════════════════════════════════════════════
FastAPI router for the remote control plane:

  POST   /instances/create               accept + provision in background (202)
  DELETE /instances/{id}                 delete container, volume, record
  DELETE /instances/remove/{id}          same
  POST   /instances/redeploy/{id}
  POST   /instances/reinstall/{id}
  PUT    /instances/edit/{id}
  GET    /instances/state/{volumeId}     also /state/{volumeId}
  POST   /instances/purge/all
  GET    /instances                      runtime inventory
  GET    /instances/{id}
  POST   /instances/{id}/{action}        start|stop|restart|pause|unpause|kill
  GET    /stats                          host stats (?period=seconds)
  WS     /{logs|stats|exec}/{id}         telemetry channel

Errors are answered as {"message": "..."} with the error's status code.
Components live on app.state and are wired by main.create_app().
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import ValidationError

from .errors import AuthError, ConfigError, NodeCommanderError
from .models import EditRequest, PowerAction, WorkloadSpec
from .telemetry import TelemetryChannel

logger = logging.getLogger(__name__)

_basic = HTTPBasic(auto_error=False)


def require_auth(request: Request, credentials: Optional[HTTPBasicCredentials] = Depends(_basic)):
    settings = request.app.state.settings
    if credentials is not None and settings.node_key:
        user_ok = secrets.compare_digest(
            credentials.username.encode(), settings.node_username.encode()
        )
        key_ok = secrets.compare_digest(credentials.password.encode(), settings.node_key.encode())
        if user_ok and key_ok:
            return credentials.username
    raise AuthError("Unauthorized")


router = APIRouter()
api = APIRouter(dependencies=[Depends(require_auth)])


def _error(e: NodeCommanderError) -> JSONResponse:
    return JSONResponse({"message": str(e)}, status_code=e.status_code)


def _unexpected(what: str, e: Exception) -> JSONResponse:
    logger.exception(f"[API] {what}: {e}")
    return JSONResponse({"message": str(e)}, status_code=500)


async def _body(request: Request, model):
    try:
        data = await request.json()
    except ValueError:
        raise ConfigError("Request body is not valid JSON")
    if not isinstance(data, dict):
        raise ConfigError("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid request: {details}")


# ═══════════════════════════════════════════════════════════
# LIFECYCLE ENDPOINTS
# ═══════════════════════════════════════════════════════════

@api.post("/instances/create")
async def api_create(request: Request):
    try:
        spec = await _body(request, WorkloadSpec)
        record = await request.app.state.orchestrator.create(spec)
        return JSONResponse(
            {"message": "Deployment started", "volumeId": record.volume_id}, status_code=202
        )
    except NodeCommanderError as e:
        logger.warning(f"[API] Create rejected: {e}")
        return _error(e)
    except Exception as e:
        return _unexpected("Create", e)


@api.delete("/instances/{workload_id}")
@api.delete("/instances/remove/{workload_id}")
async def api_delete(workload_id: str, request: Request):
    try:
        return await request.app.state.orchestrator.delete(workload_id)
    except NodeCommanderError as e:
        logger.error(f"[API] Delete {workload_id}: {e}")
        return _error(e)
    except Exception as e:
        return _unexpected(f"Delete {workload_id}", e)


@api.post("/instances/redeploy/{workload_id}")
async def api_redeploy(workload_id: str, request: Request):
    try:
        spec = await _body(request, WorkloadSpec)
        record = await request.app.state.orchestrator.redeploy(workload_id, spec)
        return {
            "message": "Container redeployed successfully",
            "containerId": record.container_id,
            "volumeId": workload_id,
        }
    except NodeCommanderError as e:
        logger.error(f"[API] Redeploy {workload_id}: {e}")
        return _error(e)
    except Exception as e:
        return _unexpected(f"Redeploy {workload_id}", e)


@api.post("/instances/reinstall/{workload_id}")
async def api_reinstall(workload_id: str, request: Request):
    try:
        spec = await _body(request, WorkloadSpec)
        record = await request.app.state.orchestrator.reinstall(workload_id, spec)
        return {
            "message": "Container reinstalled successfully",
            "containerId": record.container_id,
            "volumeId": workload_id,
        }
    except NodeCommanderError as e:
        logger.error(f"[API] Reinstall {workload_id}: {e}")
        return _error(e)
    except Exception as e:
        return _unexpected(f"Reinstall {workload_id}", e)


@api.put("/instances/edit/{workload_id}")
async def api_edit(workload_id: str, request: Request):
    try:
        edit = await _body(request, EditRequest)
        return await request.app.state.orchestrator.edit(workload_id, edit)
    except NodeCommanderError as e:
        logger.error(f"[API] Edit {workload_id}: {e}")
        return _error(e)
    except Exception as e:
        return _unexpected(f"Edit {workload_id}", e)


@api.get("/instances/state/{volume_id}")
@api.get("/state/{volume_id}")
async def api_state(volume_id: str, request: Request):
    record = request.app.state.orchestrator.state(volume_id)
    return record.to_dict()


@api.post("/instances/purge/all")
async def api_purge(request: Request):
    try:
        removed = await request.app.state.orchestrator.purge()
        return {"message": "All instances purged", "removed": removed}
    except NodeCommanderError as e:
        return _error(e)
    except Exception as e:
        return _unexpected("Purge", e)


# ═══════════════════════════════════════════════════════════
# INVENTORY & POWER
# ═══════════════════════════════════════════════════════════

@api.get("/instances")
async def api_list_instances(request: Request):
    try:
        instances = await request.app.state.orchestrator.list_instances()
        return {"instances": instances, "count": len(instances)}
    except NodeCommanderError as e:
        return _error(e)


@api.get("/instances/{workload_id}")
async def api_instance_details(workload_id: str, request: Request):
    try:
        return await request.app.state.orchestrator.details(workload_id)
    except NodeCommanderError as e:
        return _error(e)


@api.post("/instances/{workload_id}/{action}")
async def api_power(workload_id: str, action: str, request: Request):
    try:
        power = PowerAction(action)
    except ValueError:
        return JSONResponse({"message": "Invalid power action"}, status_code=400)
    try:
        changed = await request.app.state.orchestrator.power(workload_id, power)
    except NodeCommanderError as e:
        logger.error(f"[API] Power {action} on {workload_id}: {e}")
        return _error(e)
    if not changed:
        return Response(status_code=304)
    return {"message": f"Container {action} completed", "volumeId": workload_id}


# ═══════════════════════════════════════════════════════════
# HOST STATS
# ═══════════════════════════════════════════════════════════

@api.get("/stats")
async def api_host_stats(request: Request, period: Optional[float] = None):
    recorder = request.app.state.host_stats
    if period:
        return {"period": period, "entries": recorder.history(period)}
    try:
        return recorder.latest() or recorder.record()
    except (OSError, ValueError) as e:
        logger.error(f"[API] Host stats unavailable: {e}")
        return JSONResponse({"message": f"Host stats unavailable: {e}"}, status_code=503)


# ═══════════════════════════════════════════════════════════
# TELEMETRY WEBSOCKET
# ═══════════════════════════════════════════════════════════

@router.websocket("/{kind}/{workload_id}")
async def telemetry_socket(websocket: WebSocket, kind: str, workload_id: str):
    state = websocket.app.state
    settings = state.settings
    channel = TelemetryChannel(
        websocket, kind, workload_id,
        secret=settings.node_key,
        runtime=state.runtime,
        store=state.store,
        volumes=state.volumes,
        stats_interval=settings.stats_interval,
        log_tail=settings.log_tail,
        auth_timeout=settings.auth_timeout,
        forward_exec_output=settings.exec_forward_output,
    )
    await channel.serve()


router.include_router(api)
