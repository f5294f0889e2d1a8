"""
Node Commander — Application Factory
═══════════════════════════════════════════════════
Wires the components and serves them:

  StateStore ─┐
  Runtime ────┼─ ProvisioningPipeline ─ LifecycleOrchestrator ─ routes
  Volumes ────┘                          TelemetryChannel ──────┘

On startup: reconcile persisted state against the runtime, then start the
host stats recorder and (if NODE_REMOTE is set) the dashboard heartbeat.
On shutdown: cancel background loops and in-flight pipelines.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .config import LOG_FORMAT, LOG_LEVEL, Settings
from .downloads import ScriptFetcher
from .errors import AuthError, NodeCommanderError, RuntimeGatewayError
from .lifecycle import LifecycleOrchestrator
from .provisioning import ProvisioningPipeline
from .routes import router
from .runtime import RuntimeGateway
from .state_store import StateStore
from .system_stats import HeartbeatReporter, HostStatsRecorder
from .volumes import VolumeManager

logger = logging.getLogger(__name__)


# ── Background Loops ──────────────────────────────────────

async def run_periodic(name: str, interval: float, fn: Callable[[], Awaitable[Any]]) -> None:
    """Call `fn` every `interval` seconds until cancelled. Errors are logged."""
    while True:
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{name}] Loop iteration failed: {e}")
        await asyncio.sleep(interval)


async def node_status(app: FastAPI) -> Dict[str, Any]:
    settings = app.state.settings
    runtime_info: Dict[str, Any] = {"status": "unreachable"}
    try:
        version = await app.state.runtime.version()
        runtime_info = {"status": "running", "version": version.get("Version", "unknown")}
    except RuntimeGatewayError as e:
        logger.warning(f"[API] Runtime status check failed: {e}")
        runtime_info["error"] = str(e)

    return {
        "versionFamily": 1,
        "versionRelease": f"node_commander {__version__}",
        "node": settings.node_name,
        "online": True,
        "remote": settings.node_remote,
        "runtime": runtime_info,
        "status": "ok" if runtime_info["status"] == "running" else "degraded",
    }


# ── Factory ───────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, runtime: Optional[RuntimeGateway] = None,
               fetcher: Optional[ScriptFetcher] = None,
               heartbeat: Optional[HeartbeatReporter] = None) -> FastAPI:
    settings = settings or Settings()

    runtime = runtime or RuntimeGateway(
        data_path=settings.container_data_path,
        network_mode=settings.container_network_mode,
        stop_timeout=settings.container_stop_timeout,
        pull_max_attempts=settings.pull_max_attempts,
        pull_retry_backoff=settings.pull_retry_backoff,
        stream_workers=settings.stream_workers,
        pull_workers=settings.pull_workers,
    )
    store = StateStore(settings.state_file)
    volumes = VolumeManager(
        settings.volumes_dir, settings.volume_size_max_depth, settings.volume_io_workers
    )
    fetcher = fetcher or ScriptFetcher(
        max_attempts=settings.download_max_attempts,
        retry_backoff=settings.download_retry_backoff,
        timeout=settings.download_timeout,
    )
    pipeline = ProvisioningPipeline(store, runtime, volumes, fetcher)
    orchestrator = LifecycleOrchestrator(store, runtime, volumes, pipeline)
    host_stats = HostStatsRecorder(settings.stats_file, settings.host_stats_max_age)
    if heartbeat is None and settings.node_remote:
        heartbeat = HeartbeatReporter(settings.node_remote, settings.node_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[API] Node Commander {__version__} starting ({settings.node_name})")
        await orchestrator.reconcile()

        loops = []
        if settings.background_tasks:
            loops.append(asyncio.create_task(run_periodic(
                "Stats", settings.host_stats_interval,
                lambda: asyncio.get_running_loop().run_in_executor(None, host_stats.record),
            )))
            if heartbeat is not None:
                loops.append(asyncio.create_task(run_periodic(
                    "Heartbeat", settings.heartbeat_interval, lambda: _send_heartbeat(app),
                )))
        try:
            yield
        finally:
            for task in loops:
                task.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            await orchestrator.shutdown()
            runtime.close()
            volumes.close()
            logger.info("[API] Node Commander stopped")

    async def _send_heartbeat(app: FastAPI) -> bool:
        status = await node_status(app)
        records = store.all()
        payload = {
            "node": settings.node_name,
            "version": __version__,
            "status": status["status"],
            "runtime": status["runtime"],
            "stats": host_stats.latest(),
            "workloads": {vid: r.state.value for vid, r in records.items()},
        }
        return await heartbeat.beat(payload)

    app = FastAPI(
        title="Node Commander",
        description="Node-local workload lifecycle daemon",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.store = store
    app.state.volumes = volumes
    app.state.pipeline = pipeline
    app.state.orchestrator = orchestrator
    app.state.host_stats = host_stats
    app.state.heartbeat = heartbeat

    @app.exception_handler(NodeCommanderError)
    async def _node_error(request: Request, exc: NodeCommanderError):
        headers = {"WWW-Authenticate": "Basic"} if isinstance(exc, AuthError) else None
        return JSONResponse({"message": str(exc)}, status_code=exc.status_code, headers=headers)

    @app.get("/")
    async def status():
        return await node_status(app)

    app.include_router(router)
    return app


def configure_logging() -> None:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
