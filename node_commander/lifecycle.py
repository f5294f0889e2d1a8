"""
Node Commander — Lifecycle Orchestrator
═══════════════════════════════════════════════════
Per-workload state machine:

    UNKNOWN → INSTALLING → READY | FAILED
    READY / FAILED → INSTALLING   (redeploy, reinstall, edit)

- create     returns as soon as INSTALLING is durable; the pipeline runs as
             a background task
- delete     container, volume directory, state record; each step tolerates
             "already gone"
- redeploy   old container removed before the new one is created
- reinstall  redeploy + install scripts fed with the previous environment
- edit       inspect → overlay image/memory/cpu → recreate

Transitions for one workload are serialized by a per-id asyncio.Lock; a
second transition while one is in flight is rejected (WorkloadBusyError).
There is no rollback: a failure after the old container was removed leaves
the workload FAILED without a container, and the error reaches the caller.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from .errors import (
    ConfigError, ContainerNotFoundError, RuntimeGatewayError, WorkloadBusyError,
)
from .models import (
    EditRequest, PortBinding, PowerAction, StateRecord, WorkloadSpec,
    WorkloadState, env_list_to_map,
)
from .provisioning import ProvisioningPipeline
from .runtime import RuntimeGateway
from .state_store import StateStore
from .volumes import VolumeManager

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

# Runtime operation per power action; stop maps to a graceful stop here,
# telemetry maps power:stop to kill itself.
_POWER_CALLS = {
    PowerAction.START: "start_container",
    PowerAction.STOP: "stop_container",
    PowerAction.RESTART: "restart_container",
    PowerAction.PAUSE: "pause_container",
    PowerAction.UNPAUSE: "unpause_container",
    PowerAction.KILL: "kill_container",
}


class LifecycleOrchestrator:

    def __init__(
        self,
        store: StateStore,
        runtime: RuntimeGateway,
        volumes: VolumeManager,
        pipeline: ProvisioningPipeline,
    ):
        self.store = store
        self.runtime = runtime
        self.volumes = volumes
        self.pipeline = pipeline
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ── Bookkeeping ───────────────────────────────────────

    @asynccontextmanager
    async def _lock(self, workload_id: str):
        """Hold the workload's lock. The entry is dropped once nobody holds or awaits it."""
        lock = self._locks.get(workload_id)
        if lock is None:
            lock = self._locks[workload_id] = asyncio.Lock()
        self._lock_users[workload_id] = self._lock_users.get(workload_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[workload_id] -= 1
            if not self._lock_users[workload_id]:
                del self._lock_users[workload_id]
                del self._locks[workload_id]

    def is_busy(self, workload_id: str) -> bool:
        task = self._tasks.get(workload_id)
        lock = self._locks.get(workload_id)
        return (task is not None and not task.done()) or (lock is not None and lock.locked())

    def _ensure_idle(self, workload_id: str) -> None:
        if self.is_busy(workload_id):
            raise WorkloadBusyError(f"Workload {workload_id} has a transition in progress")

    def _container_ref(self, workload_id: str) -> str:
        """Recorded container id, or the workload id (also the container name)."""
        return self.store.get(workload_id).container_id or workload_id

    def _on_task_done(self, workload_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(workload_id) is task:
            del self._tasks[workload_id]
        if task.cancelled():
            # Cancelled before the pipeline's own guard was entered
            record = self.store.get(workload_id)
            if record.state == WorkloadState.INSTALLING:
                self.store.set(workload_id, WorkloadState.FAILED, record.container_id)
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Lifecycle] Create {workload_id} ended with: {error}")

    # ── create ────────────────────────────────────────────

    async def create(self, spec: WorkloadSpec) -> StateRecord:
        """Accept a workload; provisioning continues in the background."""
        workload_id = self.pipeline.validate(spec)
        self._ensure_idle(workload_id)

        current = self.store.get(workload_id).state
        if current in (WorkloadState.INSTALLING, WorkloadState.READY):
            raise WorkloadBusyError(f"Workload {workload_id} already exists ({current.value})")

        record = self.pipeline.mark_installing(workload_id)
        task = asyncio.create_task(self._run_create(workload_id, spec))
        self._tasks[workload_id] = task
        task.add_done_callback(lambda t: self._on_task_done(workload_id, t))
        logger.info(f"[Lifecycle] Deployment started: {workload_id}")
        return record

    async def _run_create(self, workload_id: str, spec: WorkloadSpec) -> StateRecord:
        async with self._lock(workload_id):
            return await self.pipeline.run(spec, workload_id, marked=True)

    async def wait(self, workload_id: str) -> StateRecord:
        """Wait for an in-flight create to settle, then return the record."""
        task = self._tasks.get(workload_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.store.get(workload_id)

    # ── delete ────────────────────────────────────────────

    async def delete(self, workload_id: str) -> Dict[str, Any]:
        self.volumes.validate_id(workload_id)

        task = self._tasks.get(workload_id)
        if task is not None and not task.done():
            logger.info(f"[Lifecycle] Cancelling in-flight create for {workload_id}")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        async with self._lock(workload_id):
            record = self.store.get(workload_id)
            removed = False
            for ref in dict.fromkeys(filter(None, [record.container_id, workload_id])):
                if await self.pipeline.remove_existing(ref):
                    removed = True

            volume_removed = self.volumes.remove(workload_id)
            record_removed = self.store.delete(workload_id)

        logger.info(
            f"[Lifecycle] Deleted {workload_id} (container={removed}, "
            f"volume={volume_removed}, record={record_removed})"
        )
        return {
            "message": "Container and volume removed successfully",
            "volumeId": workload_id,
            "containerRemoved": removed,
            "volumeRemoved": volume_removed,
        }

    # ── redeploy / reinstall ──────────────────────────────

    async def redeploy(self, workload_id: str, spec: WorkloadSpec) -> StateRecord:
        return await self._replace(workload_id, spec, reinstall=False)

    async def reinstall(self, workload_id: str, spec: WorkloadSpec) -> StateRecord:
        return await self._replace(workload_id, spec, reinstall=True)

    async def _replace(self, workload_id: str, spec: WorkloadSpec, reinstall: bool) -> StateRecord:
        workload_id = self.pipeline.validate(spec, workload_id)
        self._ensure_idle(workload_id)
        verb = "Reinstall" if reinstall else "Redeploy"

        async with self._lock(workload_id):
            old_ref = self._container_ref(workload_id)
            self.pipeline.mark_installing(workload_id)

            async with self.pipeline.attempt(workload_id) as attempt:
                variables = dict(spec.variables)
                if reinstall:
                    variables = await self._previous_variables(old_ref, spec)

                await self.pipeline.remove_existing(old_ref)
                if old_ref != workload_id:
                    await self.pipeline.remove_existing(workload_id)

                volume_path = self.pipeline.prepare_volume(workload_id)
                await self.pipeline.pull(spec.image)
                env = self.pipeline.effective_environment(spec)
                attempt.container_id = await self.pipeline.create(
                    self.pipeline.container_spec(workload_id, spec, env, volume_path)
                )
                if reinstall:
                    await self.pipeline.install(
                        spec.install_scripts, volume_path, variables,
                        spec.primary_port, attempt.container_id,
                    )
                await self.pipeline.start(attempt.container_id)
                record = self.pipeline.mark_ready(workload_id, attempt.container_id)

        logger.info(f"[Lifecycle] {verb} complete: {workload_id} → {record.container_id[:12]}")
        return record

    async def _previous_variables(self, container_ref: str, spec: WorkloadSpec) -> Dict[str, str]:
        """The old container's environment as a map, overlaid with request variables."""
        try:
            info = await self.runtime.inspect_container(container_ref)
            previous = info.config.get("Env") or []
        except ContainerNotFoundError:
            logger.warning(f"[Lifecycle] No previous container {container_ref[:12]}, using request Env")
            previous = spec.env
        variables = env_list_to_map(previous)
        variables.update(spec.variables)
        return variables

    # ── edit ──────────────────────────────────────────────

    async def edit(self, workload_id: str, request: EditRequest) -> Dict[str, Any]:
        self.volumes.validate_id(workload_id)
        self._ensure_idle(workload_id)

        async with self._lock(workload_id):
            old_ref = self._container_ref(workload_id)
            info = await self.runtime.inspect_container(old_ref)
            spec = self._merge_edit(workload_id, info.config, info.host_config, request)
            volume_id = request.volume_id or workload_id
            volume_path = self.volumes.path_for(volume_id)

            if request.image:
                await self.pipeline.pull(spec.image)

            self.pipeline.mark_installing(workload_id, info.id or None)
            async with self.pipeline.attempt(workload_id) as attempt:
                await self.pipeline.remove_existing(info.id or old_ref)
                self.volumes.ensure(volume_id)
                attempt.container_id = await self.pipeline.create(
                    self.pipeline.container_spec(workload_id, spec, spec.env, volume_path)
                )
                await self.pipeline.start(attempt.container_id)
                record = self.pipeline.mark_ready(workload_id, attempt.container_id)

        logger.info(f"[Lifecycle] Edit completed: {workload_id} → {record.container_id[:12]}")
        return {
            "message": "Container edited successfully",
            "oldContainerId": info.id or old_ref,
            "newContainerId": record.container_id,
        }

    @staticmethod
    def _merge_edit(workload_id: str, config: Dict[str, Any], host_config: Dict[str, Any],
                    request: EditRequest) -> WorkloadSpec:
        """Existing configuration with the request's overrides on top."""
        image = request.image or config.get("Image")
        if not image:
            raise ConfigError(f"Container for {workload_id} has no image to preserve")

        memory_mb = request.memory_mb
        if memory_mb is None and host_config.get("Memory"):
            memory_mb = int(host_config["Memory"]) // MIB
        cpu_count = request.cpu_count
        if cpu_count is None and host_config.get("NanoCpus"):
            cpu_count = int(host_config["NanoCpus"]) / 1e9

        bindings = {
            port: [PortBinding(host_ip=b.get("HostIp") or None, host_port=b.get("HostPort", ""))
                   for b in (entries or [])]
            for port, entries in (host_config.get("PortBindings") or {}).items()
        }
        return WorkloadSpec(
            id=workload_id,
            image=image,
            command=config.get("Cmd"),
            env=config.get("Env") or [],
            exposed_ports=config.get("ExposedPorts") or {},
            port_bindings=bindings,
            memory_mb=memory_mb or None,
            cpu_count=cpu_count or None,
        )

    # ── power ─────────────────────────────────────────────

    async def power(self, workload_id: str, action: PowerAction) -> bool:
        """
        Apply a power action. Returns False when the container is already in
        the requested condition (the runtime's "not modified").

        The state record is left alone: READY means provisioned, not running,
        so a stopped or killed workload stays READY.
        """
        ref = self._container_ref(workload_id)
        info = await self.runtime.inspect_container(ref)
        paused = info.status == "paused"
        if (
            (action == PowerAction.START and info.running)
            or (action in (PowerAction.STOP, PowerAction.KILL) and not info.running)
            or (action == PowerAction.PAUSE and paused)
            or (action == PowerAction.UNPAUSE and not paused)
        ):
            return False
        await getattr(self.runtime, _POWER_CALLS[action])(info.id or ref)
        logger.info(f"[Lifecycle] {workload_id}: {action.value} done")
        return True

    # ── queries ───────────────────────────────────────────

    def state(self, volume_id: str) -> StateRecord:
        return self.store.get(volume_id)

    async def list_instances(self) -> List[Dict[str, Any]]:
        containers = await self.runtime.list_containers(all=True)
        return [
            {
                "id": c.get("Id", ""),
                "name": (c.get("Names") or [""])[0].lstrip("/"),
                "image": c.get("Image", ""),
                "state": c.get("State", ""),
                "status": c.get("Status", ""),
            }
            for c in containers
        ]

    async def details(self, workload_id: str) -> Dict[str, Any]:
        info = await self.runtime.inspect_container(self._container_ref(workload_id))
        data = info.to_dict()
        data["state"] = self.store.get(workload_id).state.value
        return data

    # ── startup / shutdown ────────────────────────────────

    async def reconcile(self) -> Dict[str, str]:
        """
        Resolve records left behind by a previous process:
        INSTALLING → READY if its container runs, else FAILED;
        READY whose container is gone → FAILED.
        """
        if not await self.runtime.ping():
            logger.warning("[Lifecycle] Runtime unreachable, skipping state reconciliation")
            return {}

        changes = {}
        for workload_id, record in self.store.all().items():
            if record.state not in (WorkloadState.INSTALLING, WorkloadState.READY):
                continue
            ref = record.container_id or workload_id
            try:
                info = await self.runtime.inspect_container(ref)
            except ContainerNotFoundError:
                info = None
            except RuntimeGatewayError as e:
                logger.error(f"[Lifecycle] Reconcile {workload_id}: {e}")
                continue

            if record.state == WorkloadState.INSTALLING:
                if info is not None and info.running:
                    new_state = WorkloadState.READY
                else:
                    new_state = WorkloadState.FAILED
            elif info is None:
                new_state = WorkloadState.FAILED
            else:
                continue

            container_id = info.id if info is not None and info.id else record.container_id
            self.store.set(workload_id, new_state, container_id)
            changes[workload_id] = new_state.value
            logger.info(f"[Lifecycle] Reconciled {workload_id}: {record.state.value} → {new_state.value}")

        logger.info(f"[Lifecycle] Reconciliation done: {len(changes)} record(s) changed")
        return changes

    async def purge(self) -> Dict[str, int]:
        """Remove every managed container, volume directory and state record."""
        await self.shutdown()
        names = set(self.volumes.list_ids()) | set(self.store.all())

        removed_containers = 0
        for container in await self.runtime.list_containers(all=True):
            container_names = {n.lstrip("/") for n in container.get("Names") or []}
            if not container_names & names:
                continue
            try:
                await self.runtime.remove_container(container["Id"], force=True)
                removed_containers += 1
            except ContainerNotFoundError:
                continue

        removed_volumes = sum(1 for vid in self.volumes.list_ids() if self.volumes.remove(vid))
        removed_records = self.store.clear()
        logger.info(
            f"[Lifecycle] Purge: {removed_containers} container(s), "
            f"{removed_volumes} volume(s), {removed_records} record(s)"
        )
        return {
            "containers": removed_containers,
            "volumes": removed_volumes,
            "records": removed_records,
        }

    async def shutdown(self) -> None:
        """Cancel in-flight create pipelines; each marks its workload FAILED."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
