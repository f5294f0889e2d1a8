"""
Node Commander — Provisioning Pipeline
═══════════════════════════════════════════════════
Takes a workload from request to running container:

  INSTALLING → volume dir → pull → environment → create
             → install scripts + variable substitution → start → READY

Every milestone is written to the StateStore before the next step runs.
Anything that escapes a step (including cancellation) marks the workload
FAILED before propagating, so no caller ever sees INSTALLING left behind.

The individual steps are public so the lifecycle orchestrator can reuse them
for redeploy / reinstall / edit in its own order.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from .downloads import ScriptFetcher, ScriptResult
from .errors import ConfigError, ContainerNotFoundError
from .models import (
    ContainerSpec, InstallScript, StateRecord, WorkloadSpec, WorkloadState,
    map_to_env, merge_env,
)
from .runtime import RuntimeGateway
from .state_store import StateStore
from .templating import pipeline_variables, substitute_directory
from .volumes import VolumeManager

logger = logging.getLogger(__name__)


class Attempt:
    """Tracks what a running transition has produced so far."""

    def __init__(self, workload_id: str):
        self.workload_id = workload_id
        self.container_id: Optional[str] = None


class ProvisioningPipeline:

    def __init__(
        self,
        store: StateStore,
        runtime: RuntimeGateway,
        volumes: VolumeManager,
        fetcher: Optional[ScriptFetcher] = None,
    ):
        self.store = store
        self.runtime = runtime
        self.volumes = volumes
        self.fetcher = fetcher or ScriptFetcher()

    # ── Validation ────────────────────────────────────────

    def validate(self, spec: WorkloadSpec, workload_id: Optional[str] = None) -> str:
        """Reject malformed requests before anything is recorded."""
        workload_id = workload_id or spec.id
        if not workload_id:
            raise ConfigError("Id is required")
        self.volumes.validate_id(workload_id)
        if not spec.image or not spec.image.strip():
            raise ConfigError("Image is required")
        if spec.install_scripts and spec.primary_port is None:
            raise ConfigError("A port binding is required for install scripts (primaryPort)")
        return workload_id

    # ── Failure guard ─────────────────────────────────────

    @asynccontextmanager
    async def attempt(self, workload_id: str):
        """
        Wrap a transition. On any exception or cancellation the record becomes
        FAILED (with the container id if one was created) and the error
        propagates unchanged.
        """
        attempt = Attempt(workload_id)
        try:
            yield attempt
        except (Exception, asyncio.CancelledError) as e:
            self.store.set(workload_id, WorkloadState.FAILED, attempt.container_id)
            if isinstance(e, asyncio.CancelledError):
                logger.warning(f"[Pipeline] {workload_id} cancelled → FAILED")
            else:
                logger.error(f"[Pipeline] {workload_id} failed → FAILED: {e}")
            raise

    # ── Steps ─────────────────────────────────────────────

    def mark_installing(self, workload_id: str, container_id: Optional[str] = None) -> StateRecord:
        return self.store.set(workload_id, WorkloadState.INSTALLING, container_id)

    def mark_ready(self, workload_id: str, container_id: str) -> StateRecord:
        record = self.store.set(workload_id, WorkloadState.READY, container_id)
        logger.info(f"[Pipeline] {workload_id} READY ({container_id[:12]})")
        return record

    def prepare_volume(self, workload_id: str) -> str:
        path = self.volumes.ensure(workload_id)
        logger.info(f"[Pipeline] {workload_id} volume: {path}")
        return path

    async def pull(self, image: str) -> None:
        logger.info(f"[Pipeline] Pulling image: {image}")
        await self.runtime.pull_image(image)

    def effective_environment(self, spec: WorkloadSpec,
                              variables: Optional[Dict[str, str]] = None) -> List[str]:
        """Caller env ++ variables as KEY=VALUE ++ PRIMARY_PORT. Later keys win."""
        if variables is None:
            variables = spec.variables
        extra = []
        primary_port = spec.primary_port
        if primary_port is not None:
            extra.append(f"PRIMARY_PORT={primary_port}")
        return merge_env(spec.env, map_to_env(variables), extra)

    def container_spec(self, workload_id: str, spec: WorkloadSpec, env: List[str],
                       volume_path: str) -> ContainerSpec:
        return ContainerSpec(
            name=workload_id,
            image=spec.image,
            volume_path=volume_path,
            command=spec.command,
            env=env,
            exposed_ports=list(spec.exposed_ports),
            port_bindings=dict(spec.port_bindings),
            memory_mb=spec.memory_mb,
            cpu_count=spec.cpu_count,
        )

    async def create(self, container_spec: ContainerSpec) -> str:
        return await self.runtime.create_container(container_spec)

    async def remove_existing(self, container_ref: str) -> bool:
        """Stop (if running) and remove. Already gone → False."""
        try:
            info = await self.runtime.inspect_container(container_ref)
        except ContainerNotFoundError:
            return False
        if info.running:
            logger.info(f"[Pipeline] Stopping container {container_ref[:12]}")
            try:
                await self.runtime.stop_container(container_ref)
            except ContainerNotFoundError:
                return False
        logger.info(f"[Pipeline] Removing container {container_ref[:12]}")
        try:
            await self.runtime.remove_container(container_ref, force=True)
        except ContainerNotFoundError:
            return False
        return True

    async def install(self, scripts: List[InstallScript], volume_path: str,
                      variables: Dict[str, str], primary_port: Optional[str],
                      container_id: str) -> List[ScriptResult]:
        """
        Download every script (failures are logged, never fatal), then
        substitute placeholders into the text files of the volume.
        """
        if not scripts:
            return []
        results = await self.fetcher.fetch_all(scripts, volume_path, variables)
        failed = [r for r in results if not r.ok]
        if failed:
            logger.error(
                f"[Pipeline] {len(failed)}/{len(results)} install script(s) failed: "
                + ", ".join(r.path for r in failed)
            )

        merged = dict(variables)
        merged.update(pipeline_variables(primary_port, container_id))
        await self.volumes.run_io(
            substitute_directory, volume_path, merged, self.volumes.max_depth
        )
        return results

    async def start(self, container_id: str) -> None:
        await self.runtime.start_container(container_id)
        logger.info(f"[Pipeline] Started {container_id[:12]}")

    # ── Full create sequence ──────────────────────────────

    async def run(self, spec: WorkloadSpec, workload_id: Optional[str] = None,
                  marked: bool = False) -> StateRecord:
        """
        Execute the whole create pipeline. `marked=True` means the caller has
        already recorded INSTALLING (the orchestrator does so before replying).
        """
        workload_id = self.validate(spec, workload_id)
        if not marked:
            self.mark_installing(workload_id)

        async with self.attempt(workload_id) as attempt:
            volume_path = self.prepare_volume(workload_id)
            await self.pull(spec.image)
            env = self.effective_environment(spec)

            # A leftover from an earlier failed attempt would collide on the name
            if await self.remove_existing(workload_id):
                logger.info(f"[Pipeline] {workload_id} removed leftover container")

            attempt.container_id = await self.create(
                self.container_spec(workload_id, spec, env, volume_path)
            )
            await self.install(
                spec.install_scripts, volume_path, spec.variables,
                spec.primary_port, attempt.container_id,
            )
            await self.start(attempt.container_id)
            return self.mark_ready(workload_id, attempt.container_id)
