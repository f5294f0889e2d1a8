"""
Unit Tests: LifecycleOrchestrator
=================================================
Tests:
  1. create returns at INSTALLING, pipeline settles in the background
  2. create on an existing workload → WorkloadBusyError
  3. delete is idempotent; delete cancels an in-flight create; lock entries
     are dropped once released
  4. redeploy: old container stopped + removed before create, new id, READY
  5. redeploy failure → FAILED, error surfaced, no rollback
  6. reinstall: scripts see the previous container environment
  7. edit: inspect → overrides → recreate, untouched fields preserved
  8. power actions and "not modified"
  9. startup reconciliation, purge
"""

import asyncio
import os

import httpx
import pytest

from node_commander.downloads import ScriptFetcher
from node_commander.errors import (
    ContainerNotFoundError, RuntimeGatewayError, WorkloadBusyError,
)
from node_commander.lifecycle import LifecycleOrchestrator
from node_commander.models import EditRequest, PowerAction, WorkloadSpec, WorkloadState
from node_commander.provisioning import ProvisioningPipeline


def _spec(body, **overrides):
    data = dict(body)
    data.update(overrides)
    return WorkloadSpec.model_validate(data)


def _deploy(orchestrator, body):
    async def scenario():
        await orchestrator.create(_spec(body))
        return await orchestrator.wait(body["Id"])
    return asyncio.run(scenario())


# ─── create ───────────────────────────────────────────────

class TestCreate:

    def test_returns_installing_then_converges(self, orchestrator, store, runtime, w1_body):
        async def scenario():
            accepted = await orchestrator.create(_spec(w1_body))
            persisted_at_accept = store.get("w1").state
            settled = await orchestrator.wait("w1")
            return accepted, persisted_at_accept, settled

        accepted, at_accept, settled = asyncio.run(scenario())
        assert accepted.state == WorkloadState.INSTALLING
        assert at_accept == WorkloadState.INSTALLING
        assert settled.state == WorkloadState.READY
        assert settled.container_id in runtime.containers

    def test_failed_pipeline_converges_to_failed(self, orchestrator, store, runtime, w1_body):
        runtime.pull_errors["demo:latest"] = RuntimeGatewayError("pull: denied")
        record = _deploy(orchestrator, w1_body)
        assert record.state == WorkloadState.FAILED

    def test_existing_workload_rejected(self, orchestrator, w1_body):
        _deploy(orchestrator, w1_body)
        with pytest.raises(WorkloadBusyError):
            asyncio.run(orchestrator.create(_spec(w1_body)))

    def test_create_after_failure_allowed(self, orchestrator, runtime, w1_body):
        runtime.create_error = RuntimeGatewayError("create: boom")
        assert _deploy(orchestrator, w1_body).state == WorkloadState.FAILED
        runtime.create_error = None
        assert _deploy(orchestrator, w1_body).state == WorkloadState.READY


# ─── delete ───────────────────────────────────────────────

class TestDelete:

    def test_delete_twice(self, orchestrator, store, volumes, runtime, w1_body):
        record = _deploy(orchestrator, w1_body)

        first = asyncio.run(orchestrator.delete("w1"))
        second = asyncio.run(orchestrator.delete("w1"))

        assert first["containerRemoved"] is True and first["volumeRemoved"] is True
        assert second["containerRemoved"] is False and second["volumeRemoved"] is False
        assert record.container_id not in runtime.containers
        assert not volumes.exists("w1")
        assert store.get("w1").state == WorkloadState.UNKNOWN
        assert orchestrator._locks == {}

    def test_running_container_stopped_first(self, orchestrator, runtime, w1_body):
        _deploy(orchestrator, w1_body)
        runtime.calls.clear()
        asyncio.run(orchestrator.delete("w1"))
        assert runtime.ops("stop", "remove") == ["stop", "remove"]

    def test_delete_cancels_inflight_create(self, orchestrator, store, runtime, volumes, w1_body):
        async def hanging_pull(ref):
            await asyncio.sleep(30)

        runtime.pull_image = hanging_pull

        async def scenario():
            await orchestrator.create(_spec(w1_body))
            await asyncio.sleep(0.05)
            return await orchestrator.delete("w1")

        asyncio.run(scenario())
        assert store.get("w1").state == WorkloadState.UNKNOWN
        assert "create" not in runtime.ops()
        assert not volumes.exists("w1")

    def test_concurrent_deletes_share_one_lock(self, orchestrator, runtime, w1_body):
        _deploy(orchestrator, w1_body)

        async def scenario():
            results = await asyncio.gather(orchestrator.delete("w1"), orchestrator.delete("w1"))
            return results, orchestrator.is_busy("w1")

        results, busy = asyncio.run(scenario())
        assert [r["containerRemoved"] for r in results] == [True, False]
        assert runtime.ops("remove") == ["remove"]
        assert busy is False
        assert orchestrator._locks == {} and orchestrator._lock_users == {}


# ─── redeploy / reinstall ─────────────────────────────────

class TestRedeploy:

    def test_old_container_removed_before_new_created(self, orchestrator, store, runtime, w1_body):
        old = _deploy(orchestrator, w1_body).container_id
        runtime.calls.clear()

        record = asyncio.run(orchestrator.redeploy("w1", _spec(w1_body, Image="demo:2.0")))

        ops = runtime.ops("stop", "remove", "pull", "create", "start")
        assert ops == ["stop", "remove", "pull", "create", "start"]
        assert ("stop", old) in runtime.calls and ("remove", old) in runtime.calls
        assert record.state == WorkloadState.READY
        assert record.container_id != old
        assert store.get("w1").container_id == record.container_id
        running = [c for c in runtime.containers.values() if c["name"] == "w1"]
        assert len(running) == 1 and running[0]["config"]["Image"] == "demo:2.0"

    def test_failure_leaves_failed_without_rollback(self, orchestrator, store, runtime, w1_body):
        old = _deploy(orchestrator, w1_body).container_id
        runtime.pull_errors["demo:bad"] = RuntimeGatewayError("pull demo:bad: not found")

        with pytest.raises(RuntimeGatewayError):
            asyncio.run(orchestrator.redeploy("w1", _spec(w1_body, Image="demo:bad")))

        assert store.get("w1").state == WorkloadState.FAILED
        assert old not in runtime.containers
        assert runtime.containers == {}

    def test_redeploy_of_missing_container_still_creates(self, orchestrator, runtime, w1_body):
        record = asyncio.run(orchestrator.redeploy("w1", _spec(w1_body)))
        assert record.state == WorkloadState.READY
        assert record.container_id in runtime.containers


class TestReinstall:

    def test_scripts_receive_previous_environment(self, store, runtime, volumes, w1_body):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, content=b"port={{primaryPort}}")

        fetcher = ScriptFetcher(max_attempts=1, retry_backoff=0, transport=httpx.MockTransport(handler))
        pipeline = ProvisioningPipeline(store, runtime, volumes, fetcher)
        orchestrator = LifecycleOrchestrator(store, runtime, volumes, pipeline)

        body = dict(w1_body, Env=["VERSION=1.0", "MODE=prod"])
        old = _deploy(orchestrator, body).container_id
        runtime.calls.clear()

        reinstall_body = dict(
            body,
            Env=["MODE=prod"],
            imageData={"Scripts": {"Install": [{"Uri": "https://dl/{{VERSION}}/run.sh", "Path": "run.sh"}]}},
        )
        record = asyncio.run(orchestrator.reinstall("w1", _spec(reinstall_body)))

        assert requested == ["https://dl/1.0/run.sh"]
        assert record.state == WorkloadState.READY and record.container_id != old
        with open(os.path.join(volumes.path_for("w1"), "run.sh")) as f:
            assert f.read() == "port=8080"
        ops = runtime.ops("remove", "create", "start")
        assert ops == ["remove", "create", "start"]


# ─── edit ─────────────────────────────────────────────────

class TestEdit:

    def test_overrides_applied_rest_preserved(self, orchestrator, store, runtime, w1_body):
        old = _deploy(orchestrator, dict(w1_body, Cmd=["./run.sh"])).container_id
        runtime.calls.clear()

        result = asyncio.run(orchestrator.edit("w1", EditRequest(Memory=2048)))

        assert result["oldContainerId"] == old
        new_id = result["newContainerId"]
        assert new_id != old and store.get("w1").container_id == new_id
        spec = runtime.containers[new_id]["spec"]
        assert spec.memory_mb == 2048
        assert spec.cpu_count == 1
        assert spec.image == "demo:latest"
        assert spec.command == ["./run.sh"]
        assert "PRIMARY_PORT=8080" in spec.env and "MODE=prod" in spec.env
        assert spec.port_bindings["80/tcp"][0].host_port == "8080"
        assert "pull" not in runtime.ops()
        assert runtime.ops("remove", "create") == ["remove", "create"]

    def test_image_override_pulls_before_stop(self, orchestrator, runtime, w1_body):
        _deploy(orchestrator, w1_body)
        runtime.calls.clear()
        asyncio.run(orchestrator.edit("w1", EditRequest(Image="demo:3")))
        assert runtime.ops("pull", "stop", "create") == ["pull", "stop", "create"]

    def test_missing_container(self, orchestrator):
        with pytest.raises(ContainerNotFoundError):
            asyncio.run(orchestrator.edit("ghost", EditRequest(Cpu=2)))


# ─── power / queries ──────────────────────────────────────

class TestPower:

    def test_actions_and_not_modified(self, orchestrator, runtime, store, w1_body):
        _deploy(orchestrator, w1_body)

        async def scenario():
            return [
                await orchestrator.power("w1", PowerAction.START),    # already running
                await orchestrator.power("w1", PowerAction.PAUSE),
                await orchestrator.power("w1", PowerAction.PAUSE),    # already paused
                await orchestrator.power("w1", PowerAction.UNPAUSE),
                await orchestrator.power("w1", PowerAction.STOP),
                await orchestrator.power("w1", PowerAction.KILL),     # already stopped
                await orchestrator.power("w1", PowerAction.START),
            ]

        assert asyncio.run(scenario()) == [False, True, False, True, True, False, True]
        assert store.get("w1").state == WorkloadState.READY

    def test_list_and_details(self, orchestrator, w1_body):
        record = _deploy(orchestrator, w1_body)
        listing = asyncio.run(orchestrator.list_instances())
        assert listing == [{
            "id": record.container_id, "name": "w1", "image": "demo:latest",
            "state": "running", "status": "running",
        }]
        details = asyncio.run(orchestrator.details("w1"))
        assert details["state"] == "READY" and details["running"] is True


# ─── reconcile / purge ────────────────────────────────────

class TestReconcile:

    def test_stale_records_resolved(self, orchestrator, store, runtime):
        running = runtime.add_container("a", running=True)
        stopped = runtime.add_container("b", running=False)
        store.set("a", WorkloadState.INSTALLING, running)
        store.set("b", WorkloadState.INSTALLING, stopped)
        store.set("c", WorkloadState.READY, "gone")
        store.set("d", WorkloadState.FAILED)

        changes = asyncio.run(orchestrator.reconcile())

        assert changes == {"a": "READY", "b": "FAILED", "c": "FAILED"}
        assert store.get("d").state == WorkloadState.FAILED

    def test_skipped_when_runtime_unreachable(self, orchestrator, store, runtime):
        runtime.reachable = False
        store.set("a", WorkloadState.INSTALLING)
        assert asyncio.run(orchestrator.reconcile()) == {}
        assert store.get("a").state == WorkloadState.INSTALLING


class TestPurge:

    def test_removes_managed_only(self, orchestrator, store, runtime, volumes, w1_body):
        _deploy(orchestrator, w1_body)
        volumes.ensure("orphan")
        orphan_container = runtime.add_container("orphan")
        foreign = runtime.add_container("postgres")

        removed = asyncio.run(orchestrator.purge())

        assert removed == {"containers": 2, "volumes": 2, "records": 1}
        assert list(runtime.containers) == [foreign]
        assert orphan_container not in runtime.containers
        assert volumes.list_ids() == []
        assert store.all() == {}
        assert orchestrator._locks == {}
