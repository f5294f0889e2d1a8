# tests/conftest.py
"""
Pytest Fixtures - wired components over the in-memory runtime.
"""

import sys
from pathlib import Path

import pytest

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from node_commander.downloads import ScriptFetcher  # noqa: E402
from node_commander.lifecycle import LifecycleOrchestrator  # noqa: E402
from node_commander.provisioning import ProvisioningPipeline  # noqa: E402
from node_commander.state_store import StateStore  # noqa: E402
from node_commander.volumes import VolumeManager  # noqa: E402
from tests.fakes import FakeRuntime  # noqa: E402


# ═══════════════════════════════════════════════════════════
# COMPONENT FIXTURES
# ═══════════════════════════════════════════════════════════

@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "states.json"))


@pytest.fixture
def volumes(tmp_path):
    manager = VolumeManager(str(tmp_path / "volumes"))
    yield manager
    manager.close()


@pytest.fixture
def pipeline(store, runtime, volumes):
    return ProvisioningPipeline(store, runtime, volumes, ScriptFetcher(max_attempts=1, retry_backoff=0))


@pytest.fixture
def orchestrator(store, runtime, volumes, pipeline):
    return LifecycleOrchestrator(store, runtime, volumes, pipeline)


@pytest.fixture
def w1_body():
    """Workload w1: demo image, no scripts, 8080 → 80."""
    return {
        "Id": "w1",
        "Image": "demo:latest",
        "Env": ["MODE=prod"],
        "Ports": {"80/tcp": {}},
        "PortBindings": {"80/tcp": [{"HostPort": "8080"}]},
        "Memory": 512,
        "Cpu": 1,
    }
