"""
Node Commander — Data Models
═══════════════════════════════════════════════════
Defines:
- WorkloadState: lifecycle states persisted per workload
- StateRecord: the durable {state, containerId} tuple
- WorkloadSpec: create / redeploy / reinstall request body
- EditRequest: overrides for an in-place edit
- ContainerSpec: what the runtime gateway needs to create a container
- ContainerInfo: what the runtime gateway reports back from inspect

Request models accept the control plane's PascalCase keys (Id, Image, Env,
PortBindings, ...) as aliases and the snake_case names as well.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enums ──────────────────────────────────────────────────

class WorkloadState(str, Enum):
    UNKNOWN = "UNKNOWN"          # No record
    INSTALLING = "INSTALLING"    # A pipeline / transition is running
    READY = "READY"              # Container created and started
    FAILED = "FAILED"            # Last transition did not complete


class PowerAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    PAUSE = "pause"
    UNPAUSE = "unpause"
    KILL = "kill"


# ── State Record ──────────────────────────────────────────

class StateRecord(BaseModel):
    """Persisted per workload. Only `state` must survive a restart."""
    volume_id: str
    state: WorkloadState = WorkloadState.UNKNOWN
    container_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "containerId": self.container_id}

    @classmethod
    def from_dict(cls, volume_id: str, data: Dict[str, Any]) -> "StateRecord":
        return cls(
            volume_id=volume_id,
            state=WorkloadState(data.get("state", WorkloadState.UNKNOWN.value)),
            container_id=data.get("containerId"),
        )


# ── Request Models ────────────────────────────────────────

class _RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PortBinding(_RequestModel):
    """One host binding for a container port (runtime format)."""
    host_ip: Optional[str] = Field(default=None, alias="HostIp")
    host_port: str = Field(..., alias="HostPort")

    @field_validator("host_port", mode="before")
    @classmethod
    def _port_as_str(cls, v):
        return str(v) if v is not None else v


class InstallScript(_RequestModel):
    """A file fetched into the volume once during provisioning."""
    uri: str = Field(..., alias="Uri")
    path: str = Field(..., alias="Path")


class ScriptSet(_RequestModel):
    install: List[InstallScript] = Field(default_factory=list, alias="Install")


class ImageData(_RequestModel):
    scripts: Optional[ScriptSet] = Field(default=None, alias="Scripts")


class WorkloadSpec(_RequestModel):
    """Create / redeploy / reinstall request body."""
    id: Optional[str] = Field(default=None, alias="Id")
    image: str = Field(..., alias="Image")
    command: Optional[Union[str, List[str]]] = Field(default=None, alias="Cmd")
    env: List[str] = Field(default_factory=list, alias="Env")
    exposed_ports: Dict[str, Dict[str, Any]] = Field(default_factory=dict, alias="Ports")
    port_bindings: Dict[str, List[PortBinding]] = Field(default_factory=dict, alias="PortBindings")
    memory_mb: Optional[int] = Field(default=None, alias="Memory")
    cpu_count: Optional[float] = Field(default=None, alias="Cpu")
    scripts: Optional[ScriptSet] = Field(default=None, alias="Scripts")
    image_data: Optional[ImageData] = Field(default=None, alias="imageData")
    variables: Dict[str, str] = Field(default_factory=dict)

    @field_validator("variables", mode="before")
    @classmethod
    def _parse_variables(cls, v):
        # The control plane sends the variable map as a JSON string
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"variables is not valid JSON: {e}")
        if not isinstance(v, dict):
            raise ValueError("variables must be an object")
        return {str(k): "" if val is None else str(val) for k, val in v.items()}

    @field_validator("env", mode="before")
    @classmethod
    def _env_none(cls, v):
        return v or []

    @field_validator("exposed_ports", "port_bindings", mode="before")
    @classmethod
    def _mapping_none(cls, v):
        return v or {}

    @property
    def primary_port(self) -> Optional[str]:
        """Host port of the first configured binding."""
        for bindings in self.port_bindings.values():
            if bindings:
                return bindings[0].host_port
        return None

    @property
    def install_scripts(self) -> List[InstallScript]:
        if self.scripts and self.scripts.install:
            return list(self.scripts.install)
        if self.image_data and self.image_data.scripts:
            return list(self.image_data.scripts.install)
        return []


class EditRequest(_RequestModel):
    """Overrides for edit; unset fields keep the running container's value."""
    image: Optional[str] = Field(default=None, alias="Image")
    memory_mb: Optional[int] = Field(default=None, alias="Memory")
    cpu_count: Optional[float] = Field(default=None, alias="Cpu")
    volume_id: Optional[str] = Field(default=None, alias="VolumeId")


# ── Runtime-facing structures ─────────────────────────────

@dataclass
class ContainerSpec:
    """Everything the runtime needs to create one workload container."""
    name: str
    image: str
    volume_path: str
    command: Optional[Union[str, List[str]]] = None
    env: List[str] = field(default_factory=list)
    exposed_ports: List[str] = field(default_factory=list)
    port_bindings: Dict[str, List[PortBinding]] = field(default_factory=dict)
    memory_mb: Optional[int] = None
    cpu_count: Optional[float] = None


@dataclass
class ContainerInfo:
    """Inspect result, trimmed to what the orchestrator consumes."""
    id: str
    name: str
    running: bool
    status: str
    config: Dict[str, Any] = field(default_factory=dict)
    host_config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_attrs(cls, attrs: Dict[str, Any]) -> "ContainerInfo":
        state = attrs.get("State") or {}
        return cls(
            id=attrs.get("Id", ""),
            name=(attrs.get("Name") or "").lstrip("/"),
            running=bool(state.get("Running", False)),
            status=state.get("Status", "unknown"),
            config=attrs.get("Config") or {},
            host_config=attrs.get("HostConfig") or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "running": self.running,
            "status": self.status,
            "image": self.config.get("Image", ""),
            "env": self.config.get("Env") or [],
            "cmd": self.config.get("Cmd"),
            "exposedPorts": self.config.get("ExposedPorts") or {},
            "portBindings": self.host_config.get("PortBindings") or {},
        }


# ── Environment helpers ───────────────────────────────────

def env_list_to_map(env: Optional[List[str]]) -> Dict[str, str]:
    """Parse the runtime's KEY=VALUE list back into a map. Later keys win."""
    result: Dict[str, str] = {}
    for item in env or []:
        key, sep, value = item.partition("=")
        if not key:
            continue
        result[key] = value if sep else ""
    return result


def merge_env(*sources: List[str]) -> List[str]:
    """
    Concatenate KEY=VALUE lists. Duplicate keys resolve last-write-wins;
    each key keeps the position of its first appearance.
    """
    merged: Dict[str, str] = {}
    for source in sources:
        for key, value in env_list_to_map(source).items():
            merged[key] = value
    return [f"{k}={v}" for k, v in merged.items()]


def map_to_env(values: Dict[str, str]) -> List[str]:
    return [f"{k}={v}" for k, v in values.items()]
