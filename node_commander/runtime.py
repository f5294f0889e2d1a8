"""
Node Commander — Runtime Gateway (Docker)
═══════════════════════════════════════════════════
Async capability interface over the Docker SDK:
- pull_image (bounded retry on "temporarily unavailable")
- create / start / stop / kill / restart / pause / unpause / remove
- inspect, stats snapshot
- stream_logs → LogStream (async iterator, cancellable)
- attach → AttachSession (bidirectional, cancellable)

Every SDK call is blocking, so it runs in a worker thread. Image pulls and
long-lived stream reads each get their own pool, so a burst of slow pulls or
open log channels cannot starve short API calls for other workloads.
SDK exceptions are translated into RuntimeGatewayError and its subclasses;
nothing from `docker.errors` leaks past this module.
"""

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from .errors import (
    ConfigError,
    ContainerConflictError,
    ContainerNotFoundError,
    RuntimeGatewayError,
    TransientNetworkError,
)
from .models import ContainerInfo, ContainerSpec

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = 503
TRANSIENT_MARKERS = ("temporarily unavailable", "toomanyrequests")
MANAGED_LABEL = "node_commander.managed"


def _is_transient(message: str, status_code: Optional[int] = None) -> bool:
    if status_code == TRANSIENT_STATUS:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


def _translate(e: Exception, what: str) -> RuntimeGatewayError:
    """Map a Docker SDK exception onto the gateway taxonomy."""
    if isinstance(e, (NotFound, ImageNotFound)):
        return ContainerNotFoundError(f"{what}: not found", cause=e)
    if isinstance(e, APIError):
        explanation = getattr(e, "explanation", None) or str(e)
        if e.status_code == 409:
            return ContainerConflictError(f"{what}: {explanation}", cause=e)
        return RuntimeGatewayError(f"{what}: {explanation}", cause=e)
    if isinstance(e, RuntimeGatewayError):
        return e
    return RuntimeGatewayError(f"{what}: {e}", cause=e)


# ── Stream Handles ────────────────────────────────────────

_EOF = object()


class LogStream:
    """
    Follow-mode log stream. Iterate with `async for`; `close()` releases the
    underlying HTTP response at once, even while a read is blocked.
    """

    def __init__(self, raw_stream, executor: ThreadPoolExecutor):
        self._raw = raw_stream
        self._iter = iter(raw_stream)
        self._executor = executor
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        loop = asyncio.get_running_loop()
        try:
            chunk = await loop.run_in_executor(self._executor, next, self._iter, _EOF)
        except Exception as e:
            if self._closed:
                raise StopAsyncIteration
            raise _translate(e, "log stream")
        if chunk is _EOF or self._closed:
            raise StopAsyncIteration
        return chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._raw.close()
        except Exception as e:
            logger.debug(f"[Runtime] Log stream close: {e}")


class AttachSession:
    """Hijacked stdin/stdout socket of a container."""

    def __init__(self, raw_socket, executor: ThreadPoolExecutor):
        self._raw = raw_socket
        # docker-py hands back a SocketIO wrapper on unix sockets
        self._sock = getattr(raw_socket, "_sock", raw_socket)
        self._executor = executor
        self._closed = False
        self._send_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise RuntimeGatewayError("attach session is closed")
        loop = asyncio.get_running_loop()
        async with self._send_lock:
            try:
                await loop.run_in_executor(self._executor, self._sock.sendall, data)
            except OSError as e:
                raise RuntimeGatewayError(f"attach send: {e}", cause=e)

    async def recv(self, size: int = 4096) -> bytes:
        """Next chunk of container output; b'' once the session ended."""
        if self._closed:
            return b""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self._sock.recv, size)
        except OSError:
            if self._closed:
                return b""
            raise

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for target in (self._sock, self._raw):
            try:
                target.close()
            except Exception as e:
                logger.debug(f"[Runtime] Attach close: {e}")


# ── Gateway ───────────────────────────────────────────────

class RuntimeGateway:
    """Docker-backed runtime. The client is created lazily on first use."""

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        *,
        data_path: str = "/app/data",
        network_mode: str = "host",
        stop_timeout: int = 10,
        pull_max_attempts: int = 3,
        pull_retry_backoff: float = 5.0,
        stream_workers: int = 64,
        pull_workers: int = 8,
    ):
        self._client = client
        self._client_lock = threading.Lock()
        self.data_path = data_path
        self.network_mode = network_mode
        self.stop_timeout = stop_timeout
        self.pull_max_attempts = max(1, pull_max_attempts)
        self.pull_retry_backoff = pull_retry_backoff
        self._stream_executor = ThreadPoolExecutor(
            max_workers=stream_workers, thread_name_prefix="runtime-stream"
        )
        self._pull_executor = ThreadPoolExecutor(
            max_workers=max(1, pull_workers), thread_name_prefix="runtime-pull"
        )

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    try:
                        self._client = docker.from_env()
                    except DockerException as e:
                        raise RuntimeGatewayError(f"Docker not available: {e}", cause=e)
                    logger.info("[Runtime] Docker client initialized")
        return self._client

    async def _call(self, what: str, fn: Callable, *args,
                    executor: Optional[ThreadPoolExecutor] = None, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(executor, functools.partial(fn, *args, **kwargs))
        except RuntimeGatewayError:
            raise
        except (DockerException, OSError) as e:
            raise _translate(e, what)

    def close(self) -> None:
        self._stream_executor.shutdown(wait=False)
        self._pull_executor.shutdown(wait=False)
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"[Runtime] Client close: {e}")

    # ── Daemon Info ───────────────────────────────────────

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", lambda: self.client.ping()))
        except RuntimeGatewayError:
            return False

    async def version(self) -> Dict[str, Any]:
        return await self._call("version", lambda: self.client.version())

    # ── Images ────────────────────────────────────────────

    async def pull_image(self, ref: str) -> None:
        """Block until the image is local. Retries only on transient failures."""
        if not ref or any(c.isspace() for c in ref):
            raise ConfigError(f"Invalid image reference: {ref!r}")

        for attempt in range(1, self.pull_max_attempts + 1):
            try:
                await self._call(
                    f"pull {ref}", self._pull_blocking, ref, executor=self._pull_executor
                )
                logger.info(f"[Runtime] Image ready: {ref}")
                return
            except TransientNetworkError as e:
                if attempt >= self.pull_max_attempts:
                    raise RuntimeGatewayError(
                        f"pull {ref}: still unavailable after {attempt} attempts: {e}", cause=e
                    )
                logger.warning(
                    f"[Runtime] Pull {ref} temporarily unavailable "
                    f"(attempt {attempt}/{self.pull_max_attempts}), retrying in {self.pull_retry_backoff}s"
                )
                await asyncio.sleep(self.pull_retry_backoff)

    def _pull_blocking(self, ref: str) -> None:
        repository, tag = parse_repository_tag(ref)
        try:
            events = self.client.api.pull(repository, tag=tag or "latest", stream=True, decode=True)
            for event in events:
                if "error" in event:
                    message = event.get("error") or ""
                    if _is_transient(message):
                        raise TransientNetworkError(message)
                    raise RuntimeGatewayError(f"pull {ref}: {message}")
                status = event.get("status")
                if status:
                    logger.debug(f"[Pull] {ref}: {status} {event.get('progress', '')}".rstrip())
        except APIError as e:
            explanation = getattr(e, "explanation", None) or str(e)
            if _is_transient(explanation, e.status_code):
                raise TransientNetworkError(explanation)
            raise

    # ── Container Lifecycle ───────────────────────────────

    async def create_container(self, spec: ContainerSpec) -> str:
        return await self._call(f"create {spec.name}", self._create_blocking, spec)

    def _create_blocking(self, spec: ContainerSpec) -> str:
        api = self.client.api
        port_bindings = {}
        for port, bindings in spec.port_bindings.items():
            port_bindings[port] = [
                (b.host_ip, b.host_port) if b.host_ip else b.host_port
                for b in bindings
            ]
        exposed = []
        for port in dict.fromkeys(list(spec.exposed_ports) + list(spec.port_bindings)):
            number, _, proto = str(port).partition("/")
            exposed.append((number, proto or "tcp"))

        host_config = api.create_host_config(
            port_bindings=port_bindings or None,
            binds=[f"{spec.volume_path}:{self.data_path}"],
            mem_limit=spec.memory_mb * 1024 * 1024 if spec.memory_mb else None,
            nano_cpus=int(spec.cpu_count * 1e9) if spec.cpu_count else None,
            network_mode=self.network_mode,
        )
        created = api.create_container(
            spec.image,
            command=spec.command,
            name=spec.name,
            environment=spec.env,
            ports=exposed or None,
            host_config=host_config,
            tty=True,
            stdin_open=True,
            labels={MANAGED_LABEL: "true"},
        )
        container_id = created["Id"]
        logger.info(f"[Runtime] Created {spec.name} ({container_id[:12]})")
        return container_id

    async def start_container(self, container_id: str) -> None:
        await self._call(f"start {container_id[:12]}", lambda: self.client.api.start(container_id))

    async def stop_container(self, container_id: str) -> None:
        await self._call(
            f"stop {container_id[:12]}",
            lambda: self.client.api.stop(container_id, timeout=self.stop_timeout),
        )

    async def kill_container(self, container_id: str) -> None:
        await self._call(f"kill {container_id[:12]}", lambda: self.client.api.kill(container_id))

    async def restart_container(self, container_id: str) -> None:
        await self._call(
            f"restart {container_id[:12]}",
            lambda: self.client.api.restart(container_id, timeout=self.stop_timeout),
        )

    async def pause_container(self, container_id: str) -> None:
        await self._call(f"pause {container_id[:12]}", lambda: self.client.api.pause(container_id))

    async def unpause_container(self, container_id: str) -> None:
        await self._call(f"unpause {container_id[:12]}", lambda: self.client.api.unpause(container_id))

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        await self._call(
            f"remove {container_id[:12]}",
            lambda: self.client.api.remove_container(container_id, force=force),
        )

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        attrs = await self._call(
            f"inspect {container_id[:12]}", lambda: self.client.api.inspect_container(container_id)
        )
        return ContainerInfo.from_attrs(attrs)

    async def list_containers(self, all: bool = True) -> List[Dict[str, Any]]:
        return await self._call("list", lambda: self.client.api.containers(all=all))

    # ── Telemetry ─────────────────────────────────────────

    async def poll_stats(self, container_id: str) -> Dict[str, Any]:
        """One point-in-time stats snapshot."""
        return await self._call(
            f"stats {container_id[:12]}",
            lambda: self.client.api.stats(container_id, stream=False),
        )

    async def stream_logs(self, container_id: str, follow: bool = True, tail: int = 25) -> LogStream:
        raw = await self._call(
            f"logs {container_id[:12]}",
            lambda: self.client.api.logs(
                container_id, stream=True, follow=follow, stdout=True, stderr=True, tail=tail
            ),
        )
        return LogStream(raw, self._stream_executor)

    async def attach(self, container_id: str) -> AttachSession:
        raw = await self._call(
            f"attach {container_id[:12]}",
            lambda: self.client.api.attach_socket(
                container_id, params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1}
            ),
        )
        return AttachSession(raw, self._stream_executor)
