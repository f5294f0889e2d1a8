"""
Node Commander — Telemetry Channel (WebSocket)
═══════════════════════════════════════════════════
One WebSocket connection = one workload, one purpose:

  /logs/{id}    follow the container log (last LOG_TAIL lines first)
  /stats/{id}   stats snapshot + volume size every STATS_INTERVAL seconds
  /exec/{id}    log follow + command lines written to the container's stdin

Protocol:
  Client → Server:
    {"event": "auth", "args": ["<node key>"]}          must be the first message
    {"event": "power:start" | "power:stop" | "power:restart"}
    {"event": "cmd", "command": "say hello"}          exec channels only

  Server → Client: plain text frames (log chunks, console notices) and, on
  stats channels, JSON snapshots.

  Binary frames are not part of the protocol. As the first message they close
  the channel with 1008; later they are answered with "Unsupported frame".

Close codes:
  4001 wrong secret       1008 no/late auth       1002 unknown channel kind
  4004 unknown workload   1011 runtime failure while opening the channel

Every background task and runtime stream belongs to the connection and is
released when it closes, whichever side closes it.
"""

import asyncio
import json
import logging
import secrets
from enum import Enum
from typing import Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from .errors import ConfigError, ContainerNotFoundError, RuntimeGatewayError
from .runtime import AttachSession, LogStream, RuntimeGateway
from .state_store import StateStore
from .volumes import VolumeManager

logger = logging.getLogger(__name__)

CLOSE_AUTH_FAILED = 4001
CLOSE_POLICY = 1008
CLOSE_PROTOCOL = 1002
CLOSE_UNKNOWN_WORKLOAD = 4004
CLOSE_RUNTIME_ERROR = 1011

CONSOLE_PREFIX = "\x1b[36;1m[node] \x1b[0m"
DAEMON_PREFIX = "\x1b[1m\x1b[33m[daemon] \x1b[0m"


class ChannelKind(str, Enum):
    LOGS = "logs"
    STATS = "stats"
    EXEC = "exec"


class ChannelState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATED = "AUTHENTICATED"
    LOGS = "LOGS"
    STATS = "STATS"
    EXEC = "EXEC"
    CLOSED = "CLOSED"


# power:stop kills, matching what the web console expects. Power events act on
# the container only; the state record stays READY, which means provisioned,
# not running.
POWER_EVENTS = {
    "power:start": "start_container",
    "power:stop": "kill_container",
    "power:restart": "restart_container",
}


class TelemetryChannel:
    """Serves one telemetry WebSocket from accept to teardown."""

    def __init__(
        self,
        websocket: WebSocket,
        kind: str,
        workload_id: str,
        *,
        secret: str,
        runtime: RuntimeGateway,
        store: StateStore,
        volumes: VolumeManager,
        stats_interval: float = 3.0,
        log_tail: int = 25,
        auth_timeout: float = 10.0,
        forward_exec_output: bool = False,
    ):
        self.ws = websocket
        self.kind = kind
        self.workload_id = workload_id
        self.secret = secret
        self.runtime = runtime
        self.store = store
        self.volumes = volumes
        self.stats_interval = stats_interval
        self.log_tail = log_tail
        self.auth_timeout = auth_timeout
        self.forward_exec_output = forward_exec_output

        self.state = ChannelState.UNAUTHENTICATED
        self.container_ref: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()
        self._log_stream: Optional[LogStream] = None
        self._attach: Optional[AttachSession] = None
        self._close_sent = False

    # ── Entry Point ───────────────────────────────────────

    async def serve(self) -> None:
        await self.ws.accept()
        try:
            if not await self._authenticate():
                return
            if not await self._resolve():
                return
            await self._send(f"{CONSOLE_PREFIX}console connected!")
            await self._receive_loop()
        except WebSocketDisconnect:
            logger.info(f"[Telemetry] Client disconnected ({self.kind}/{self.workload_id})")
        finally:
            await self.teardown()

    # ── Authentication ────────────────────────────────────

    async def _authenticate(self) -> bool:
        try:
            raw = await asyncio.wait_for(self._receive(), timeout=self.auth_timeout)
        except asyncio.TimeoutError:
            await self._close(CLOSE_POLICY, "Authentication timeout")
            return False

        if raw is None:
            await self._send("Unsupported frame")
            await self._close(CLOSE_POLICY, "Unauthorized access")
            return False

        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await self._send("Invalid JSON")
            await self._close(CLOSE_POLICY, "Unauthorized access")
            return False

        if not isinstance(msg, dict) or msg.get("event") != "auth":
            await self._send("Unauthorized access")
            await self._close(CLOSE_POLICY, "Unauthorized access")
            return False

        args = msg.get("args") or []
        supplied = str(args[0]) if isinstance(args, list) and args else ""
        if not self.secret or not secrets.compare_digest(supplied.encode(), self.secret.encode()):
            logger.warning(f"[Telemetry] Authentication failure on {self.kind}/{self.workload_id}")
            await self._send("Authentication failed")
            await self._close(CLOSE_AUTH_FAILED, "Authentication failed")
            return False

        self.state = ChannelState.AUTHENTICATED
        logger.info(f"[Telemetry] Authenticated {self.kind}/{self.workload_id}")
        return True

    # ── Purpose Resolution ────────────────────────────────

    async def _resolve(self) -> bool:
        """Fix the channel purpose and open its runtime resources."""
        try:
            kind = ChannelKind(self.kind)
        except ValueError:
            await self._close(CLOSE_PROTOCOL, "URL must start with /logs/, /stats/ or /exec/")
            return False

        try:
            self.volumes.validate_id(self.workload_id)
            self.container_ref = self.store.get(self.workload_id).container_id or self.workload_id
            info = await self.runtime.inspect_container(self.container_ref)
            self.container_ref = info.id or self.container_ref
        except (ConfigError, ContainerNotFoundError):
            await self._send("Container not found")
            await self._close(CLOSE_UNKNOWN_WORKLOAD, "Container not found")
            return False
        except RuntimeGatewayError as e:
            logger.error(f"[Telemetry] Inspect failed for {self.workload_id}: {e}")
            await self._close(CLOSE_RUNTIME_ERROR, "Runtime unavailable")
            return False

        try:
            if kind == ChannelKind.LOGS:
                await self._open_logs()
            elif kind == ChannelKind.STATS:
                self._spawn(self._poll_stats())
            else:
                await self._open_exec()
        except RuntimeGatewayError as e:
            logger.error(f"[Telemetry] Opening {kind.value} for {self.workload_id} failed: {e}")
            await self._send(f"Failed to open {kind.value} channel: {e}")
            await self._close(CLOSE_RUNTIME_ERROR, "Runtime failure")
            return False

        self.state = ChannelState(kind.name)
        return True

    async def _open_logs(self) -> None:
        self._log_stream = await self.runtime.stream_logs(
            self.container_ref, follow=True, tail=self.log_tail
        )
        self._spawn(self._pump_logs(self._log_stream))

    async def _open_exec(self) -> None:
        await self._open_logs()
        self._attach = await self.runtime.attach(self.container_ref)
        self._spawn(self._relay_attach_output(self._attach))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Mode Loops ────────────────────────────────────────

    async def _pump_logs(self, stream: LogStream) -> None:
        try:
            async for chunk in stream:
                if not await self._send(chunk.decode("utf-8", errors="replace")):
                    break
        except RuntimeGatewayError as e:
            logger.error(f"[Telemetry] Log stream error for {self.workload_id}: {e}")
            await self._send(f"Error in log stream: {e}")

    async def _poll_stats(self) -> None:
        while self.state != ChannelState.CLOSED:
            try:
                snapshot = dict(await self.runtime.poll_stats(self.container_ref))
                snapshot["volumeSize"] = await self.volumes.measure(self.workload_id)
                snapshot["workloadId"] = self.workload_id
                payload = json.dumps(snapshot)
            except RuntimeGatewayError as e:
                logger.warning(f"[Telemetry] Stats poll failed for {self.workload_id}: {e}")
                payload = json.dumps({"error": "Failed to fetch stats"})
            if not await self._send(payload):
                return
            await asyncio.sleep(self.stats_interval)

    async def _relay_attach_output(self, session: AttachSession) -> None:
        """Drain attach output; forwarded only when configured."""
        try:
            while True:
                data = await session.recv()
                if not data:
                    break
                if self.forward_exec_output:
                    if not await self._send(data.decode("utf-8", errors="replace")):
                        return
            await self._send("\nCommand execution completed")
        except OSError as e:
            logger.error(f"[Telemetry] Attach stream error for {self.workload_id}: {e}")
            await self._send(f"Error in attach stream: {e}")

    # ── Control Messages ──────────────────────────────────

    async def _receive_loop(self) -> None:
        while True:
            raw = await self._receive()
            if raw is None:
                await self._send("Unsupported frame")
                continue
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await self._send("Invalid JSON")
                continue
            if not isinstance(msg, dict):
                await self._send("Unsupported event")
                continue

            event = msg.get("event")
            if event in POWER_EVENTS:
                self._spawn(self._power(event))
            elif event == "cmd" and self.state == ChannelState.EXEC:
                await self._command(msg.get("command"))
            elif event == "auth":
                await self._send("Already authenticated")
            else:
                await self._send("Unsupported event")

    async def _power(self, event: str) -> None:
        action = event.split(":", 1)[1]
        await self._send(f"{DAEMON_PREFIX}working on it...")
        try:
            await getattr(self.runtime, POWER_EVENTS[event])(self.container_ref)
        except RuntimeGatewayError as e:
            logger.error(f"[Telemetry] {event} on {self.workload_id} failed: {e}")
            await self._send(f"{DAEMON_PREFIX}action failed!")
            return
        logger.info(f"[Telemetry] {event} on {self.workload_id} done")
        await self._send(f"{DAEMON_PREFIX}done! new power state: {action}")

    async def _command(self, command) -> None:
        if not isinstance(command, str) or not command:
            await self._send("command required")
            return
        logger.info(f"[Telemetry] Executing command on {self.workload_id}: {command}")
        try:
            await self._attach.send((command + "\n").encode("utf-8"))
        except RuntimeGatewayError as e:
            await self._send(f"Failed to send command: {e}")

    # ── Teardown ──────────────────────────────────────────

    async def teardown(self) -> None:
        """Cancel loops, then release runtime streams. Idempotent."""
        if self.state == ChannelState.CLOSED and not self._tasks:
            return
        self.state = ChannelState.CLOSED

        for task in list(self._tasks):
            task.cancel()
        # Closing the raw handles unblocks reader threads stuck in recv/next
        if self._log_stream is not None:
            self._log_stream.close()
        if self._attach is not None:
            self._attach.close()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        logger.info(f"[Telemetry] Channel closed ({self.kind}/{self.workload_id})")

    # ── Helpers ───────────────────────────────────────────

    async def _receive(self) -> Optional[str]:
        """Next text frame from the client; None for a binary frame."""
        message = await self.ws.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
        return message.get("text")

    async def _send(self, text: str) -> bool:
        """Send one text frame. False once the connection is gone."""
        if self._close_sent:
            return False
        try:
            await self.ws.send_text(text)
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"[Telemetry] Send failed on {self.kind}/{self.workload_id}: {e}")
            return False

    async def _close(self, code: int, reason: str) -> None:
        if self._close_sent:
            return
        self._close_sent = True
        try:
            await self.ws.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            logger.debug(f"[Telemetry] Close failed: {e}")
