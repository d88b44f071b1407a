"""
Process Supervisor
==================

Runs the bridge as a child process and keeps it alive.

- parent stdin -> child stdin (held while no child runs)
- child stdout -> parent stdout, one validated JSON-RPC response per line,
  duplicates by id dropped
- child stderr -> our log, prefixed with ``bridge>``
- unexpected exits restart the child, throttled by RestartThrottle
- SIGINT/SIGTERM or parent stdin EOF stop everything, no more restarts
"""

import asyncio
import json
import logging
import os
import sys
from collections import OrderedDict
from enum import Enum
from typing import AsyncIterator, BinaryIO, Dict, List, Optional, Set

from ..config import Settings
from ..utils.errors import ChildSpawnError
from ..utils.pidfile import PidFile, cleanup_stale, pid_alive
from ..utils.restart_throttle import RestartThrottle
from .bridge import install_stop_signals, open_stdin_reader, remove_stop_signals

logger = logging.getLogger("devtools.supervisor")

READ_CHUNK = 64 * 1024


class SupervisorPhase(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


async def read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines (without the newline), any length."""
    buffer = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        buffer.extend(chunk)
        while True:
            newline = buffer.find(b"\n")
            if newline == -1:
                break
            line = bytes(buffer[:newline])
            del buffer[:newline + 1]
            yield line
    if buffer:
        yield bytes(buffer)


class ResponseRelay:
    """Child stdout to parent stdout.

    With ``dedupe`` the relay only lets well-formed JSON-RPC lines through and
    forwards each response id once; a restarted child answering a request that
    its predecessor already answered is dropped here. Without it the relay is
    byte-transparent.
    """

    def __init__(self, output: BinaryIO, dedupe: bool = True, memory: int = 1024):
        self.output = output
        self.dedupe = dedupe
        self.memory = memory
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self.relayed = 0
        self.dropped = 0

    def write_raw(self, chunk: bytes) -> None:
        self.output.write(chunk)
        self.output.flush()

    def relay_line(self, line: bytes) -> bool:
        """Validate one child line and forward it. Returns True if it was written."""
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return False
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            self.dropped += 1
            logger.warning(f"Dropping non-JSON output from bridge: {text[:200]}")
            return False

        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
            self.dropped += 1
            logger.warning(f"Dropping non JSON-RPC output from bridge: {text[:200]}")
            return False

        if "method" not in message:
            if "id" not in message or ("result" in message) == ("error" in message):
                self.dropped += 1
                logger.warning(f"Dropping malformed response from bridge: {text[:200]}")
                return False
            if message["id"] is not None and not self._remember(message["id"]):
                self.dropped += 1
                logger.info(f"Dropping duplicate response for id {message['id']!r}")
                return False

        self.write_raw(text.encode("utf-8") + b"\n")
        self.relayed += 1
        return True

    def _remember(self, response_id) -> bool:
        # 1 and "1" are different ids
        key = json.dumps(response_id, sort_keys=True)
        if key in self._seen:
            return False
        self._seen[key] = None
        while len(self._seen) > self.memory:
            self._seen.popitem(last=False)
        return True


class Supervisor:
    def __init__(
        self,
        settings: Settings,
        output: Optional[BinaryIO] = None,
        child_argv: Optional[List[str]] = None,
        throttle: Optional[RestartThrottle] = None,
    ):
        self.settings = settings
        self.child_argv = child_argv or [
            sys.executable, "-m", "devtools_bridge", "bridge", "--no-log-file",
        ]
        self.throttle = throttle or RestartThrottle(
            max_restarts=settings.max_restarts,
            cooldown=settings.restart_cooldown,
        )
        self.relay = ResponseRelay(
            output if output is not None else sys.stdout.buffer,
            dedupe=settings.relay_dedupe,
        )
        self.service_pidfile = PidFile(settings.service_pid_file)
        self.bridge_pidfile = PidFile(settings.bridge_pid_file)

        self.phase = SupervisorPhase.STOPPED
        self.child: Optional[asyncio.subprocess.Process] = None
        self.shutdown_requested = False
        self.spawn_count = 0

        self._held = bytearray()
        self._expected_exits: Set[int] = set()
        self._child_tasks: Set[asyncio.Task] = set()
        self._restart_task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None

    @property
    def restart_count(self) -> int:
        return self.throttle.restart_count

    @property
    def held_bytes(self) -> int:
        return len(self._held)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self, reader: Optional[asyncio.StreamReader] = None) -> int:
        """Supervise until shutdown. Returns the process exit code."""
        loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        install_stop_signals(loop, self._on_signal)
        self.phase = SupervisorPhase.STARTING
        logger.info(f"Starting MCP service (PID: {os.getpid()})")

        killed = cleanup_stale(
            [self.service_pidfile, self.bridge_pidfile],
            timeout=self.settings.child_stop_timeout,
        )
        if killed:
            logger.info(f"Stopped stale processes: {killed}")
        try:
            self.service_pidfile.write()
        except OSError as e:
            logger.warning(f"Could not write {self.service_pidfile.path}: {e}")

        try:
            await self.start_child()
        except ChildSpawnError as e:
            logger.error(f"Failed to start bridge: {e}")
            self.shutdown_requested = True
            self._remove_artifacts()
            self.phase = SupervisorPhase.STOPPED
            remove_stop_signals(loop)
            return 1

        if reader is None:
            reader = await open_stdin_reader()
        stdin_task = asyncio.create_task(self._pump_stdin(reader), name="stdin-relay")
        health_task = asyncio.create_task(self._health_loop(), name="supervisor-health")

        try:
            await self._stop.wait()
        finally:
            stdin_task.cancel()
            health_task.cancel()
            await self.shutdown()
            await asyncio.gather(stdin_task, health_task, return_exceptions=True)
            remove_stop_signals(loop)

        logger.info("Service cleanup complete")
        return 0

    def request_stop(self) -> None:
        self.shutdown_requested = True
        if self._stop is not None:
            self._stop.set()

    async def shutdown(self) -> None:
        logger.info("Shutting down MCP service...")
        self.shutdown_requested = True
        self.phase = SupervisorPhase.SHUTTING_DOWN
        if self._restart_task is not None:
            self._restart_task.cancel()
            await asyncio.gather(self._restart_task, return_exceptions=True)
        await self.stop_child()
        if self._child_tasks:
            await asyncio.wait(list(self._child_tasks), timeout=self.settings.child_stop_timeout)
        self._remove_artifacts()
        self.phase = SupervisorPhase.STOPPED

    def _remove_artifacts(self) -> None:
        self.bridge_pidfile.remove()
        self.service_pidfile.remove()

    def _on_signal(self, sig) -> None:
        logger.info(f"Received {sig.name}, shutting down")
        self.request_stop()

    # -------------------------------------------------------------------------
    # Child process
    # -------------------------------------------------------------------------

    def child_env(self) -> Dict[str, str]:
        """Our effective settings (CLI flags included) for the child."""
        s = self.settings
        env = {
            "DEVTOOLS_STATE_DIR": str(s.state_dir),
            "DEVTOOLS_HOST": s.host,
            "DEVTOOLS_PORT_MIN": str(s.port_min),
            "DEVTOOLS_PORT_MAX": str(s.port_max),
            "DEVTOOLS_REQUEST_TIMEOUT": str(s.request_timeout),
            "DEVTOOLS_MAX_MESSAGE_SIZE": str(s.max_message_size),
            "DEVTOOLS_DEBUG": "true" if s.debug else "false",
        }
        if s.port_file is not None:
            env["DEVTOOLS_PORT_FILE"] = str(s.port_file)
        return env

    async def _spawn_child(self) -> asyncio.subprocess.Process:
        env = dict(os.environ)
        env.update(self.child_env())
        env.setdefault("PYTHONUNBUFFERED", "1")
        return await asyncio.create_subprocess_exec(
            *self.child_argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )

    async def start_child(self) -> asyncio.subprocess.Process:
        """Spawn a bridge, wire its pipes and hand it any held input."""
        self.phase = SupervisorPhase.STARTING
        logger.info(f"Starting MCP bridge: {' '.join(self.child_argv)}")
        try:
            proc = await self._spawn_child()
        except OSError as e:
            raise ChildSpawnError(f"Could not spawn bridge: {e}", {"argv": self.child_argv}) from e

        self.child = proc
        self.spawn_count += 1
        try:
            self.bridge_pidfile.write(proc.pid)
        except OSError as e:
            logger.warning(f"Could not write {self.bridge_pidfile.path}: {e}")
        logger.info(f"Bridge PID: {proc.pid}")

        pumps = [
            self._track(self._pump_stdout(proc)),
            self._track(self._pump_stderr(proc)),
        ]
        self._track(self._watch_child(proc, pumps))
        self.phase = SupervisorPhase.RUNNING

        if self._held:
            data = bytes(self._held)
            self._held.clear()
            logger.info(f"Delivering {len(data)} held bytes to the new bridge")
            await self._deliver(data)
        return proc

    async def stop_child(self) -> None:
        """Terminate the current child; kill it if it outlives ``child_stop_timeout``."""
        proc = self.child
        if proc is None or proc.returncode is not None:
            return
        self._expected_exits.add(proc.pid)
        logger.info(f"Stopping bridge (PID {proc.pid})")
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.settings.child_stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Bridge {proc.pid} did not exit in time, killing")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._child_tasks.add(task)
        task.add_done_callback(self._child_tasks.discard)
        return task

    async def _watch_child(self, proc: asyncio.subprocess.Process, pumps: List[asyncio.Task]) -> None:
        returncode = await proc.wait()
        # Responses written right before the exit still go out
        await asyncio.wait(pumps, timeout=self.settings.child_stop_timeout)

        expected = proc.pid in self._expected_exits
        self._expected_exits.discard(proc.pid)
        if proc is not self.child:
            logger.debug(f"Old bridge {proc.pid} exited with code {returncode}")
            return
        self.child = None
        self.bridge_pidfile.remove()

        if self.shutdown_requested or expected:
            logger.info(f"Bridge exited with code {returncode}")
            return
        logger.warning(f"Bridge exited unexpectedly with code {returncode}")
        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self.shutdown_requested:
            return
        if self._restart_task is not None and not self._restart_task.done():
            return
        self.phase = SupervisorPhase.RESTARTING
        self._restart_task = asyncio.create_task(self._restart(), name="bridge-restart")

    async def _restart(self) -> None:
        while not self.shutdown_requested:
            deferral = self.throttle.record_crash()
            if deferral:
                logger.warning(f"Restart deferred for {deferral:.0f}s")
                if not await self._sleep_unless_stopped(deferral):
                    return
                self.throttle.reset()
            else:
                logger.info(
                    f"Restarting bridge in {self.settings.restart_delay:g} seconds "
                    f"(restart count: {self.throttle.restart_count})"
                )
                if not await self._sleep_unless_stopped(self.settings.restart_delay):
                    return
            try:
                await self.start_child()
                return
            except ChildSpawnError as e:
                logger.error(f"Failed to restart bridge: {e}")
                self.phase = SupervisorPhase.RESTARTING

    async def _sleep_unless_stopped(self, delay: float) -> bool:
        """Sleep ``delay`` seconds. False if shutdown started meanwhile."""
        if self._stop is None:
            await asyncio.sleep(delay)
            return not self.shutdown_requested
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return not self.shutdown_requested
        return False

    # -------------------------------------------------------------------------
    # Relays
    # -------------------------------------------------------------------------

    async def _pump_stdin(self, reader: asyncio.StreamReader) -> None:
        while True:
            chunk = await reader.read(READ_CHUNK)
            if not chunk:
                break
            await self._deliver(chunk)
        logger.info("Parent stdin closed, shutting down")
        self.request_stop()

    async def _deliver(self, data: bytes) -> None:
        proc = self.child
        if (
            proc is None
            or self.phase != SupervisorPhase.RUNNING
            or proc.stdin is None
            or proc.stdin.is_closing()
        ):
            self._held.extend(data)
            logger.debug(f"No bridge running, holding {len(data)} bytes ({len(self._held)} total)")
            return
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Bridge stdin closed ({e}), holding {len(data)} bytes")
            self._held.extend(data)

    async def _pump_stdout(self, proc: asyncio.subprocess.Process) -> None:
        try:
            if not self.relay.dedupe:
                while True:
                    chunk = await proc.stdout.read(READ_CHUNK)
                    if not chunk:
                        break
                    self.relay.write_raw(chunk)
                return
            async for line in read_lines(proc.stdout):
                self.relay.relay_line(line)
        except OSError as e:
            logger.error(f"Error processing bridge output: {e}")

    async def _pump_stderr(self, proc: asyncio.subprocess.Process) -> None:
        async for line in read_lines(proc.stderr):
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info(f"bridge> {text}")

    # -------------------------------------------------------------------------
    # Health check
    # -------------------------------------------------------------------------

    def child_alive(self) -> bool:
        proc = self.child
        return proc is not None and proc.returncode is None and pid_alive(proc.pid)

    async def check_health(self) -> None:
        alive = self.child_alive()
        logger.info(
            f"Health check: Service running (PID: {os.getpid()}), "
            f"Bridge running: {'Yes' if alive else 'No'}, phase: {self.phase.value}, "
            f"restarts: {self.throttle.restart_count}"
            f"{' (throttled)' if self.throttle.is_throttled() else ''}, spawned: {self.spawn_count}"
        )
        if alive or self.shutdown_requested or self.phase in (SupervisorPhase.STARTING, SupervisorPhase.RESTARTING):
            return
        proc = self.child
        if proc is not None:
            # Gone without an exit event: forget it, a late exit is not a crash
            self._expected_exits.add(proc.pid)
            self.child = None
        logger.warning("Health check: Bridge process is not running, restarting...")
        self._schedule_restart()

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.supervisor_check_interval)
            await self.check_health()
