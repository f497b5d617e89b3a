import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

from .config import BackendBinaries
from .instance_store import InstanceStore, UnknownInstanceError
from .log_buffer import LogBuffer
from .registry import backend_info, backend_is_available, role_info
from .schemas import InferenceBackend, InstanceConfig, InstanceStatus
from .status_board import StatusBoard


logger = logging.getLogger("uvicorn.error")

_STREAM_LIMIT = 1024 * 1024
_DRAIN_TIMEOUT_S = 1.0


class LaunchError(RuntimeError):
    pass


class ProcessHandle(Protocol):
    pid: Optional[int]

    @property
    def returncode(self) -> Optional[int]:
        ...

    def lines(self) -> AsyncIterator[str]:
        ...

    async def wait(self) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


Spawner = Callable[[List[str]], Awaitable[ProcessHandle]]


class AsyncioProcessHandle:
    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self.proc = proc
        self.pid = proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    async def lines(self) -> AsyncIterator[str]:
        stream = self.proc.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line exceeded the stream limit; the oversized chunk is dropped.
                continue
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def wait(self) -> int:
        return await self.proc.wait()

    def terminate(self) -> None:
        self.proc.terminate()

    def kill(self) -> None:
        self.proc.kill()


async def spawn_process(argv: List[str]) -> ProcessHandle:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        limit=_STREAM_LIMIT,
    )
    return AsyncioProcessHandle(proc)


def build_command(config: InstanceConfig, binaries: BackendBinaries) -> List[str]:
    backend = InferenceBackend(config.backend)
    server_args = ["--model", config.model, "--host", config.host, "--port", str(config.port)]
    if backend == InferenceBackend.MLX:
        argv = [binaries.python_exe, "-m", "mlx_lm.server", *server_args]
    elif backend == InferenceBackend.LLAMA_CPP:
        argv = [binaries.llama_server_path, *server_args]
    elif backend == InferenceBackend.OLLAMA:
        # One global server; models are selected per request, so no per-instance args.
        return [binaries.ollama_path, "serve"]
    else:
        raise LaunchError(f"{backend_info(backend).display_name} is not supported by the supervisor")
    if config.custom_args:
        argv.extend(config.custom_args)
    return argv


def stopped_status(config: InstanceConfig) -> InstanceStatus:
    return InstanceStatus(
        id=config.id,
        role=config.role,
        backend=config.backend,
        running=False,
        model=config.model,
        port=config.port,
    )


@dataclass
class TrackedProcess:
    instance_id: str
    backend: InferenceBackend
    handle: ProcessHandle
    tag: str
    started_at: float
    argv: List[str] = field(default_factory=list)
    shared: bool = False
    reader: Optional[asyncio.Task] = None


@dataclass
class SharedServer:
    backend: InferenceBackend
    handle: ProcessHandle
    started_at: float
    users: Set[str] = field(default_factory=set)
    reader: Optional[asyncio.Task] = None


class ProcessSupervisor:
    def __init__(
        self,
        store: InstanceStore,
        statuses: StatusBoard,
        logs: LogBuffer,
        *,
        binaries: Optional[BackendBinaries] = None,
        spawner: Optional[Spawner] = None,
        backend_available: Optional[Callable[[InferenceBackend], bool]] = None,
        stop_timeout_s: float = 5.0,
    ) -> None:
        self.store = store
        self.statuses = statuses
        self.logs = logs
        self.binaries = binaries or BackendBinaries()
        self.spawner = spawner or spawn_process
        self.backend_available = backend_available or backend_is_available
        self.stop_timeout_s = stop_timeout_s
        self._processes: Dict[str, TrackedProcess] = {}
        self._shared: Dict[InferenceBackend, SharedServer] = {}
        self._shared_lock = asyncio.Lock()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._closing = False

    @property
    def closing(self) -> bool:
        return self._closing

    def lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    def is_tracked(self, instance_id: str) -> bool:
        tracked = self._processes.get(instance_id)
        return tracked is not None and tracked.handle.returncode is None

    def tracked_ids(self) -> List[str]:
        return list(self._processes)

    def uptime(self, instance_id: str) -> Optional[float]:
        tracked = self._processes.get(instance_id)
        if tracked is None or tracked.handle.returncode is not None:
            return None
        return max(0.0, time.monotonic() - tracked.started_at)

    def pid(self, instance_id: str) -> Optional[int]:
        tracked = self._processes.get(instance_id)
        return tracked.handle.pid if tracked else None

    async def start(self, instance_id: str) -> bool:
        async with self.lock_for(instance_id):
            return await self._start_locked(instance_id)

    async def stop(self, instance_id: str) -> None:
        async with self.lock_for(instance_id):
            await self._stop_locked(instance_id)

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop(instance_id) for instance_id in list(self._processes)))
        await self._stop_shared()

    async def close(self) -> None:
        """Refuse new starts, then stop everything.

        Every id with a lock is stopped too, so a start that is still waiting
        on its spawner finishes first and its process is terminated here.
        """
        self._closing = True
        pending = set(self._processes) | set(self._locks)
        await asyncio.gather(*(self.stop(instance_id) for instance_id in pending))
        await self._stop_shared()

    async def _stop_shared(self) -> None:
        async with self._shared_lock:
            leftovers = list(self._shared.values())
            self._shared.clear()
        for server in leftovers:
            await self._terminate(server.handle)
            await self._drain(server.reader)

    async def start_all(self) -> Tuple[int, int]:
        ids = [config.id for config in self.store.all() if config.enabled and config.auto_start]
        results = await asyncio.gather(*(self.start(instance_id) for instance_id in ids), return_exceptions=True)
        started = sum(1 for result in results if result is True)
        return started, len(results) - started

    async def reconfigure(self, config: InstanceConfig) -> bool:
        """Stop, rewrite and (if it was running and is still enabled) restart.

        Returns True when the instance was restarted with the new parameters.
        """
        async with self.lock_for(config.id):
            if config.id not in self.store:
                raise UnknownInstanceError(config.id)
            was_running = self.is_tracked(config.id) or self.statuses.is_running(config.id)
            if was_running:
                await self._stop_locked(config.id)
            self.statuses.bump(config.id)
            self.store.update(config)
            if was_running and config.enabled:
                return await self._start_locked(config.id)
            return False

    async def discard(self, instance_id: str) -> Optional[InstanceConfig]:
        async with self.lock_for(instance_id):
            await self._stop_locked(instance_id)
            removed = self.store.remove(instance_id)
            self.statuses.remove(instance_id)
        self._locks.pop(instance_id, None)
        return removed

    async def _start_locked(self, instance_id: str) -> bool:
        config = self.store.get(instance_id)
        if config is None or not config.enabled or self._closing:
            return False
        if self.is_tracked(instance_id):
            return True
        tag = role_info(config.role).display_name
        info = backend_info(config.backend)
        self.logs.append(f"Starting {tag}: {config.model}")
        if not self.backend_available(config.backend):
            self.logs.append(f"✗ {info.display_name} not available on this platform")
            logger.warning("Backend %s unavailable; not starting %s", config.backend.value, instance_id)
            return False
        try:
            if info.shared_server:
                tracked = await self._attach_shared(config, tag)
            else:
                tracked = await self._spawn_private(config, tag)
        except Exception as exc:
            self.logs.append(f"✗ Failed to start {tag}: {exc}")
            logger.warning("Launch of %s (%s) failed: %s", tag, instance_id, exc)
            return False
        self._processes[instance_id] = tracked
        self.logs.append(f"✓ {tag} started on port {config.port}")
        logger.info("Started %s (%s) pid=%s", tag, instance_id, tracked.handle.pid)
        return True

    async def _spawn_private(self, config: InstanceConfig, tag: str) -> TrackedProcess:
        argv = build_command(config, self.binaries)
        handle = await self.spawner(argv)
        tracked = TrackedProcess(
            instance_id=config.id,
            backend=config.backend,
            handle=handle,
            tag=tag,
            started_at=time.monotonic(),
            argv=argv,
        )
        tracked.reader = asyncio.create_task(
            self._pump_output(handle, tag, lambda code: self._on_private_exit(tracked, code))
        )
        return tracked

    async def _attach_shared(self, config: InstanceConfig, tag: str) -> TrackedProcess:
        async with self._shared_lock:
            server = self._shared.get(config.backend)
            if server is not None and server.handle.returncode is None:
                self.logs.append(f"{tag} attached to running {backend_info(config.backend).display_name} server")
            else:
                argv = build_command(config, self.binaries)
                handle = await self.spawner(argv)
                server = SharedServer(backend=config.backend, handle=handle, started_at=time.monotonic())
                # Output belongs to the backend, not to whichever role launched it.
                server.reader = asyncio.create_task(
                    self._pump_output(
                        handle,
                        backend_info(config.backend).display_name,
                        lambda code: self._on_shared_exit(server, code),
                    )
                )
                self._shared[config.backend] = server
            server.users.add(config.id)
            return TrackedProcess(
                instance_id=config.id,
                backend=config.backend,
                handle=server.handle,
                tag=tag,
                started_at=server.started_at,
                shared=True,
            )

    async def _stop_locked(self, instance_id: str) -> None:
        tracked = self._processes.pop(instance_id, None)
        if tracked is not None:
            if tracked.shared:
                await self._release_shared(tracked)
            else:
                await self._terminate(tracked.handle)
                await self._drain(tracked.reader)
            self.logs.append(f"Stopped {tracked.tag}")
            logger.info("Stopped %s (%s)", tracked.tag, instance_id)
        self.statuses.bump(instance_id)
        config = self.store.get(instance_id)
        if config is not None:
            self.statuses.set(stopped_status(config))

    async def _release_shared(self, tracked: TrackedProcess) -> None:
        async with self._shared_lock:
            server = self._shared.get(tracked.backend)
            if server is None or server.handle is not tracked.handle:
                return
            server.users.discard(tracked.instance_id)
            if server.users:
                return
            self._shared.pop(tracked.backend, None)
        await self._terminate(server.handle)
        await self._drain(server.reader)

    async def _terminate(self, handle: ProcessHandle) -> None:
        if handle.returncode is not None:
            return
        try:
            handle.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(handle.wait(), timeout=self.stop_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Process %s ignored terminate; killing", handle.pid)
            try:
                handle.kill()
            except ProcessLookupError:
                return
            await handle.wait()

    async def _drain(self, reader: Optional[asyncio.Task]) -> None:
        if reader is None or reader.done():
            return
        await asyncio.wait({reader}, timeout=_DRAIN_TIMEOUT_S)
        if not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def _pump_output(self, handle: ProcessHandle, tag: str, on_exit: Callable[[int], None]) -> None:
        try:
            async for line in handle.lines():
                text = line.strip()
                if text:
                    self.logs.append(f"[{tag}] {text}")
            code = await handle.wait()
        except Exception as exc:
            logger.warning("Output reader for %s failed: %s", tag, exc)
            return
        on_exit(code)

    def _on_private_exit(self, tracked: TrackedProcess, code: int) -> None:
        if self._processes.get(tracked.instance_id) is not tracked:
            return
        self._processes.pop(tracked.instance_id, None)
        self.logs.append(f"[{tracked.tag}] exited with code {code}")

    def _on_shared_exit(self, server: SharedServer, code: int) -> None:
        if self._shared.get(server.backend) is not server:
            return
        self._shared.pop(server.backend, None)
        for instance_id in list(server.users):
            tracked = self._processes.get(instance_id)
            if tracked is not None and tracked.handle is server.handle:
                self._processes.pop(instance_id, None)
        self.logs.append(f"{backend_info(server.backend).display_name} server exited with code {code}")
