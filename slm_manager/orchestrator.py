import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx

from .config import AppSettings
from .events import EventBus, Subscriber
from .health_monitor import HealthMonitor
from .instance_store import InstanceStore
from .log_buffer import LogBuffer, LogEntry
from .model_discovery import ModelDiscovery
from .process_supervisor import ProcessSupervisor, Spawner
from .registry import role_info
from .schemas import DiscoveredModel, InferenceBackend, InstanceConfig, InstanceStatus, ModelRole
from .status_board import StatusBoard


logger = logging.getLogger("uvicorn.error")


class LocalModelOrchestrator:
    """Public contract for role-bound local inference instances.

    Everything runs on one asyncio loop; per-instance locks in the supervisor
    serialize start/stop/update/remove for a given id.
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        spawner: Optional[Spawner] = None,
        http_client: Optional[Any] = None,
        backend_available: Optional[Callable[[InferenceBackend], bool]] = None,
    ) -> None:
        self.settings = settings
        self.bus = EventBus()
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.search_timeout_s)
        self._owns_client = http_client is None
        self.log_buffer = LogBuffer(
            max_entries=settings.log_max_entries,
            trim_count=settings.log_trim_count,
            on_append=self._on_log,
        )
        self.store = InstanceStore(settings.instances_path(), on_change=self._on_instances_changed)
        self.status_board = StatusBoard(on_change=self._on_status_changed)
        self.supervisor = ProcessSupervisor(
            self.store,
            self.status_board,
            self.log_buffer,
            binaries=settings.binaries,
            spawner=spawner,
            backend_available=backend_available,
            stop_timeout_s=settings.stop_timeout_s,
        )
        self.monitor = HealthMonitor(
            self.store,
            self.status_board,
            self.http_client,
            interval_s=settings.health_check_interval_s,
            timeout_s=settings.health_probe_timeout_s,
            uptime=self.supervisor.uptime,
        )
        self.discovery = ModelDiscovery(
            self.http_client,
            cache_paths=settings.cache_paths,
            hub_base_url=settings.hub_base_url,
            search_limit=settings.search_limit,
            search_timeout_s=settings.search_timeout_s,
            ollama_path=settings.binaries.ollama_path,
        )
        self._discovered: List[DiscoveredModel] = []
        self._discovering = False
        self._background: Set[asyncio.Task] = set()
        self._started = False
        self._closed = False

    # Lifecycle

    async def startup(self) -> None:
        if self._started:
            return
        self._started = True
        self.store.load()
        self.monitor.start()
        if self.settings.discover_on_startup:
            self.schedule(self.discover_installed_models())
        if self.settings.start_all_on_startup:
            self.schedule(self.start_all())
        logger.info("Model orchestrator ready with %d instances", len(self.store))

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Timer first so no probe races a process mid-termination.
        await self.monitor.stop()
        await self.supervisor.close()
        pending = [task for task in self._background if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._owns_client:
            await self.http_client.aclose()
        logger.info("Model orchestrator stopped")

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # Observable state

    @property
    def instances(self) -> Dict[str, InstanceConfig]:
        return self.store.snapshot()

    @property
    def statuses(self) -> Dict[str, InstanceStatus]:
        return self.status_board.snapshot()

    @property
    def discovered_models(self) -> List[DiscoveredModel]:
        return [model.model_copy() for model in self._discovered]

    @property
    def is_discovering(self) -> bool:
        return self._discovering

    @property
    def logs(self) -> Tuple[LogEntry, ...]:
        return self.log_buffer.snapshot()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self.bus.subscribe(callback)

    def clear_logs(self) -> None:
        self.log_buffer.clear()
        self.bus.publish("logs", {"cleared": True})

    # Configuration

    async def add_instance(self, config: InstanceConfig) -> InstanceConfig:
        return self.store.add(config)

    async def remove_instance(self, instance_id: str) -> Optional[InstanceConfig]:
        removed = await self.supervisor.discard(instance_id)
        if removed is not None:
            self.log_buffer.append(f"Removed {role_info(removed.role).display_name} instance {instance_id}")
        return removed

    async def update_instance(self, config: InstanceConfig) -> InstanceConfig:
        await self.supervisor.reconfigure(config)
        return self.store.get(config.id) or config

    def get_instance(self, role: ModelRole) -> Optional[InstanceConfig]:
        return self.store.get_by_role(role)

    # Lifecycle of instances

    async def start(self, instance_id: str) -> bool:
        if self._closed:
            return False
        return await self.supervisor.start(instance_id)

    async def stop(self, instance_id: str) -> None:
        await self.supervisor.stop(instance_id)

    async def stop_all(self) -> None:
        await self.supervisor.stop_all()

    async def start_all(self) -> Tuple[int, int]:
        if self._closed:
            return 0, 0
        started, failed = await self.supervisor.start_all()
        self.log_buffer.append(f"Start all: {started} started, {failed} failed")
        return started, failed

    # Discovery

    async def discover_installed_models(self) -> List[DiscoveredModel]:
        self._discovering = True
        self.bus.publish("discovery", {"running": True})
        try:
            found = await self.discovery.discover_installed()
        finally:
            self._discovering = False
        if self._closed:
            return found
        self._discovered = found
        self.log_buffer.append(f"Discovered {len(found)} installed models")
        self.bus.publish("discovered_models", [model.model_dump(mode="json") for model in found])
        self.bus.publish("discovery", {"running": False})
        return self.discovered_models

    async def search_models(self, query: str, backend: InferenceBackend) -> List[DiscoveredModel]:
        return await self.discovery.search(query, backend)

    # Change fan-out

    def _on_log(self, entry: LogEntry) -> None:
        self.bus.publish("logs", entry.to_dict())

    def _on_instances_changed(self) -> None:
        self.bus.publish("instances", sorted(self.store.snapshot()))

    def _on_status_changed(self, instance_id: str) -> None:
        status = self.status_board.get(instance_id)
        payload = status.model_dump(mode="json") if status else {"id": instance_id, "removed": True}
        self.bus.publish("statuses", payload)
