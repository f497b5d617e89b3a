import asyncio
import logging
from typing import Any, Callable, Optional, Set

from .instance_store import InstanceStore
from .schemas import InstanceConfig, InstanceStatus
from .status_board import StatusBoard


logger = logging.getLogger("uvicorn.error")

DEFAULT_INTERVAL_S = 10.0
DEFAULT_TIMEOUT_S = 3.0


def health_url(config: InstanceConfig) -> str:
    return f"http://{config.host}:{config.port}/health"


class HealthMonitor:
    """Periodic /health probes for every enabled instance.

    Observation only: a failed probe updates the status board and nothing else.
    There is no backoff; every tick probes every enabled instance again.
    """

    def __init__(
        self,
        store: InstanceStore,
        statuses: StatusBoard,
        client: Any,
        *,
        interval_s: float = DEFAULT_INTERVAL_S,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        uptime: Optional[Callable[[str], Optional[float]]] = None,
    ) -> None:
        self.store = store
        self.statuses = statuses
        self.client = client
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.uptime = uptime
        self._loop_task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._loop_task
        self._loop_task = None
        pending = [t for t in (task, *self._ticks) if t is not None and not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._ticks.clear()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            # Ticks run detached so a slow tick never shifts the timer.
            tick = asyncio.create_task(self.tick())
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)

    async def tick(self) -> int:
        targets = [config for config in self.store.all() if config.enabled]
        if targets:
            await asyncio.gather(*(self.probe(config) for config in targets))
        return len(targets)

    async def probe(self, config: InstanceConfig) -> InstanceStatus:
        generation = self.statuses.generation(config.id)
        running = False
        error: Optional[str] = None
        try:
            resp = await asyncio.wait_for(
                self.client.get(health_url(config), timeout=self.timeout_s),
                timeout=self.timeout_s,
            )
            running = resp.status_code == 200
            if not running:
                error = f"HTTP {resp.status_code}"
        except asyncio.TimeoutError:
            error = f"health probe timed out after {self.timeout_s:g}s"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        status = InstanceStatus(
            id=config.id,
            role=config.role,
            backend=config.backend,
            running=running,
            model=config.model,
            port=config.port,
            uptime_s=self.uptime(config.id) if (running and self.uptime) else None,
            error=error,
        )
        # The instance may have been removed, stopped or reconfigured while the probe was in flight.
        current = self.store.get(config.id)
        if current is None or current.port != config.port or current.host != config.host:
            return status
        self.statuses.set_if_current(status, generation)
        return status
