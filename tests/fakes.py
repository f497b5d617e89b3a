import asyncio
import itertools
from typing import Any, Dict, Iterable, List, Optional


_PIDS = itertools.count(4000)


class FakeProcessHandle:
    def __init__(
        self,
        argv: List[str],
        output: Optional[Iterable[str]] = None,
        ignore_terminate: bool = False,
    ) -> None:
        self.argv = list(argv)
        self.pid = next(_PIDS)
        self.ignore_terminate = ignore_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self._returncode: Optional[int] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._exited = asyncio.Event()
        for line in output or []:
            self._queue.put_nowait(line)

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def alive(self) -> bool:
        return self._returncode is None

    async def lines(self):
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    def emit(self, line: str) -> None:
        self._queue.put_nowait(line)

    def exit(self, code: int = 0) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self._queue.put_nowait(None)
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self._returncode  # type: ignore[return-value]

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)


class FakeSpawner:
    def __init__(
        self,
        fail_with: Optional[BaseException] = None,
        delay_seconds: float = 0.0,
        output: Optional[List[str]] = None,
        ignore_terminate: bool = False,
    ) -> None:
        self.fail_with = fail_with
        self.delay_seconds = delay_seconds
        self.output = output or []
        self.ignore_terminate = ignore_terminate
        self.calls: List[List[str]] = []
        self.handles: List[FakeProcessHandle] = []

    async def __call__(self, argv: List[str]) -> FakeProcessHandle:
        self.calls.append(list(argv))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with
        handle = FakeProcessHandle(argv, output=self.output, ignore_terminate=self.ignore_terminate)
        self.handles.append(handle)
        return handle

    def alive(self) -> List[FakeProcessHandle]:
        return [handle for handle in self.handles if handle.alive]


class StubResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        return self._payload


class StubHealthClient:
    """Answers GETs from a url -> outcome map.

    An outcome is a status code, an exception instance to raise, or ``"hang"``
    for a request that never completes.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None, default: Any = 200) -> None:
        self.routes = routes or {}
        self.default = default
        self.calls: List[str] = []

    async def get(self, url: str, timeout: Optional[float] = None, **kwargs: Any) -> StubResponse:
        self.calls.append(url)
        outcome = self.routes.get(url, self.default)
        if outcome == "hang":
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        return StubResponse(int(outcome))

    async def aclose(self) -> None:
        return None
