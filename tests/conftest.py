"""
Pytest fixtures and fakes for the PDF service tests.
"""

import asyncio
import os
from pathlib import Path

# IMPORTANT: Set environment variables BEFORE any imports from pdf_service.webapi
# so the module-level configuration picks them up.
os.environ["PDFER_API_KEY"] = "test-api-key"
os.environ["LOG_LEVEL"] = "DEBUG"

import pytest

from pdf_service.conversion import ConversionExecutor, ConversionQueue, EngineError, Job, RetryPolicy


class FakeEngine:
    """Converter whose behaviour is driven by the source file's content.

    ``ok`` content converts, ``crash`` raises an engine failure,
    ``unsupported`` raises the could-not-be-opened error and ``hang``
    blocks until ``release`` is set. Per-source overrides go in ``script``
    as a list of behaviours consumed one per attempt.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.release = asyncio.Event()
        self.script: dict[str, list[str]] = {}

    def _behaviour(self, source_path: str) -> str:
        queued = self.script.get(source_path)
        if queued:
            return queued.pop(0)
        return Path(source_path).read_text().strip() or "ok"

    async def convert_to_pdf(self, source_path: str) -> bytes:
        self.calls.append(source_path)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            behaviour = self._behaviour(source_path)
            await asyncio.sleep(0.005)
            if behaviour == "hang":
                await self.release.wait()
                return b"%PDF-1.4 late"
            if behaviour == "crash":
                raise EngineError("Unoconv crashed: connection reset")
            if behaviour == "unsupported":
                raise EngineError(f"Error: source file could not be opened: {source_path}")
            return b"%PDF-1.4 " + Path(source_path).name.encode()
        finally:
            self.in_flight -= 1


class FakeListener:
    def __init__(self, port: int, pid: int) -> None:
        self.port = port
        self._pid = pid
        self._closed = asyncio.Event()
        self.exit_code: int | None = None
        self.terminated = False

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def alive(self) -> bool:
        return not self._closed.is_set()

    def crash(self, code: int = 139) -> None:
        self.exit_code = code
        self._closed.set()

    async def wait_closed(self) -> int | None:
        await self._closed.wait()
        return self.exit_code

    def terminate(self) -> None:
        self.terminated = True
        self.crash(0)


class FakeLauncher:
    def __init__(self, port: int = 8085, failures: int = 0) -> None:
        self.port = port
        self.failures = failures
        self.listeners: list[FakeListener] = []

    async def launch(self) -> FakeListener:
        if self.failures:
            self.failures -= 1
            raise FileNotFoundError("unoconv")
        listener = FakeListener(self.port, 1000 + len(self.listeners))
        self.listeners.append(listener)
        return listener

    @property
    def current(self) -> FakeListener:
        return self.listeners[-1]


class FakeProcessTable:
    def __init__(self, pids: list[int] | None = None) -> None:
        self.pids = pids or []
        self.queried_ports: list[int] = []
        self.killed: list[int] = []
        self.errors: dict[int, Exception] = {}

    def engine_pids(self, port: int) -> list[int]:
        self.queried_ports.append(port)
        return list(self.pids)

    def kill(self, pid: int) -> None:
        if pid in self.errors:
            raise self.errors[pid]
        self.killed.append(pid)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def make_source(tmp_path):
    def _make(name: str, behaviour: str = "ok") -> str:
        path = tmp_path / name
        path.write_text(behaviour)
        return str(path)
    return _make


@pytest.fixture
def make_job(tmp_path):
    def _make(source_path: str) -> Job:
        loop = asyncio.get_running_loop()
        dest = tmp_path / (Path(source_path).stem + ".pdf")
        return Job(source_path, str(dest), loop.create_future())
    return _make


@pytest.fixture
def queue(engine):
    return ConversionQueue(ConversionExecutor(engine, timeout=5), RetryPolicy(5), drain_delay=0.01)
