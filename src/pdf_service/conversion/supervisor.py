"""
Engine supervision.

LibreOffice crashes now and then. Once it has died, unoconv goes back to
launching a fresh office instance on every conversion unless the old
instances are killed first, so the supervisor reaps every engine process on
the port and relaunches the listener itself.
"""

import asyncio
import enum
import logging
import os
from dataclasses import dataclass, field

from .errors import SupervisorSweepError
from .interfaces import EngineLauncher, EngineListener, ProcessTable
from .queue import ConversionQueue

logger = logging.getLogger(__name__)


class SupervisorState(enum.Enum):
    STARTING = "starting"
    LISTENING = "listening"
    REAPING = "reaping"
    STOPPED = "stopped"


@dataclass
class SweepReport:
    killed: list[int] = field(default_factory=list)
    already_gone: list[int] = field(default_factory=list)
    errors: list[SupervisorSweepError] = field(default_factory=list)


class ProcessSweeper:
    """Best-effort kill of every engine process bound to a port."""

    def __init__(self, table: ProcessTable) -> None:
        self._table = table

    def reap(self, port: int) -> SweepReport:
        report = SweepReport()
        try:
            pids = self._table.engine_pids(port)
        except Exception as e:
            logger.error("Unable to list engine processes on port %d: %s", port, e)
            report.errors.append(SupervisorSweepError(-1, str(e)))
            return report

        for pid in pids:
            if pid == os.getpid():
                continue
            logger.info("Killing engine process: %d", pid)
            try:
                self._table.kill(pid)
            except ProcessLookupError:
                report.already_gone.append(pid)
            except Exception as e:
                err = SupervisorSweepError(pid, str(e))
                logger.error("Error killing engine process: %s", err)
                report.errors.append(err)
            else:
                report.killed.append(pid)
        return report


class EngineSupervisor:
    """Keeps exactly one engine listener alive for the life of the process."""

    def __init__(
        self,
        launcher: EngineLauncher,
        sweeper: ProcessSweeper,
        queue: ConversionQueue,
        *,
        port: int,
        restart_delay: float = 1.0,
    ) -> None:
        self._launcher = launcher
        self._sweeper = sweeper
        self._queue = queue
        self._port = port
        self._restart_delay = restart_delay
        self._state = SupervisorState.STOPPED
        self._listener: EngineListener | None = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.restarts = 0
        self.last_sweep: SweepReport | None = None

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._state is SupervisorState.LISTENING and self._listener is not None and self._listener.alive

    async def start(self) -> None:
        self._stopping = False
        # jobs submitted before the first launch wait for the engine
        self._queue.hold()
        self._task = asyncio.create_task(self._supervise())

    async def stop(self) -> None:
        self._stopping = True
        if self._listener is not None:
            self._listener.terminate()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._state = SupervisorState.STOPPED

    async def _supervise(self) -> None:
        while not self._stopping:
            self._state = SupervisorState.STARTING
            try:
                self._listener = await self._launcher.launch()
            except Exception as e:
                logger.error("Unable to launch engine listener on port %d: %s", self._port, e)
                self._listener = None
            else:
                self._state = SupervisorState.LISTENING
                logger.info("Engine listening on port %d (pid %s)", self._port, self._listener.pid)
                self._queue.release()
                code = await self._listener.wait_closed()
                if self._stopping:
                    break
                logger.warning("Engine listener closed unexpectedly (exit code %s)", code)

            self._state = SupervisorState.REAPING
            self._queue.hold()
            self._queue.engine_lost()
            self.last_sweep = await asyncio.to_thread(self._sweeper.reap, self._port)
            await asyncio.sleep(self._restart_delay)
            self.restarts += 1
            logger.info("Restarting engine listener (restart #%d)", self.restarts)
        self._state = SupervisorState.STOPPED
