import asyncio
import logging
from collections import deque

from .errors import ConversionFailed
from .executor import ConversionExecutor
from .interfaces import ConversionResult, ErrorKind, Job
from .retry import Decision, RetryPolicy

logger = logging.getLogger(__name__)


class ConversionQueue:
    """FIFO of conversion jobs drained one at a time.

    The engine only copes with one conversion at a time, so this queue is the
    single place that calls the executor. All methods must be called from the
    event loop thread; ``busy`` needs no lock because only that loop mutates it.
    """

    def __init__(
        self,
        executor: ConversionExecutor,
        policy: RetryPolicy | None = None,
        *,
        drain_delay: float = 0.5,
    ) -> None:
        self._executor = executor
        self._policy = policy or RetryPolicy()
        self._drain_delay = drain_delay
        self._pending: deque[Job] = deque()
        self._in_flight: asyncio.Task | None = None
        # attempts released from the queue by reset() but still running
        self._detached: set[asyncio.Task] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._held = False
        self._closed = False

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    @property
    def held(self) -> bool:
        return self._held

    def size(self) -> int:
        return len(self._pending)

    def submit(self, job: Job) -> None:
        self._pending.append(job)
        logger.info("Queued job %s (%s), %d pending", job.id, job.source_path, len(self._pending))
        self.drain()

    def drain(self) -> None:
        if not self._pending or self._closed:
            return
        if self._held:
            logger.debug("Engine unavailable, %d jobs waiting", len(self._pending))
            return
        if self.busy:
            # throttle drain attempts while a conversion is running
            if self._timer is not None:
                self._timer.cancel()
            self._timer = asyncio.get_running_loop().call_later(self._drain_delay, self._on_timer)
            return

        job = self._pending.popleft()
        self._in_flight = asyncio.create_task(self._executor.execute(job))
        self._in_flight.add_done_callback(lambda task, job=job: self._finish(job, task))

    def _on_timer(self) -> None:
        self._timer = None
        self.drain()

    def _finish(self, job: Job, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            result = ConversionResult(job, ErrorKind.ENGINE_FAILURE, "engine lost during conversion")
        elif task.exception() is not None:
            exc = task.exception()
            result = ConversionResult(job, ErrorKind.ENGINE_FAILURE, f"{type(exc).__name__}: {exc}")
        else:
            result = task.result()

        if self._closed:
            if self._in_flight is task:
                self._in_flight = None
            if result.ok:
                job.succeed()
            else:
                job.fail(ConversionFailed())
            return
        try:
            self._settle(result)
        finally:
            # always free the engine and keep the queue moving
            if self._in_flight is task:
                self._in_flight = None
            self.drain()

    def _settle(self, result: ConversionResult) -> None:
        job = result.job
        kind = result.error_kind
        if kind is None:
            logger.info("Converted job %s (%s)", job.id, job.source_path)
            job.succeed()
            return

        if self._policy.decide(kind, job) is Decision.RETRY:
            job.retry_count += 1
            self._pending.append(job)
            logger.warning(
                "Retrying job %s (attempt %d of %d)", job.id, job.retry_count + 1, self._policy.max_retries + 1
            )
            return

        logger.error("Giving up on job %s after %d attempts: %s", job.id, job.retry_count + 1, result.detail)
        job.fail(self._policy.terminal_error(kind))

    def reset(self) -> int:
        """Discard every job that has not started yet and clear ``busy``.

        Discarded completions are never resolved. A conversion already running
        is not cancelled: it is detached from the queue so the next submission
        can start, and its own completion still fires when it finishes. This is
        how an operator unsticks a queue whose engine hangs without exiting.
        """
        removed = len(self._pending)
        self._pending.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._in_flight is not None:
            logger.warning("Reset with a conversion in flight, releasing the queue without waiting for it")
            self._detached.add(self._in_flight)
            self._in_flight = None
        logger.info("Removed %d jobs from queue", removed)
        return removed

    def hold(self) -> None:
        self._held = True

    def release(self) -> None:
        self._held = False
        self.drain()

    def engine_lost(self) -> None:
        """Abandon every conversion that was talking to a dead engine."""
        for task in self._running():
            logger.warning("Engine closed with a conversion in flight, abandoning attempt")
            task.cancel()

    def close(self) -> None:
        """Stop draining; every job still owned by the queue fails."""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        while self._pending:
            self._pending.popleft().fail(ConversionFailed())
        for task in self._running():
            task.cancel()

    def _running(self) -> list[asyncio.Task]:
        tasks = [t for t in self._detached if not t.done()]
        if self._in_flight is not None and not self._in_flight.done():
            tasks.append(self._in_flight)
        return tasks
