import asyncio
import logging
import os
from pathlib import Path

from .errors import EngineError
from .interfaces import ConversionResult, ConverterGateway, ErrorKind, Job

logger = logging.getLogger(__name__)

# unoconv reports unreadable input with this phrase
UNSUPPORTED_MARKERS = ("could not be opened",)


def classify(message: str, markers: tuple[str, ...] = UNSUPPORTED_MARKERS) -> ErrorKind:
    lowered = message.lower()
    if any(m in lowered for m in markers):
        return ErrorKind.UNSUPPORTED_FORMAT
    return ErrorKind.ENGINE_FAILURE


def _write_atomically(dest_path: str, data: bytes) -> None:
    dest = Path(dest_path)
    part = dest.with_name(dest.name + ".part")
    try:
        with part.open("wb") as f:
            f.write(data)
        os.replace(part, dest)
    finally:
        part.unlink(missing_ok=True)


def _discard_output(dest_path: str, write: asyncio.Future) -> None:
    if not write.cancelled() and write.exception() is not None:
        logger.debug("Abandoned write to %s failed: %s", dest_path, write.exception())
    Path(dest_path).unlink(missing_ok=True)
    logger.info("Discarded output of abandoned conversion %s", dest_path)


class ConversionExecutor:
    """Runs exactly one job against the engine and reports a ConversionResult.

    Engine crashes, synchronous gateway errors and watchdog timeouts are all
    folded into the result; only task cancellation propagates.
    """

    def __init__(
        self,
        engine: ConverterGateway,
        *,
        timeout: float | None = 300.0,
        unsupported_markers: tuple[str, ...] = UNSUPPORTED_MARKERS,
    ) -> None:
        self._engine = engine
        self._timeout = timeout or None
        self._markers = unsupported_markers

    async def execute(self, job: Job) -> ConversionResult:
        try:
            data = await asyncio.wait_for(self._engine.convert_to_pdf(job.source_path), self._timeout)
            if not data:
                raise EngineError("engine produced no output")
            await self._write(job, data)
        except EngineError as e:
            kind = classify(str(e), self._markers)
            logger.error("Engine failed to convert %s: %s", job.source_path, e)
            return ConversionResult(job, kind, str(e))
        except asyncio.TimeoutError:
            logger.error("Engine timed out converting %s after %ss", job.source_path, self._timeout)
            return ConversionResult(job, ErrorKind.ENGINE_FAILURE, "timeout")
        except Exception as e:
            logger.exception("Engine crashed converting %s", job.source_path)
            return ConversionResult(job, ErrorKind.ENGINE_FAILURE, f"{type(e).__name__}: {e}")
        return ConversionResult(job)

    async def _write(self, job: Job, data: bytes) -> None:
        # the worker thread cannot be interrupted, so a cancelled attempt waits
        # for the rename in the background and removes the output afterwards
        write = asyncio.ensure_future(asyncio.to_thread(_write_atomically, job.dest_path, data))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            write.add_done_callback(lambda fut: _discard_output(job.dest_path, fut))
            raise
