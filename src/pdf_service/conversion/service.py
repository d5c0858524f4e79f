import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from .errors import UploadTooLarge
from .executor import ConversionExecutor
from .interfaces import (
    ConverterGateway,
    EngineLauncher,
    Job,
    ProcessTable,
    SecurityGateway,
    StagedUpload,
    StorageGateway,
)
from .queue import ConversionQueue
from .retry import RetryPolicy
from .supervisor import EngineSupervisor, ProcessSweeper

logger = logging.getLogger(__name__)


class ConversionService:
    """Core domain service orchestrating PDF conversions.

    This service is framework-agnostic. It owns the single conversion queue
    and the engine supervisor, and uses gateways to reach storage, security,
    the engine and the OS process table.
    """

    def __init__(
        self,
        storage: StorageGateway,
        security: SecurityGateway,
        converter: ConverterGateway,
        launcher: EngineLauncher,
        process_table: ProcessTable,
        *,
        engine_port: int = 8085,
        max_retries: int = 5,
        drain_delay: float = 0.5,
        convert_timeout: float | None = 300.0,
        restart_delay: float = 1.0,
    ) -> None:
        self._storage = storage
        self._security = security
        executor = ConversionExecutor(converter, timeout=convert_timeout)
        self._queue = ConversionQueue(executor, RetryPolicy(max_retries), drain_delay=drain_delay)
        self._supervisor = EngineSupervisor(
            launcher,
            ProcessSweeper(process_table),
            self._queue,
            port=engine_port,
            restart_delay=restart_delay,
        )

    @property
    def queue(self) -> ConversionQueue:
        return self._queue

    @property
    def supervisor(self) -> EngineSupervisor:
        return self._supervisor

    @property
    def storage(self) -> StorageGateway:
        return self._storage

    @property
    def security(self) -> SecurityGateway:
        return self._security

    async def start(self) -> None:
        await self._supervisor.start()

    async def stop(self) -> None:
        await self._supervisor.stop()
        self._queue.close()

    def submit(self, source_path: str, dest_path: str) -> Job:
        job = Job(source_path, dest_path, asyncio.get_running_loop().create_future())
        self._queue.submit(job)
        return job

    async def convert(self, source_path: str, dest_path: str) -> str:
        """Queue a conversion and wait for its outcome.

        Returns dest_path on success; raises UnsupportedFormat or
        ConversionFailed otherwise.
        """
        return await self.submit(source_path, dest_path).completion

    def queue_length(self) -> int:
        return self._queue.size()

    def reset_queue(self) -> int:
        return self._queue.reset()

    def status(self) -> dict[str, object]:
        return {
            "queued": self._queue.size(),
            "busy": self._queue.busy,
            "engine": self._supervisor.state.value,
            "engine_restarts": self._supervisor.restarts,
        }

    async def stage_upload(
        self,
        filename: str,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_upload_mb: int,
    ) -> StagedUpload:
        """Stream an upload into storage and pick its PDF destination."""
        original_name = filename or "upload"
        ext = ""
        if "." in original_name:
            ext = "." + original_name.rsplit(".", 1)[-1].lower()
        input_path = Path(self._storage.input_path(ext))

        sha1 = hashlib.sha1()
        size_bytes = 0
        CHUNK = 1024 * 1024
        max_bytes = max_upload_mb * 1024 * 1024
        with input_path.open("wb") as f_out:
            while True:
                chunk = await reader(CHUNK)
                if not chunk:
                    break
                b = bytes(chunk)
                size_bytes += len(b)
                if size_bytes > max_bytes:
                    f_out.close()
                    input_path.unlink(missing_ok=True)
                    raise UploadTooLarge(f"upload exceeds {max_upload_mb} MB")
                f_out.write(b)
                sha1.update(b)

        checksum = sha1.hexdigest()
        return StagedUpload(
            filename=original_name,
            input_path=str(input_path),
            output_path=self._storage.output_path(checksum),
            checksum=checksum,
            size_bytes=size_bytes,
        )
