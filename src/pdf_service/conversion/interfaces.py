import asyncio
import enum
import logging
import secrets
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


class ErrorKind(enum.Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"  # permanent
    ENGINE_FAILURE = "engine_failure"  # transient


class ConverterGateway(Protocol):
    async def convert_to_pdf(self, source_path: str) -> bytes:
        """Convert the given input file and return the PDF bytes.

        Raises EngineError with the engine's message when conversion fails.
        """


class EngineListener(Protocol):
    port: int

    @property
    def pid(self) -> int | None:
        ...

    @property
    def alive(self) -> bool:
        ...

    async def wait_closed(self) -> int | None:
        """Block until the listener process exits; returns its exit code."""

    def terminate(self) -> None:
        ...


class EngineLauncher(Protocol):
    async def launch(self) -> EngineListener:
        ...


class ProcessTable(Protocol):
    def engine_pids(self, port: int) -> list[int]:
        """PIDs of engine processes bound to (or started for) the given port."""

    def kill(self, pid: int) -> None:
        """Forcibly terminate pid. Raises ProcessLookupError if already gone."""


class StorageGateway(Protocol):
    def input_path(self, extension: str) -> str:
        ...

    def output_path(self, checksum: str) -> str:
        ...

    def delete(self, path: str) -> None:
        ...


class SecurityGateway(Protocol):
    def enabled(self) -> bool:
        ...

    def verify(self, presented: str | None) -> bool:
        ...


@dataclass(eq=False)
class Job:
    source_path: str
    dest_path: str
    completion: asyncio.Future
    retry_count: int = 0
    id: str = field(default_factory=lambda: secrets.token_hex(4))

    def succeed(self) -> None:
        if self.completion.cancelled():
            logger.info("Job %s finished but its caller went away", self.id)
            return
        self.completion.set_result(self.dest_path)

    def fail(self, error: Exception) -> None:
        if self.completion.cancelled():
            logger.info("Job %s failed but its caller went away", self.id)
            return
        self.completion.set_exception(error)


@dataclass(frozen=True)
class ConversionResult:
    job: Job
    error_kind: ErrorKind | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None


@dataclass(frozen=True)
class StagedUpload:
    filename: str
    input_path: str
    output_path: str
    checksum: str
    size_bytes: int
