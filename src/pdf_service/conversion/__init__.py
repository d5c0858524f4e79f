"""
Domain layer for PDF conversion.
Provides the serialized conversion queue, retry policy and engine supervisor,
plus the gateways (engine, process table, storage, security) they talk
through, so front-ends (HTTP or others) can use the same core logic.
"""

from .errors import (
    ConversionError,
    ConversionFailed,
    EngineError,
    SupervisorSweepError,
    UnsupportedFormat,
    UploadTooLarge,
)
from .executor import ConversionExecutor
from .interfaces import (
    ConversionResult,
    ConverterGateway,
    EngineLauncher,
    EngineListener,
    ErrorKind,
    Job,
    ProcessTable,
    SecurityGateway,
    StagedUpload,
    StorageGateway,
)
from .queue import ConversionQueue
from .retry import Decision, RetryPolicy
from .service import ConversionService
from .supervisor import EngineSupervisor, ProcessSweeper, SupervisorState, SweepReport
