class ConversionError(Exception):
    """Terminal outcome of a job, delivered through its completion."""

    message = "Error converting file to PDF"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class UnsupportedFormat(ConversionError):
    message = "File type is not supported"


class ConversionFailed(ConversionError):
    message = "Error converting file to PDF"


class EngineError(Exception):
    """Raised by engine adapters; carries the engine's own error text."""


class SupervisorSweepError(Exception):
    def __init__(self, pid: int, reason: str) -> None:
        super().__init__(f"unable to kill engine process {pid}: {reason}")
        self.pid = pid
        self.reason = reason


class UploadTooLarge(ValueError):
    pass
