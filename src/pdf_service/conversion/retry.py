import enum
from dataclasses import dataclass

from .errors import ConversionError, ConversionFailed, UnsupportedFormat
from .interfaces import ErrorKind, Job


class Decision(enum.Enum):
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries for transient engine failures.

    Unsupported input is never retried. The caller owns incrementing
    ``job.retry_count`` and re-enqueueing on RETRY.
    """

    max_retries: int = 5

    def decide(self, error_kind: ErrorKind, job: Job) -> Decision:
        if error_kind is ErrorKind.ENGINE_FAILURE and job.retry_count < self.max_retries:
            return Decision.RETRY
        return Decision.FAIL

    @staticmethod
    def terminal_error(error_kind: ErrorKind) -> ConversionError:
        if error_kind is ErrorKind.UNSUPPORTED_FORMAT:
            return UnsupportedFormat()
        return ConversionFailed()
