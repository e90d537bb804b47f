"""Exception types for RSS Digest Bot."""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a failed generation request."""

    RATE_LIMIT = "rate_limit"
    QUOTA_EXHAUSTED = "quota_exhausted"
    OVERLOADED = "overloaded"
    TRANSIENT = "transient"
    OTHER = "other"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMIT, ErrorKind.OVERLOADED, ErrorKind.TRANSIENT)


class DigestBotError(Exception):
    """Base class for all bot errors."""


class GenerationError(DigestBotError):
    """A generation request failed."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.OTHER):
        super().__init__(message)
        self.kind = kind


class QuotaExhaustedError(GenerationError):
    """The period quota of the generation API is used up. Never retried."""

    def __init__(self, message: str):
        super().__init__(message, ErrorKind.QUOTA_EXHAUSTED)


class MaxRetriesExceededError(GenerationError):
    """All retry attempts failed with retryable errors."""

    def __init__(self, message: str, last_kind: ErrorKind, attempts: int):
        super().__init__(message, last_kind)
        self.attempts = attempts


class RunCancelledError(DigestBotError):
    """The run was cancelled while waiting or between steps."""


class StageError(DigestBotError):
    """A pipeline step failed. The original error is kept as __cause__."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage

    @property
    def quota_exhausted(self) -> bool:
        return isinstance(self.__cause__, QuotaExhaustedError)

    @property
    def cancelled(self) -> bool:
        return isinstance(self.__cause__, RunCancelledError)


class NoRecipientsError(DigestBotError):
    """Nothing to deliver to and forced dispatch is off."""


class DeliveryFailedError(DigestBotError):
    """No message reached any recipient."""


class PipelineNotConfiguredError(DigestBotError):
    """A required pipeline dependency is missing for the requested mode."""


class TelegramAPIError(DigestBotError):
    """The Telegram Bot API rejected a call or could not be reached."""

    # Descriptions for which a retry cannot succeed
    PERMANENT_MARKERS = (
        "chat not found",
        "bot was blocked",
        "user is deactivated",
        "chat_id is empty",
        "message is too long",
    )

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        if self.status_code in (400, 401, 403, 404):
            return False
        lowered = str(self).lower()
        return not any(marker in lowered for marker in self.PERMANENT_MARKERS)
