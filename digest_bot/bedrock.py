"""Rate-limited Amazon Bedrock text generation."""

import json
import threading
import time
from collections.abc import Callable

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .config import BedrockConfig
from .errors import (
    ErrorKind,
    GenerationError,
    MaxRetriesExceededError,
    QuotaExhaustedError,
)
from .logging_config import create_execution_logger
from .pacing import check_cancelled, wait_or_cancel

_RATE_LIMIT_CODES = {"ThrottlingException", "TooManyRequestsException"}
_QUOTA_CODES = {"ServiceQuotaExceededException", "LimitExceededException"}
_OVERLOADED_CODES = {"ServiceUnavailableException", "ModelNotReadyException"}
_TRANSIENT_CODES = {
    "InternalServerException",
    "InternalFailure",
    "ModelTimeoutException",
    "ModelStreamErrorException",
}
# Throttling messages that name a period quota rather than a per-minute rate
_QUOTA_MARKERS = ("per day", "daily", "quota", "tokens per day", "requests per day")


def _classify_message(message: str) -> ErrorKind:
    """Last-resort classification from error text."""
    text = message.lower()
    if "429" in text or "too many requests" in text or "rate limit" in text:
        if any(marker in text for marker in _QUOTA_MARKERS):
            return ErrorKind.QUOTA_EXHAUSTED
        return ErrorKind.RATE_LIMIT
    if "quota" in text or "daily limit" in text:
        return ErrorKind.QUOTA_EXHAUSTED
    if "503" in text or "service unavailable" in text or "overloaded" in text:
        return ErrorKind.OVERLOADED
    for marker in ("500", "502", "504", "internal server error", "bad gateway", "gateway timeout"):
        if marker in text:
            return ErrorKind.TRANSIENT
    return ErrorKind.OTHER


def classify_client_error(error: ClientError) -> ErrorKind:
    """Map a botocore ClientError to an ErrorKind.

    The error code and HTTP status are authoritative; the message text is only
    consulted to tell a period quota apart from a short-term throttle, or when
    the response carries neither code nor status.
    """
    err = error.response.get("Error", {})
    code = err.get("Code", "")
    message = err.get("Message", "") or ""
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    if code in _QUOTA_CODES:
        return ErrorKind.QUOTA_EXHAUSTED
    if code in _RATE_LIMIT_CODES or status == 429:
        if any(marker in message.lower() for marker in _QUOTA_MARKERS):
            return ErrorKind.QUOTA_EXHAUSTED
        return ErrorKind.RATE_LIMIT
    if code in _OVERLOADED_CODES or status == 503:
        return ErrorKind.OVERLOADED
    if code in _TRANSIENT_CODES or status in (500, 502, 504):
        return ErrorKind.TRANSIENT
    if code or status:
        return ErrorKind.OTHER
    return _classify_message(str(error))


def classify_exception(error: Exception) -> ErrorKind:
    """Classify any exception raised while calling Bedrock."""
    if isinstance(error, ClientError):
        return classify_client_error(error)
    if isinstance(
        error,
        (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, BotoConnectionError),
    ):
        return ErrorKind.TRANSIENT
    return _classify_message(str(error))


class BedrockClient:
    """Sends prompts to Bedrock with retry, backoff and quota detection."""

    def __init__(
        self,
        config: BedrockConfig,
        execution_id: str | None = None,
        client=None,
        sleeper: Callable[[threading.Event | None, float], None] = wait_or_cancel,
    ):
        """Initialize the Bedrock wrapper.

        Args:
            config: Bedrock configuration (model, retry policy)
            execution_id: Execution ID for logging context
            client: Optional pre-built bedrock-runtime client
            sleeper: Cancellable wait used between attempts
        """
        self.config = config
        self.logger = create_execution_logger("bedrock", execution_id)
        self._sleep = sleeper
        self.requests_made = 0
        if client is None:
            # Retries are handled here, botocore must not retry on its own
            client = boto3.client(
                "bedrock-runtime",
                region_name=config.region,
                config=BotoConfig(
                    retries={"max_attempts": 1, "mode": "standard"},
                    read_timeout=300,
                ),
            )
        self.client = client
        self.logger.info(
            "Initialized Bedrock client",
            region=config.region,
            model_id=config.model_id,
        )

    def generate_text(
        self,
        prompt: str,
        model_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> str:
        """Run one logical generation request.

        Returns:
            The generated text

        Raises:
            QuotaExhaustedError: Period quota used up (never retried)
            MaxRetriesExceededError: Retryable failures on every attempt
            GenerationError: Non-retryable failure
            RunCancelledError: The cancel event was set during a wait
        """
        model_id = model_id or self.config.model_id
        max_attempts = max(1, self.config.max_attempts)
        last_error: Exception | None = None
        last_kind = ErrorKind.OTHER

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = self._backoff(last_kind, attempt - 1)
                self.logger.warning(
                    f"{last_kind.value} from Bedrock, waiting {delay:.0f}s before "
                    f"retry (attempt {attempt}/{max_attempts})",
                    error_kind=last_kind.value,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                self._sleep(cancel, delay)
            else:
                check_cancelled(cancel)

            try:
                return self._invoke(prompt, model_id)
            except (ClientError, BotoCoreError) as e:
                last_error = e
                last_kind = classify_exception(e)

            if last_kind is ErrorKind.QUOTA_EXHAUSTED:
                self.logger.error(
                    "Bedrock quota exhausted for the current period, not retrying",
                    model_id=model_id,
                    error=str(last_error),
                )
                raise QuotaExhaustedError(
                    f"Bedrock quota exhausted: {last_error}"
                ) from last_error

            if not last_kind.retryable:
                self.logger.error(
                    f"Bedrock request failed: {last_error}",
                    model_id=model_id,
                    error_kind=last_kind.value,
                )
                raise GenerationError(
                    f"Bedrock request failed: {last_error}", last_kind
                ) from last_error

        raise MaxRetriesExceededError(
            f"max retries exceeded ({max_attempts} attempts): {last_error}",
            last_kind,
            max_attempts,
        ) from last_error

    def _backoff(self, kind: ErrorKind, failures: int) -> float:
        if kind is ErrorKind.RATE_LIMIT:
            return self.config.rate_limit_wait
        if kind is ErrorKind.OVERLOADED:
            return self.config.overloaded_wait
        return min(self.config.base_delay * 2 ** (failures - 1), self.config.max_delay)

    def _invoke(self, prompt: str, model_id: str) -> str:
        is_llama = "llama" in model_id.lower()
        if is_llama:
            # Llama: legacy prompt format
            request_body = {
                "prompt": prompt,
                "max_gen_len": self.config.max_tokens,
                "temperature": self.config.temperature,
            }
        else:
            # Amazon Nova / Mistral Large: Invoke API format
            request_body = {
                "messages": [{"role": "user", "content": [{"text": prompt}]}],
                "inferenceConfig": {
                    "maxTokens": self.config.max_tokens,
                    "temperature": self.config.temperature,
                },
            }

        start_time = time.monotonic()
        self.requests_made += 1
        response = self.client.invoke_model(
            modelId=model_id,
            body=json.dumps(request_body),
            contentType="application/json",
            accept="application/json",
        )
        response_time_ms = int((time.monotonic() - start_time) * 1000)
        response_body = json.loads(response["body"].read())

        text = None
        if is_llama:
            text = response_body.get("generation")
        else:
            content = response_body.get("output", {}).get("message", {}).get("content") or []
            if content:
                text = content[0].get("text", "")

        if not text or not text.strip():
            raise GenerationError(
                f"Empty response from model {model_id}: keys={list(response_body)}"
            )

        usage = response_body.get("usage", {})
        self.logger.info(
            "Bedrock response received",
            model_id=model_id,
            response_length=len(text),
            tokens=usage.get("inputTokens", 0) + usage.get("outputTokens", 0),
            response_time_ms=response_time_ms,
        )
        return text.strip()
