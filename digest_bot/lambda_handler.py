"""Lambda entry point for RSS Digest Bot."""

import json
import os
from dataclasses import replace
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .config import Config, RunFlags
from .errors import StageError
from .logging_config import (
    create_execution_logger,
    new_execution_id,
    setup_structured_logging,
)
from .pacing import split_batches
from .pipeline import RunMode, build_pipeline, mode_from_flags

setup_structured_logging(os.getenv("LOG_LEVEL", "INFO"))

METRICS_NAMESPACE = "RSS-Digest-Bot"
# PutMetricData limit per request
METRICS_PER_REQUEST = 20

SECRET_TOKEN_KEYS = ("token", "bot_token", "telegram_token", "telegram_bot_token")

# CloudWatch metric name -> key in the run metrics
COUNT_METRICS = {
    "ArticlesCollected": "collected",
    "ArticlesFiltered": "filtered",
    "ArticlesCategorized": "categorized",
    "ArticlesRanked": "ranked",
    "ArticlesSummarized": "summarized",
    "MessagesBuilt": "messages",
    "MessagesSent": "dispatched",
    "Recipients": "recipients",
}


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Run one digest cycle.

    The event may carry {"mode": "full" | "build" | "send"}, which overrides
    the BUILD_MODE/SEND_MODE environment flags.

    Args:
        event: Lambda event data
        context: Lambda context object

    Returns:
        {"statusCode": 200 | 500, "body": JSON with execution id and metrics}
    """
    execution_id = new_execution_id("lambda")
    logger = create_execution_logger("handler", execution_id)
    logger.log_execution_start(
        lambda_request_id=getattr(context, "aws_request_id", "unknown"),
        lambda_function_name=getattr(context, "function_name", "unknown"),
    )

    metrics: dict[str, Any] = {"errors": []}
    region = os.getenv("CURRENT_AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1"))

    try:
        config = Config()
        region = config.aws_region
        mode, flags = resolve_mode(event, config.get_run_flags())

        bot_token = config.telegram_bot_token or get_telegram_token(
            config.telegram_secret_name, config.aws_region, execution_id
        )
        result = build_pipeline(config, flags, bot_token, execution_id).run(mode)
        metrics.update(result.to_metrics())
    except Exception as e:
        if isinstance(e, StageError) and e.quota_exhausted:
            error_msg = f"Generation quota exhausted during {e.stage}"
        else:
            error_msg = f"Critical error in Lambda handler: {e}"
        logger.exception(error_msg, error_type=type(e).__name__)
        metrics["errors"].append(error_msg)

        send_cloudwatch_metrics(metrics, region, execution_id)
        logger.log_execution_end(success=False, error=error_msg)
        return _response(
            500,
            message="RSS Digest Bot execution failed",
            execution_id=execution_id,
            error=error_msg,
            metrics=metrics,
        )

    logger.log_metrics(metrics)
    send_cloudwatch_metrics(metrics, region, execution_id)
    logger.log_execution_end(success=True, outcome=metrics["outcome"])
    return _response(
        200,
        message="RSS Digest Bot execution completed",
        execution_id=execution_id,
        metrics=metrics,
    )


def resolve_mode(event: dict[str, Any] | None, flags: RunFlags) -> tuple[RunMode, RunFlags]:
    """Apply an event "mode" on top of the environment flags.

    Raises:
        ValueError: If the event names an unknown mode
    """
    requested = (event or {}).get("mode")
    if not requested:
        return mode_from_flags(flags), flags
    try:
        mode = RunMode(requested)
    except ValueError:
        raise ValueError(f"Unknown mode in event: {requested!r}") from None
    return mode, replace(
        flags,
        build_mode=mode is RunMode.BUILD,
        send_mode=mode is RunMode.SEND,
    )


def _response(status_code: int, **body: Any) -> dict[str, Any]:
    return {"statusCode": status_code, "body": json.dumps(body, default=str)}


def get_telegram_token(secret_name: str, aws_region: str, execution_id: str) -> str:
    """
    Retrieve the Telegram bot token from AWS Secrets Manager.

    The secret may be the bare token or a JSON object holding it under one of
    SECRET_TOKEN_KEYS. The token itself is never logged.

    Args:
        secret_name: Name of the secret in Secrets Manager
        aws_region: AWS region for Secrets Manager client
        execution_id: Execution ID for logging context

    Returns:
        Telegram bot token

    Raises:
        ValueError: If the secret name or region is empty
        RuntimeError: If the secret cannot be read or holds no token
    """
    if not (secret_name or "").strip():
        raise ValueError("Secret name cannot be empty")
    if not (aws_region or "").strip():
        raise ValueError("AWS region cannot be empty")

    logger = create_execution_logger("secrets_manager", execution_id)
    logger.info(f"Reading Telegram token from secret {secret_name}")

    try:
        client = boto3.client("secretsmanager", region_name=aws_region)
        secret_string = client.get_secret_value(SecretId=secret_name).get("SecretString")
        token = _token_from_secret((secret_string or "").strip())
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "Unknown")
        logger.error(f"Secrets Manager refused {secret_name}: {code}", error_code=code)
        raise RuntimeError(f"Failed to retrieve secret {secret_name}") from e
    except ValueError as e:
        logger.error(f"Unusable secret {secret_name}: {e}")
        raise RuntimeError(f"Invalid secret format for {secret_name}") from e

    logger.info("Telegram token loaded")
    return token


def _token_from_secret(secret_value: str) -> str:
    if not secret_value:
        raise ValueError("secret has no string value")
    try:
        secret_data = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value

    if not isinstance(secret_data, dict):
        raise ValueError("JSON secret must be an object")
    for key in SECRET_TOKEN_KEYS:
        value = secret_data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise ValueError(f"no token under any of {', '.join(SECRET_TOKEN_KEYS)}")


def build_metric_data(metrics: dict[str, Any], execution_id: str) -> list[dict[str, Any]]:
    """Translate run metrics into CloudWatch MetricData entries."""
    errors = len(metrics.get("errors", []))
    by_run = [{"Name": "ExecutionId", "Value": execution_id}]
    by_status = [{"Name": "Status", "Value": "Failure" if errors else "Success"}]

    def datum(name: str, value: float, dimensions: list[dict[str, str]], unit: str = "Count"):
        return {"MetricName": name, "Value": value, "Unit": unit, "Dimensions": dimensions}

    metric_data = [
        datum(name, metrics.get(key) or 0, by_run) for name, key in COUNT_METRICS.items()
    ]
    collected = metrics.get("collected") or 0
    metric_data += [
        datum("Errors", errors, by_run),
        datum("ExecutionSuccess", 0 if errors else 1, by_status),
        datum("ExecutionFailure", 1 if errors else 0, by_status),
        datum(
            "SelectionRate",
            (metrics.get("ranked") or 0) / max(collected, 1) * 100,
            by_run,
            unit="Percent",
        ),
    ]
    return metric_data


def send_cloudwatch_metrics(
    metrics: dict[str, Any], aws_region: str, execution_id: str
) -> None:
    """
    Publish run metrics to CloudWatch. Failures are logged, never raised.

    Args:
        metrics: Run metrics (RunResult.to_metrics() plus "errors")
        aws_region: AWS region for CloudWatch client
        execution_id: Execution ID for logging context
    """
    logger = create_execution_logger("cloudwatch_metrics", execution_id)

    try:
        cloudwatch = boto3.client("cloudwatch", region_name=aws_region)
        metric_data = build_metric_data(metrics, execution_id)
        for batch in split_batches(metric_data, METRICS_PER_REQUEST):
            cloudwatch.put_metric_data(Namespace=METRICS_NAMESPACE, MetricData=batch)
    except Exception as e:
        logger.error(f"Failed to send CloudWatch metrics: {e}", error=str(e))
        return

    logger.info(
        f"Sent {len(metric_data)} metrics to CloudWatch",
        namespace=METRICS_NAMESPACE,
    )
