"""
Main AWS Lambda handler for the Ordered Forwarder.

This module serves as the primary entry point and orchestrator for the function.
Its responsibilities include:
  - Loading and validating configuration from environment variables.
  - Initializing and caching stateful clients (the HTTP session, the SQS client).
  - Receiving batches from the SQS trigger.
  - Calling the testable forwarding logic in the 'core' module.
  - Returning the partial batch response and emitting the invocation metrics.
"""

import os
import time
from functools import partial
from typing import Any, Dict, List, Optional

import requests
from aws_lambda_powertools import Logger
from mypy_boto3_sqs import SQSClient

from . import clients, core
from .model import PAYLOAD_SCHEMAS, SQSEventRecord

# --- 1. SETUP: Configuration, Validation, and Clients ---

def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


# --- Configuration (loaded once at cold start) ---
ENVIRONMENT = get_env_var("ENVIRONMENT", "dev")
LOG_LEVEL = get_env_var("LOG_LEVEL", "INFO").upper()
SERVICE_NAME = get_env_var("SERVICE_NAME", "ordered-forwarder")
MAX_GROUP_WORKERS = int(get_env_var("MAX_GROUP_WORKERS", "10"))
REQUEST_TIMEOUT_SECONDS = float(get_env_var("REQUEST_TIMEOUT_SECONDS", "10"))
PAYLOAD_SCHEMA = get_env_var("PAYLOAD_SCHEMA", "").strip().lower()
QUEUE_URL = get_env_var("QUEUE_URL", "")

if MAX_GROUP_WORKERS < 1:
    raise ValueError(f"FATAL: MAX_GROUP_WORKERS must be at least 1, got {MAX_GROUP_WORKERS}.")
if PAYLOAD_SCHEMA and PAYLOAD_SCHEMA not in PAYLOAD_SCHEMAS:
    raise ValueError(f"FATAL: Unknown PAYLOAD_SCHEMA '{PAYLOAD_SCHEMA}'. Expected one of {sorted(PAYLOAD_SCHEMAS)}.")
PAYLOAD_TYPE = PAYLOAD_SCHEMAS.get(PAYLOAD_SCHEMA)

# --- Global Setup ---
logger = Logger(service=SERVICE_NAME, level=LOG_LEVEL)

HTTP_SESSION: Optional[requests.Session] = None
SQS: Optional[SQSClient] = None


def get_http_session() -> requests.Session:
    """Returns the HTTP session, created once per execution environment."""
    global HTTP_SESSION
    if HTTP_SESSION is None:
        HTTP_SESSION = clients.get_http_session(MAX_GROUP_WORKERS)
    return HTTP_SESSION


def get_sqs_client() -> SQSClient:
    global SQS
    if SQS is None:
        SQS = clients.get_sqs_client()
    return SQS


def _build_response(failed_ids: List[str]) -> Dict[str, Any]:
    """Centralized helper to build the partial batch response."""
    return {"batchItemFailures": [{"itemIdentifier": message_id} for message_id in failed_ids]}


# --- 2. LAMBDA HANDLER ---

def handler(event: Dict, context: Any) -> Dict[str, Any]:
    """
    Main Lambda entry point. Forwards a batch of SQS messages to their endpoints.

    The function must be configured with `ReportBatchItemFailures`. It returns
    the identifiers of the messages SQS should redeliver; every other message
    in the batch is considered delivered. Message-level failures never raise.

    This function follows these steps:
    1. Optionally reads the queue depth for the metrics record.
    2. Partitions the batch by MessageGroupID and forwards each group in order,
       groups in parallel.
    3. Builds the `batchItemFailures` response.
    4. Emits the invocation metrics.
    """
    start = time.monotonic()
    logger.remove_keys(["aws_request_id"])
    request_id = getattr(context, "aws_request_id", None)
    if request_id:
        logger.append_keys(aws_request_id=request_id)

    sqs_messages: List[SQSEventRecord] = event.get("Records") or []
    if not sqs_messages:
        logger.info("No messages to process.")
        return _build_response([])

    logger.info(f"Received {len(sqs_messages)} messages to process.")

    metrics_payload: Dict[str, Any] = {}
    if QUEUE_URL:
        queue_depth = core.get_queue_depth(get_sqs_client(), QUEUE_URL, logger)
        if queue_depth is not None:
            metrics_payload["QueueDepth"] = queue_depth

    send = partial(_send, get_http_session())
    result = core.process_batch(sqs_messages, send, logger, MAX_GROUP_WORKERS, payload_type=PAYLOAD_TYPE)

    metrics_payload.update(
        {
            "MessagesReceived": result.received,
            "MessagesDelivered": result.delivered,
            "MessagesFailed": len(result.failed_ids),
            "MessagesSkipped": result.skipped,
            "GroupsProcessed": result.groups,
            "ProcessingLatencyMs": core.elapsed_ms(start),
        }
    )
    status = "PartialFailure" if result.failed_ids else "Success"
    core.emit_metrics(ENVIRONMENT, status, metrics_payload)

    if result.failed_ids:
        logger.warning(
            f"Batch completed with {len(result.failed_ids)} failures.",
            extra={"failed_ids": result.failed_ids},
        )
    else:
        logger.info("All messages in batch processed successfully.")
    return _build_response(result.failed_ids)


def _send(session: requests.Session, url: str, payload: Any, trace_id: str) -> int:
    return core.forward_payload(session, url, payload, trace_id, logger, timeout=REQUEST_TIMEOUT_SECONDS)
