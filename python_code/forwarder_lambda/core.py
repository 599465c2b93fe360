"""
Core business logic for the Ordered Forwarder.

These functions contain no global state and no client construction. They
receive all dependencies, including the Powertools logger, the HTTP session
and the identifier generator, from the main handler in app.py, allowing them
to be unit-tested in isolation.

Processing model:
  - Records are partitioned by their `MessageGroupID` attribute. Records
    without one each get a synthetic key and therefore a group of their own.
  - Each group is handled by one task on a thread pool. Groups run in
    parallel; messages inside a group run strictly in order.
  - A group stops at its first failure. The failed message is reported, the
    rest of the group is skipped and left for the queue to redeliver.
"""

import dataclasses
import json
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from json.decoder import WHITESPACE
from typing import Any, Callable, Dict, List, Optional, Type

import requests
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_sqs.client import SQSClient

from .model import (
    BatchFailureSet,
    BatchResult,
    Delivered,
    Failed,
    ForwardOutcome,
    GroupResult,
    MalformedBody,
    ParsedMessage,
    SQSEventRecord,
    TransportError,
)

GROUP_ATTRIBUTE = "MessageGroupID"
MAX_LOGGED_BODY_CHARS = 1024
METRICS_NAMESPACE = "OrderedForwarder"

# send(url, payload, trace_id) -> HTTP status code, raising TransportError.
SendFunc = Callable[[str, Any, str], int]
IdGenerator = Callable[[], str]


def new_id() -> str:
    return str(uuid.uuid4())


# --- Group Partitioner ---

def resolve_group_id(record: SQSEventRecord, id_generator: IdGenerator = new_id) -> str:
    """Returns the record's explicit ordering key, or a fresh synthetic one."""
    group_id = (record.get("attributes") or {}).get(GROUP_ATTRIBUTE)
    if group_id is None:
        # Standard queues have no group id; isolate the record in its own group.
        return id_generator()
    return group_id


def partition_records(
    records: List[SQSEventRecord], id_generator: IdGenerator = new_id
) -> Dict[str, List[SQSEventRecord]]:
    """
    Groups records by ordering key, preserving batch order within each group.

    Args:
        records: The SQS records of one invocation, in delivery order.
        id_generator: Source of synthetic keys for records without a group.

    Returns:
        A mapping of ordering key to that group's records. Keys appear in order
        of their first record in the batch.
    """
    groups: Dict[str, List[SQSEventRecord]] = {}
    for record in records:
        groups.setdefault(resolve_group_id(record, id_generator), []).append(record)
    return groups


# --- Message Parser ---

def _decode_typed_payload(payload: Any, payload_type: Type[Any]) -> Any:
    if not isinstance(payload, dict):
        raise MalformedBody(f"payload must be an object for {payload_type.__name__}")

    schema_fields = {f.name: f.type for f in dataclasses.fields(payload_type)}
    if set(payload) != set(schema_fields):
        raise MalformedBody(
            f"payload fields {sorted(payload)} do not match {payload_type.__name__} {sorted(schema_fields)}"
        )
    for name, expected in schema_fields.items():
        value = payload[name]
        # bool is a subclass of int but never a valid int field.
        if (isinstance(value, bool) and expected is not bool) or not isinstance(value, expected):
            raise MalformedBody(f"payload field '{name}' must be {expected.__name__}")
    return payload_type(**payload)


def raw_member(text: str, name: str) -> Optional[str]:
    """
    Returns the exact source text of a top-level member of a JSON object.

    `text` must already be known to decode as a JSON object. When the name
    repeats, the last occurrence wins, as with `json.loads`.
    """
    decoder = json.JSONDecoder()
    found = None
    idx = _skip_ws(text, 0) + 1  # past "{"
    while True:
        idx = _skip_ws(text, idx)
        if text[idx] == "}":
            return found
        key, idx = decoder.raw_decode(text, idx)
        idx = _skip_ws(text, _skip_ws(text, idx) + 1)  # past ":"
        _, end = decoder.raw_decode(text, idx)
        if key == name:
            found = text[idx:end]
        idx = _skip_ws(text, end)
        if text[idx] == ",":
            idx += 1


def _skip_ws(text: str, idx: int) -> int:
    return WHITESPACE.match(text, idx).end()


def parse_record(
    record: SQSEventRecord,
    group_id: str,
    trace_id: str,
    logger: Logger,
    payload_type: Optional[Type[Any]] = None,
) -> ParsedMessage:
    """
    Decodes one SQS record into a ParsedMessage.

    The body must be a JSON object with a string `url` and a `payload`. The
    payload is not validated unless a typed payload schema is configured.
    Untyped payloads are kept as the exact UTF-8 bytes of their source text.

    Raises:
        MalformedBody: If the body does not have the expected shape.
    """
    raw_body = record.get("body")
    if not isinstance(raw_body, str):
        raise MalformedBody("body must be a string")
    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError as e:
        raise MalformedBody(f"error parsing JSON: {e}") from e

    if not isinstance(body, dict):
        raise MalformedBody("body must be a JSON object")
    url = body.get("url")
    if not isinstance(url, str) or not url:
        raise MalformedBody("body is missing a string 'url'")
    if "payload" not in body:
        raise MalformedBody("body is missing 'payload'")

    if payload_type is not None:
        payload = _decode_typed_payload(body["payload"], payload_type)
    else:
        payload = raw_member(raw_body, "payload").encode("utf-8")

    message = ParsedMessage(
        message_id=record["messageId"],
        url=url,
        payload=payload,
        group_id=group_id,
        attributes=dict(record.get("attributes") or {}),
        message_attributes=dict(record.get("messageAttributes") or {}),
    )
    logger.debug(f"[{trace_id}] Parsed message", extra={"message_id": message.message_id, "url": url})
    return message


# --- Forwarder ---

def encode_payload(payload: Any) -> bytes:
    """Serializes a payload for the request body. Bytes pass through as-is."""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if dataclasses.is_dataclass(payload) and not isinstance(payload, type):
        payload = dataclasses.asdict(payload)
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")


def forward_payload(
    session: requests.Session,
    url: str,
    payload: Any,
    trace_id: str,
    logger: Logger,
    timeout: float = 10.0,
) -> int:
    """
    POSTs a payload to its endpoint exactly once.

    Args:
        session: A requests session with retries disabled.
        url: The target endpoint.
        payload: The payload to send; serialized to JSON unless already bytes.
        trace_id: Identifier prefixed to log lines for this delivery.
        logger: The Powertools Logger instance for structured logging.
        timeout: Connect and read timeout in seconds.

    Returns:
        The HTTP status code of the response, whatever its value.

    Raises:
        TransportError: If the request could not be sent or no response arrived.
    """
    try:
        response = session.post(
            url,
            data=encode_payload(payload),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise TransportError(f"[{trace_id}] failed to call external API: {e}") from e

    try:
        if response.status_code >= 400:
            logger.warning(
                f"[{trace_id}] API error",
                extra={"status_code": response.status_code, "response_body": response.text[:MAX_LOGGED_BODY_CHARS]},
            )
        return response.status_code
    finally:
        response.close()


def deliver(message: ParsedMessage, send: SendFunc, trace_id: str) -> ForwardOutcome:
    """Forwards one message and classifies the result."""
    try:
        return Delivered(send(message.url, message.payload, trace_id))
    except TransportError as e:
        return Failed(str(e))


# --- Group Worker ---

def process_group(
    group_id: str,
    records: List[SQSEventRecord],
    send: SendFunc,
    logger: Logger,
    id_generator: IdGenerator = new_id,
    payload_type: Optional[Type[Any]] = None,
) -> GroupResult:
    """
    Processes one group's records strictly in order, stopping at the first failure.

    A record that fails to parse, cannot be sent, or is rejected with a status
    code >= 400 is reported as failed, as is one that raises any other error
    while being parsed or forwarded. Records after it in the same group are
    neither attempted nor reported; the queue redelivers them along with the
    failed record.

    Returns:
        A GroupResult holding the failed identifier (if any) and counters.
    """
    result = GroupResult(group_id=group_id)
    logger.info("Processing group", extra={"group_id": group_id, "message_count": len(records)})

    for index, record in enumerate(records):
        trace_id = id_generator()
        message_id = record["messageId"]
        logger.info(f"[{trace_id}] Processing message", extra={"message_id": message_id, "group_id": group_id})

        try:
            message = parse_record(record, group_id, trace_id, logger, payload_type)
        except MalformedBody as e:
            logger.error(f"[{trace_id}] Malformed message body", extra={"message_id": message_id, "error": str(e)})
            result.failed_ids.append(message_id)
            result.skipped = len(records) - index - 1
            break
        except Exception:
            logger.exception(f"[{trace_id}] Unexpected error parsing message", extra={"message_id": message_id})
            result.failed_ids.append(message_id)
            result.skipped = len(records) - index - 1
            break

        try:
            outcome = deliver(message, send, trace_id)
        except Exception as e:
            logger.exception(f"[{trace_id}] Unexpected error forwarding message", extra={"message_id": message_id})
            outcome = Failed(f"unexpected error: {e}")

        if isinstance(outcome, Failed):
            logger.error(
                f"[{trace_id}] Error forwarding message",
                extra={"message_id": message.message_id, "error": outcome.reason},
            )
        elif not outcome.ok:
            logger.error(
                f"[{trace_id}] API returned error for message",
                extra={"message_id": message.message_id, "status_code": outcome.status_code},
            )
        if not outcome.ok:
            result.failed_ids.append(message.message_id)
            result.skipped = len(records) - index - 1
            break

        result.delivered += 1
        logger.info(f"[{trace_id}] Successfully processed message", extra={"message_id": message.message_id})

    if result.skipped:
        logger.warning(
            "Skipped remaining messages in group after failure",
            extra={"group_id": group_id, "skipped": result.skipped},
        )
    return result


# --- Batch Coordinator ---

def process_batch(
    records: List[SQSEventRecord],
    send: SendFunc,
    logger: Logger,
    max_workers: int,
    id_generator: IdGenerator = new_id,
    payload_type: Optional[Type[Any]] = None,
) -> BatchResult:
    """
    Forwards a batch of records, one concurrent task per ordering group.

    The coordinator moves through Partitioning, Dispatching, Awaiting and
    Finalized. It always waits for every group task before reading results,
    so the returned failure list is complete. A group task that dies outside its
    per-message handling (for example on a record without a messageId) has
    all of its records reported as failed.

    Args:
        records: The SQS records of one invocation.
        send: Forwarder bound to an HTTP session, `send(url, payload, trace_id)`.
        logger: The Powertools Logger instance for structured logging.
        max_workers: Upper bound on the thread pool size.
        id_generator: Source of synthetic group keys and trace identifiers.
        payload_type: Optional typed payload schema.

    Returns:
        A BatchResult with the failed identifiers in batch order.
    """
    logger.debug("Coordinator state: Partitioning", extra={"record_count": len(records)})
    groups = partition_records(records, id_generator)
    result = BatchResult(received=len(records), groups=len(groups))
    failures = BatchFailureSet()

    if groups:
        pool_size = max(1, min(max_workers, len(groups)))
        logger.debug("Coordinator state: Dispatching", extra={"group_count": len(groups), "pool_size": pool_size})
        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="group-worker") as executor:
            futures = {
                executor.submit(process_group, group_id, group, send, logger, id_generator, payload_type): group_id
                for group_id, group in groups.items()
            }
            logger.debug("Coordinator state: Awaiting")
            done, _ = wait(futures)

        for future in done:
            group_id = futures[future]
            error = future.exception()
            if error is not None:
                logger.error("Group worker failed unexpectedly", extra={"group_id": group_id}, exc_info=error)
                for record in groups[group_id]:
                    failures.add(record["messageId"])
                continue

            group_result = future.result()
            for message_id in group_result.failed_ids:
                failures.add(message_id)
            result.delivered += group_result.delivered
            result.skipped += group_result.skipped

    result.failed_ids = failures.finalize([r["messageId"] for r in records])
    logger.debug("Coordinator state: Finalized", extra={"failed_count": len(result.failed_ids)})
    return result


# --- Observability ---

def get_queue_depth(sqs_client: SQSClient, queue_url: str, logger: Logger) -> Optional[int]:
    """Returns the approximate number of visible messages, or None if it cannot be read."""
    try:
        attrs = sqs_client.get_queue_attributes(QueueUrl=queue_url, AttributeNames=["ApproximateNumberOfMessages"])
        return int(attrs.get("Attributes", {}).get("ApproximateNumberOfMessages", 0))
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Could not get queue attributes: {e}")
        return None


def build_metrics(environment: str, status: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Formats a CloudWatch Embedded Metric Format (EMF) record.

    Dashboards and alarms should filter/group by the 'Environment' dimension.
    """
    metric_names = [
        "MessagesReceived",
        "MessagesDelivered",
        "MessagesFailed",
        "MessagesSkipped",
        "GroupsProcessed",
        "ProcessingLatencyMs",
        "QueueDepth",
    ]
    metrics = {name: payload[name] for name in metric_names if name in payload}
    return {
        "_aws": {
            "Timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            "CloudWatchMetrics": [
                {
                    "Namespace": METRICS_NAMESPACE,
                    "Dimensions": [["Environment"]],
                    "Metrics": [
                        {"Name": k, "Unit": "Milliseconds" if "Latency" in k else "Count"} for k in metrics
                    ],
                }
            ],
        },
        "Environment": environment,
        "Status": status,
        **payload,
    }


def emit_metrics(environment: str, status: str, payload: Dict[str, Any]) -> None:
    """Writes an EMF record to stdout, where CloudWatch extracts the metrics."""
    print(json.dumps(build_metrics(environment, status, payload)), flush=True)


def elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
