"""
Data models for the Ordered Forwarder.

This module defines the core data structures passed between the partitioner,
parser, forwarder and batch coordinator. Using dataclasses and TypedDicts keeps
the data contracts explicit, statically checked by mypy, and self-documenting.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, TypedDict, Union


class SQSEventRecord(TypedDict, total=False):
    """
    Represents the structure of a single SQS message record from a Lambda event.

    Only `messageId` and `body` are required by the forwarder. `attributes` may
    carry the `MessageGroupID` used for ordering; `messageAttributes` is passed
    through untouched.
    """

    messageId: str
    receiptHandle: str
    body: str
    attributes: Dict[str, str]
    messageAttributes: Dict[str, Any]


class ForwarderError(Exception):
    """Base class for message-level failures handled by the group worker."""


class MalformedBody(ForwarderError):
    """The record body is not a JSON object of the expected shape."""


class TransportError(ForwarderError):
    """The HTTP request could not be sent or no response was received."""


@dataclass(frozen=True)
class ProductPayload:
    """Typed payload schema, selected with PAYLOAD_SCHEMA=product."""

    product: int
    sku: int


# Typed payload schemas selectable through configuration.
PAYLOAD_SCHEMAS = {"product": ProductPayload}


@dataclass(frozen=True)
class ParsedMessage:
    """
    The decoded form of one SQSEventRecord.

    Attributes:
        message_id: The SQS message identifier.
        url: The endpoint the payload is POSTed to.
        payload: The exact bytes of the payload's source text, or an
                 instance of the configured typed payload schema.
        group_id: The resolved ordering key.
        attributes: The record's original attribute map.
        message_attributes: The record's message-attribute metadata.
    """

    message_id: str
    url: str
    payload: Any
    group_id: str
    attributes: Dict[str, str] = field(default_factory=dict)
    message_attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Delivered:
    """A response was received. Status codes >= 400 still count as failures."""

    status_code: int

    @property
    def ok(self) -> bool:
        return self.status_code < 400


@dataclass(frozen=True)
class Failed:
    """The message could not be delivered at all."""

    reason: str

    @property
    def ok(self) -> bool:
        return False


ForwardOutcome = Union[Delivered, Failed]


@dataclass
class GroupResult:
    """
    Outcome of one group worker run.

    Attributes:
        group_id: The ordering key of the group.
        failed_ids: Identifiers to retry. At most one, since a group stops at
                    its first failure.
        delivered: Number of messages successfully forwarded.
        skipped: Number of messages not attempted because an earlier message
                 in the group failed.
    """

    group_id: str
    failed_ids: List[str] = field(default_factory=list)
    delivered: int = 0
    skipped: int = 0


class BatchFailureSet:
    """
    The set of message identifiers that must be retried for one invocation.

    Writes are guarded by a lock so that any number of threads may report
    failures. Once `finalize` is called the set is read-only.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: Set[str] = set()
        self._order: List[str] = []
        self._finalized: Optional[List[str]] = None

    def add(self, message_id: str) -> None:
        with self._lock:
            if self._finalized is not None:
                raise RuntimeError("BatchFailureSet is finalized.")
            if message_id not in self._ids:
                self._ids.add(message_id)
                self._order.append(message_id)

    def __contains__(self, message_id: object) -> bool:
        with self._lock:
            return message_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def finalize(self, batch_order: Optional[List[str]] = None) -> List[str]:
        """
        Freezes the set and returns its identifiers.

        Args:
            batch_order: Optional message ids in batch order. When given, the
                         result follows that order instead of insertion order.
        """
        with self._lock:
            if self._finalized is None:
                if batch_order is not None:
                    self._finalized = [m for m in dict.fromkeys(batch_order) if m in self._ids]
                else:
                    self._finalized = list(self._order)
            return list(self._finalized)


@dataclass
class BatchResult:
    """
    The finalized outcome of one invocation, used for the response and metrics.

    Attributes:
        failed_ids: Identifiers to report in `batchItemFailures`.
        received: Number of records in the batch.
        groups: Number of ordering groups processed.
        delivered: Number of messages successfully forwarded.
        skipped: Number of messages not attempted due to an earlier failure in
                 their group.
    """

    failed_ids: List[str] = field(default_factory=list)
    received: int = 0
    groups: int = 0
    delivered: int = 0
    skipped: int = 0
