"""
pytest configuration for the forwarder tests.

Adds python_code to the Python path and sets up the Lambda environment before
the handler module is imported.
"""

import json
import os
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Set test environment variables BEFORE any imports
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

src_dir = Path(__file__).parent.parent / "python_code"
sys.path.insert(0, str(src_dir))

from aws_lambda_powertools import Logger  # noqa: E402

from forwarder_lambda.model import TransportError  # noqa: E402


def make_record(
    message_id: str,
    group_id: Optional[str] = None,
    url: Optional[str] = None,
    payload=None,
    body: Optional[str] = None,
) -> Dict:
    """Builds an SQS record shaped like the ones Lambda delivers."""
    if body is None:
        body = json.dumps({"url": url or f"https://example.com/{message_id}", "payload": payload or {"id": message_id}})
    attributes = {"ApproximateReceiveCount": "1"}
    if group_id is not None:
        attributes["MessageGroupID"] = group_id
    return {
        "messageId": message_id,
        "receiptHandle": f"handle-{message_id}",
        "body": body,
        "attributes": attributes,
        "messageAttributes": {},
    }


class FakeSender:
    """
    Stands in for the bound forwarder. Records every attempted URL and answers
    with a configured status code or TransportError per URL.
    """

    def __init__(self, statuses: Optional[Dict[str, object]] = None, delays: Optional[Dict[str, float]] = None):
        self.statuses = statuses or {}
        self.delays = delays or {}
        self.attempts: List[str] = []
        self.payloads: List[object] = []
        self._lock = threading.Lock()

    def __call__(self, url: str, payload, trace_id: str) -> int:
        with self._lock:
            self.attempts.append(url)
            self.payloads.append(payload)
        delay = self.delays.get(url)
        if delay:
            threading.Event().wait(delay)
        outcome = self.statuses.get(url, 200)
        if outcome == "transport":
            raise TransportError(f"[{trace_id}] connection refused")
        return outcome


@pytest.fixture
def logger():
    return Logger(service="forwarder-tests", level="DEBUG")


@pytest.fixture
def record():
    return make_record
