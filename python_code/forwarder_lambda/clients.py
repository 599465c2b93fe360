"""
A factory module for creating the forwarder's network clients.

The handler receives its HTTP session and SQS client from here, so tests can
substitute mocks (or moto, which intercepts the boto3 calls) without making
real network calls.
"""

import logging
import os
from typing import Optional

import boto3
import botocore.config
import requests
from mypy_boto3_sqs import SQSClient
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)

# A shared, robust retry configuration for the SQS client used to read queue
# depth. Message forwarding itself is never retried.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 5, "mode": "adaptive"}
)


def get_http_session(pool_size: int) -> requests.Session:
    """
    Returns a requests session sized for the group worker pool.

    Retries are disabled on both adapters: a failed delivery is reported back
    to SQS, which owns redelivery.

    Args:
        pool_size: Maximum number of pooled connections per host, normally the
                   number of group workers.
    """
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
    session = requests.Session()
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def get_sqs_client(region_name: Optional[str] = None) -> SQSClient:
    """
    Returns an SQS client using the Lambda's region.

    If `USE_MOTO` is set, moto is assumed to be active and will intercept the
    calls made through this client.
    """
    aws_region = region_name or os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked SQS client.")

    sqs_client: SQSClient = boto3.client("sqs", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE)
    return sqs_client
