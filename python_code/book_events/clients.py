"""
A factory module for boto3 clients and the transport adapters built on them.

This module is where the pipeline's abstract collaborators (the pub/sub topic
and the email transport) meet the AWS SDK. The publisher, the delivery tracker
and the consumer only see the small `Topic` and `EmailTransport` interfaces, so
tests can pass in fakes, or real clients intercepted by moto.
"""

import os
from typing import Dict, List, Optional, Protocol

import boto3
import botocore.config
from aws_lambda_powertools import Logger
from mypy_boto3_ses import SESClient
from mypy_boto3_sns import SNSClient
from mypy_boto3_sns.type_defs import MessageAttributeValueTypeDef
from mypy_boto3_sqs import SQSClient

from .config import SERVICE_NAME
from .model import EmailMessage, RetryConfig

logger = Logger(service=SERVICE_NAME, child=True)

SNS_SUBJECT_MAX_LENGTH = 100

# A shared retry configuration for clients whose calls are not retried by
# this package (SES sends are retried by SQS redelivery instead).
BOTO_CONFIG_RETRYABLE = botocore.config.Config(retries={"max_attempts": 5, "mode": "adaptive"})


def _region(region: Optional[str]) -> Optional[str]:
    resolved = region or os.environ.get("AWS_REGION")
    if not resolved:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")
    return resolved


def get_sns_client(retry: RetryConfig, region: Optional[str] = None) -> SNSClient:
    """
    Returns an SNS client for the publisher.

    Args:
        retry: Supplies the read and connect timeouts for a single attempt.
        region: The AWS region; defaults to AWS_REGION.
    """
    # The publisher runs its own retry loop, so the SDK makes exactly one attempt.
    config = botocore.config.Config(
        read_timeout=retry.attempt_timeout,
        connect_timeout=retry.connect_timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
    return boto3.client("sns", region_name=_region(region), config=config)


def get_ses_client(region: Optional[str] = None) -> SESClient:
    return boto3.client("ses", region_name=_region(region), config=BOTO_CONFIG_RETRYABLE)


def get_sqs_client(region: Optional[str] = None) -> SQSClient:
    return boto3.client("sqs", region_name=_region(region))


class Topic(Protocol):
    def publish(self, message: str, attributes: Dict[str, str], subject: Optional[str] = None) -> str:
        ...


class EmailTransport(Protocol):
    def send(self, to: str, cc: List[str], message: EmailMessage) -> str:
        ...


class SNSTopic:
    """Publishes messages to a single SNS topic."""

    def __init__(self, client: SNSClient, topic_arn: str):
        self._client = client
        self.topic_arn = topic_arn

    def publish(self, message: str, attributes: Dict[str, str], subject: Optional[str] = None) -> str:
        message_attributes: Dict[str, MessageAttributeValueTypeDef] = {
            key: {"DataType": "String", "StringValue": value} for key, value in attributes.items() if value
        }
        kwargs = {
            "TopicArn": self.topic_arn,
            "Message": message,
            "MessageAttributes": message_attributes,
        }
        if subject:
            kwargs["Subject"] = subject[:SNS_SUBJECT_MAX_LENGTH]
        response = self._client.publish(**kwargs)
        return response["MessageId"]


class SESEmailTransport:
    """Sends one email to a primary recipient and its CC list in a single SES call."""

    def __init__(self, client: SESClient, source: str):
        self._client = client
        self.source = source

    def send(self, to: str, cc: List[str], message: EmailMessage) -> str:
        body = {"Text": {"Data": message.text_body, "Charset": "UTF-8"}}
        if message.html_body:
            body["Html"] = {"Data": message.html_body, "Charset": "UTF-8"}
        destination = {"ToAddresses": [to]}
        if cc:
            destination["CcAddresses"] = list(cc)
        response = self._client.send_email(
            Source=self.source,
            Destination=destination,
            Message={"Subject": {"Data": message.subject, "Charset": "UTF-8"}, "Body": body},
        )
        return response["MessageId"]


def get_queue_depth(sqs_client: SQSClient, queue_url: str) -> int:
    attrs = sqs_client.get_queue_attributes(QueueUrl=queue_url, AttributeNames=["ApproximateNumberOfMessages"])
    return int(attrs.get("Attributes", {}).get("ApproximateNumberOfMessages", 0))
