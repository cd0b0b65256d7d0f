"""Transport adapters exercised against moto's in-memory SNS, SES and SQS."""

import json

import boto3
import pytest
from moto import mock_aws

from book_events import clients, codec
from book_events.model import EmailMessage, RetryConfig

from .conftest import EVENT_ID, make_event

SENDER = "noreply@example.com"


@pytest.fixture
def aws(aws_credentials):
    with mock_aws():
        yield


@pytest.fixture
def subscribed_queue(aws):
    """An SNS topic with an SQS queue subscribed to it."""
    sns = clients.get_sns_client(RetryConfig(attempt_timeout=2, connect_timeout=1))
    sqs = clients.get_sqs_client()
    topic_arn = sns.create_topic(Name="book-events")["TopicArn"]
    queue_url = sqs.create_queue(QueueName="book-notifications")["QueueUrl"]
    queue_arn = sqs.get_queue_attributes(QueueUrl=queue_url, AttributeNames=["QueueArn"])["Attributes"]["QueueArn"]
    sns.subscribe(TopicArn=topic_arn, Protocol="sqs", Endpoint=queue_arn)
    return sns, sqs, topic_arn, queue_url


class TestSNSTopic:
    def test_publish_reaches_subscribed_queue(self, subscribed_queue):
        sns, sqs, topic_arn, queue_url = subscribed_queue
        event = make_event()
        topic = clients.SNSTopic(sns, topic_arn)

        message_id = topic.publish(codec.serialize_event(event), {"bookId": "book-42", "empty": ""}, "x" * 150)

        messages = sqs.receive_message(QueueUrl=queue_url, MaxNumberOfMessages=1)["Messages"]
        envelope = json.loads(messages[0]["Body"])
        assert envelope["MessageId"] == message_id
        assert len(envelope["Subject"]) == clients.SNS_SUBJECT_MAX_LENGTH
        assert envelope["MessageAttributes"]["bookId"]["Value"] == "book-42"
        assert "empty" not in envelope["MessageAttributes"]
        assert codec.decode(messages[0]["Body"]).event_id == EVENT_ID

    def test_sns_client_makes_single_attempt(self, aws):
        sns = clients.get_sns_client(RetryConfig(attempt_timeout=3, connect_timeout=2))
        assert sns.meta.config.read_timeout == 3
        assert sns.meta.config.connect_timeout == 2
        assert sns.meta.config.retries["total_max_attempts"] == 1


class TestSESEmailTransport:
    def test_send_with_cc(self, aws):
        ses = clients.get_ses_client("us-east-1")
        ses.verify_email_identity(EmailAddress=SENDER)
        transport = clients.SESEmailTransport(ses, SENDER)

        message_id = transport.send(
            "editor@example.com",
            ["cc@example.com"],
            EmailMessage(subject="Book Published: X", text_body="text", html_body="<p>html</p>"),
        )

        assert message_id
        assert ses.get_send_quota()["SentLast24Hours"] == 1

    def test_unverified_sender_is_rejected(self, aws):
        ses = clients.get_ses_client("us-east-1")
        transport = clients.SESEmailTransport(ses, "unverified@example.com")
        with pytest.raises(ses.exceptions.MessageRejected):
            transport.send("editor@example.com", [], EmailMessage(subject="s", text_body="t"))


class TestQueueDepth:
    def test_counts_visible_messages(self, aws):
        sqs = boto3.client("sqs", region_name="us-east-1")
        queue_url = sqs.create_queue(QueueName="depth")["QueueUrl"]
        for i in range(3):
            sqs.send_message(QueueUrl=queue_url, MessageBody=str(i))
        assert clients.get_queue_depth(sqs, queue_url) == 3
