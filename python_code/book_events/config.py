"""
Configuration loading for the publisher and the notification consumer.

All settings come from environment variables. Required variables are checked
when the settings object is built so that a misconfigured function fails on
its first (cold start) invocation instead of partway through a batch.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from aws_lambda_powertools import Logger

from .core import is_valid_email
from .model import RetryConfig

SERVICE_NAME = "book-notifications"

logger = Logger(service=SERVICE_NAME, child=True)

CC_EMAILS_VAR = "NOTIFICATION_CC_EMAILS"
CC_EMAIL_VAR = "NOTIFICATION_CC_EMAIL"
CC_ENABLED_VAR = "NOTIFICATION_CC_ENABLED"
_FALSE_VALUES = {"false", "0", "no"}


def get_env_var(
    name: str, default: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.
        environ: The mapping to read from; defaults to os.environ.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    source = os.environ if environ is None else environ
    value = source.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in _FALSE_VALUES


def parse_email_list(value: str) -> List[str]:
    return [email.strip() for email in value.split(",") if email.strip()]


@dataclass(frozen=True)
class CCConfiguration:
    """
    The CC recipients added to every notification.

    Addresses are kept as configured, including malformed ones: the delivery
    tracker reports those as failed recipients instead of silently losing them.
    """

    enabled: bool = True
    emails: List[str] = field(default_factory=list)

    def effective_emails(self, primary: str) -> List[str]:
        """CC addresses for a send, minus any that equal the primary recipient."""
        if not self.enabled:
            return []
        normalized_primary = primary.strip().lower()
        return [e for e in self.emails if e.strip().lower() != normalized_primary]


def load_cc_configuration(environ: Optional[Mapping[str, str]] = None) -> CCConfiguration:
    """
    Reads the CC configuration.

    NOTIFICATION_CC_EMAILS (comma separated) takes precedence over
    NOTIFICATION_CC_EMAIL. An explicitly empty NOTIFICATION_CC_EMAIL, or a
    false-like NOTIFICATION_CC_ENABLED, disables CC entirely.
    """
    source = os.environ if environ is None else environ
    enabled = _parse_bool(source.get(CC_ENABLED_VAR, "true"))

    emails: List[str] = []
    multiple = source.get(CC_EMAILS_VAR, "")
    single = source.get(CC_EMAIL_VAR)
    if multiple.strip():
        emails = parse_email_list(multiple)
    elif single is not None and single.strip():
        emails = [single.strip()]

    invalid = [e for e in emails if not is_valid_email(e)]
    if invalid:
        logger.warning("Invalid CC email addresses in configuration.", extra={"invalid_emails": invalid})

    return CCConfiguration(enabled=enabled and bool(emails), emails=emails)


@dataclass(frozen=True)
class ConsumerSettings:
    """Settings for the SQS notification consumer Lambda."""

    from_email: str
    target_email: str
    environment: str = "dev"
    log_level: str = "INFO"
    metrics_namespace: str = "BookNotifications"
    max_retries: int = 3
    ses_region: Optional[str] = None
    queue_url: Optional[str] = None
    cc: CCConfiguration = field(default_factory=CCConfiguration)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "ConsumerSettings":
        def env(name: str, default: Optional[str] = None) -> str:
            return get_env_var(name, default, environ)

        return cls(
            from_email=env("FROM_EMAIL"),
            target_email=env("NOTIFICATION_TARGET_EMAIL"),
            environment=env("ENVIRONMENT", "dev"),
            log_level=env("LOG_LEVEL", "INFO").upper(),
            metrics_namespace=env("METRICS_NAMESPACE", "BookNotifications"),
            max_retries=int(env("MAX_RETRIES", "3")),
            ses_region=env("SES_REGION", "") or None,
            queue_url=env("QUEUE_URL", "") or None,
            cc=load_cc_configuration(environ),
        )


@dataclass(frozen=True)
class PublisherSettings:
    """Settings for the SNS event publisher used by the workflow service."""

    topic_arn: str
    environment: str = "dev"
    metrics_namespace: str = "BookWorkflow"
    region: Optional[str] = None
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "PublisherSettings":
        def env(name: str, default: Optional[str] = None) -> str:
            return get_env_var(name, default, environ)

        max_attempts = int(env("PUBLISH_MAX_ATTEMPTS", "3"))
        if max_attempts < 1:
            raise ValueError("FATAL: PUBLISH_MAX_ATTEMPTS must be at least 1.")
        retry = RetryConfig(
            max_attempts=max_attempts,
            base_delay=float(env("PUBLISH_BASE_DELAY_SECONDS", "1.0")),
            max_delay=float(env("PUBLISH_MAX_DELAY_SECONDS", "10.0")),
            multiplier=float(env("PUBLISH_BACKOFF_MULTIPLIER", "2.0")),
            jitter=_parse_bool(env("PUBLISH_JITTER", "true")),
            attempt_timeout=float(env("PUBLISH_TIMEOUT_SECONDS", "30")),
            connect_timeout=float(env("PUBLISH_CONNECT_TIMEOUT_SECONDS", "10")),
        )
        return cls(
            topic_arn=env("BOOK_WORKFLOW_EVENTS_TOPIC_ARN"),
            environment=env("ENVIRONMENT", "dev"),
            metrics_namespace=env("METRICS_NAMESPACE", "BookWorkflow"),
            region=env("AWS_REGION", "") or None,
            retry=retry,
        )
