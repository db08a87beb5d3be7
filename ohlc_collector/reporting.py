"""
Failure reporting for collector runs.

Reporters receive a FailureContext and the error text. A reporter that
cannot deliver raises ReportingError; callers log it and never report the
reporting failure again.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import requests

from .errors import ReportingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailureContext:
    source_context: str
    event_time: datetime
    project_id: Optional[str] = None
    table_name: Optional[str] = None


class FailureReporter(ABC):

    @abstractmethod
    def report_failure(self, context: FailureContext, message: str):
        """Deliver one failure notification."""


class LoggingFailureReporter(FailureReporter):
    """Reporter used when no notification channel is configured."""

    def report_failure(self, context: FailureContext, message: str):
        logger.error(
            f"{context.source_context} failed at {context.event_time.isoformat()} "
            f"(table: {context.table_name or '-'}): {message}"
        )


def build_slack_message(
    context: FailureContext,
    message: str,
    display_timezone: str = "Asia/Tokyo"
) -> Dict[str, Any]:
    """Slack Block Kit payload for a failure."""
    event_time = context.event_time
    if event_time.tzinfo is None:
        event_time = event_time.replace(tzinfo=timezone.utc)
    event_time = event_time.astimezone(ZoneInfo(display_timezone))

    fields = [
        {"type": "mrkdwn", "text": f"*Project:*\n{context.project_id or '-'}"},
        {"type": "mrkdwn", "text": f"*Function:*\n{context.source_context}"},
        {"type": "mrkdwn", "text": f"*EventTime:*\n{event_time.strftime('%Y/%m/%d %H:%M')}"},
    ]
    if context.table_name:
        fields.append({"type": "mrkdwn", "text": f"*Table:*\n{context.table_name}"})

    return {
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": ":warning:  Cause Error  :warning:"}},
            {"type": "section", "fields": fields},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Error Log:*\n```{message}```"}},
        ]
    }


class SlackFailureReporter(FailureReporter):
    """Posts failures to a Slack incoming webhook."""

    def __init__(self, webhook_url: str, timeout_seconds: float = 10, display_timezone: str = "Asia/Tokyo"):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.display_timezone = display_timezone

    def report_failure(self, context: FailureContext, message: str):
        payload = build_slack_message(context, message, self.display_timezone)

        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise ReportingError(f"Slack webhook request failed: {e}", table_name=context.table_name) from e

        if response.status_code != 200:
            raise ReportingError(
                f"Slack Webhook Error [Http Status: {response.status_code}], [Result {response.text}]",
                table_name=context.table_name
            )

        logger.info(f"Reported failure of {context.source_context} to Slack")
