"""
SQS-backed send queue and dead-letter sink.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from app.errors import InfrastructureError
from app.metrics import dead_letters_total, record_outcome

logger = logging.getLogger(__name__)


class SqsQueue:
    """Publishes JSON bodies to one SQS queue."""

    def __init__(self, client, queue_url: str):
        self.client = client
        self.queue_url = queue_url

    def publish(self, body: Dict[str, Any], attributes: Optional[Dict[str, str]] = None) -> str:
        """
        Send one message.

        Args:
            body: JSON-serializable payload
            attributes: string message attributes (e.g. MessageType)

        Returns:
            SQS MessageId

        Raises:
            InfrastructureError: queue not configured or the send failed
        """
        if not self.queue_url:
            raise InfrastructureError("Queue URL is not configured")

        message_attributes = {
            name: {"DataType": "String", "StringValue": str(value)}
            for name, value in (attributes or {}).items()
        }
        try:
            response = self.client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(body, default=str),
                MessageAttributes=message_attributes,
            )
        except (BotoCoreError, ClientError) as e:
            raise InfrastructureError(f"Failed to publish to queue: {e}") from e

        message_id = response.get("MessageId", "")
        logger.debug(f"Published message {message_id} to {self.queue_url}")
        return message_id


class DeadLetterSink:
    """
    Forensic copies of send requests that failed for infrastructure reasons.

    record() never raises: a failed write is logged and counted.
    """

    def __init__(self, queue: Optional[SqsQueue]):
        self.queue = queue

    def record(self, payload: Any, error: str, source: str = "message_router") -> bool:
        if self.queue is None or not self.queue.queue_url:
            logger.error(f"DLQ_URL not configured, dropping dead-letter record from {source}: {error}")
            record_outcome(dead_letters_total, "skipped")
            return False

        record = {
            "payload": payload,
            "error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
            "source": source,
        }
        try:
            self.queue.publish(record)
        except InfrastructureError as e:
            logger.error(f"Failed to write dead-letter record from {source}: {e}")
            record_outcome(dead_letters_total, "error")
            return False

        logger.info(f"Dead-letter record written from {source}")
        record_outcome(dead_letters_total, "written")
        return True
