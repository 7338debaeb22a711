# =============================================================================
# Dependency Container
# =============================================================================
# Builds the clients and components the routes use. Everything is created
# lazily on first access; tests assign fakes to the attributes before use.
# =============================================================================

import logging
import time
from dataclasses import dataclass, field
from functools import cached_property
from typing import Callable

import boto3
from fastapi import Request

from app.config import Settings
from app.confirmations import KeywordConfirmationParser
from app.delivery_status import DeliveryStatusProcessor
from app.gate import CredentialGate
from app.inbound import InboundIngestor
from app.message_router import MessageRouter
from app.provider import TwilioClient
from app.queues import DeadLetterSink, SqsQueue
from app.reminders import ReminderScheduler
from app.storage import SessionLocal
from app.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class Deps:
    settings: Settings
    session_factory: Callable = field(default=SessionLocal)
    clock: Callable = field(default=utc_now)
    sleep: Callable = field(default=time.sleep)

    # ==========================================================================
    # External clients
    # ==========================================================================

    @cached_property
    def sqs(self):
        """SQS client."""
        return boto3.client("sqs", region_name=self.settings.AWS_REGION)

    @cached_property
    def send_queue(self) -> SqsQueue:
        return SqsQueue(self.sqs, self.settings.SEND_QUEUE_URL)

    @cached_property
    def reminder_queue(self) -> SqsQueue:
        return SqsQueue(self.sqs, self.settings.REMINDER_QUEUE_URL)

    @cached_property
    def dead_letters(self) -> DeadLetterSink:
        if not self.settings.DLQ_URL:
            return DeadLetterSink(None)
        return DeadLetterSink(SqsQueue(self.sqs, self.settings.DLQ_URL))

    @cached_property
    def provider(self) -> TwilioClient:
        return TwilioClient(
            encryption_key=self.settings.CREDENTIALS_ENCRYPTION_KEY,
            api_base=self.settings.TWILIO_API_BASE,
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
        )

    # ==========================================================================
    # Components
    # ==========================================================================

    @cached_property
    def gate(self) -> CredentialGate:
        return CredentialGate(
            self.session_factory,
            limit_per_minute=self.settings.RATE_LIMIT_PER_MINUTE,
            clock=self.clock,
        )

    @cached_property
    def router(self) -> MessageRouter:
        return MessageRouter(
            self.session_factory,
            self.gate,
            self.send_queue,
            self.reminder_queue,
            verification_key=self.settings.JWT_VERIFICATION_KEY,
            algorithm=self.settings.JWT_ALGORITHM,
            session_window_hours=self.settings.SESSION_WINDOW_HOURS,
            auto_upgrade=self.settings.WHATSAPP_AUTO_UPGRADE,
            clock=self.clock,
        )

    @cached_property
    def scheduler(self) -> ReminderScheduler:
        return ReminderScheduler(
            session_factory=self.session_factory,
            gate=self.gate,
            provider=self.provider,
            send_delay_ms=self.settings.REMINDER_SEND_DELAY_MS,
            morning_of_hours_ahead=self.settings.MORNING_OF_HOURS_AHEAD,
            clock=self.clock,
            sleep=self.sleep,
        )

    @cached_property
    def status_processor(self) -> DeliveryStatusProcessor:
        return DeliveryStatusProcessor(
            self.session_factory,
            self.gate,
            self.provider,
            policy_error_code=self.settings.WHATSAPP_POLICY_ERROR_CODE,
            clock=self.clock,
        )

    @cached_property
    def confirmation_parser(self) -> KeywordConfirmationParser:
        return KeywordConfirmationParser(
            self.session_factory, gate=self.gate, provider=self.provider, clock=self.clock
        )

    @cached_property
    def ingestor(self) -> InboundIngestor:
        return InboundIngestor(self.session_factory, parser=self.confirmation_parser, clock=self.clock)


def get_deps(request: Request) -> Deps:
    """FastAPI dependency: the container attached to the application."""
    return request.app.state.deps
