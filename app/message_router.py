"""
Message router (send intake).

Authenticates a send request, validates it, passes it through the credential
and rate-limit gate and the channel arbitrator, and publishes a send task to
the queue. Client errors are answered with 4xx and never dead-lettered;
anything else is a 5xx whose request is handed back for dead-lettering.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from jose import JWTError, jwt
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.channels import recent_inbound_channel, resolve_send_channel
from app.errors import Err, ErrorKind, InfrastructureError, Ok, Result, classify_failure
from app.gate import CredentialGate
from app.models import Channel
from app.queues import SqsQueue
from app.schemas import SendRequest, SendResponse, SendTask, describe_validation_error, format_instant
from app.storage import find_associates_by_phone, find_conversations, get_conversation
from app.utils import format_phone_number, utc_now

logger = logging.getLogger(__name__)


@dataclass
class RouteOutcome:
    """HTTP-shaped result of one routing attempt."""
    status_code: int
    body: Dict[str, Any]
    result: str
    message_id: Optional[str] = None
    company_id: Optional[str] = None
    dead_letter: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class MessageRouter:
    def __init__(
        self,
        session_factory: Callable,
        gate: CredentialGate,
        send_queue: SqsQueue,
        reminder_queue: SqsQueue,
        verification_key: str,
        algorithm: str = "HS256",
        session_window_hours: int = 24,
        auto_upgrade: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.gate = gate
        self.send_queue = send_queue
        self.reminder_queue = reminder_queue
        self.verification_key = verification_key
        self.algorithm = algorithm
        self.session_window_hours = session_window_hours
        self.auto_upgrade = auto_upgrade
        self.clock = clock

    def authenticate(self, authorization: Optional[str]) -> Result:
        """
        Verify the bearer token.

        Returns:
            Ok(claims) or Err(AUTH)
        """
        if not authorization or not authorization.lower().startswith("bearer "):
            return Err(ErrorKind.AUTH, "Missing or invalid authorization header")

        token = authorization[7:].strip()
        try:
            claims = jwt.decode(
                token,
                self.verification_key,
                algorithms=[self.algorithm],
                options={"verify_aud": False},
            )
        except JWTError as e:
            logger.warning(f"JWT verification failed: {e}")
            return Err(ErrorKind.AUTH, "Invalid or expired token")
        return Ok(claims)

    def route(self, authorization: Optional[str], raw_body: bytes) -> RouteOutcome:
        auth = self.authenticate(authorization)
        if not auth.ok:
            return self._reject(auth)

        company_id = auth.value.get("company_id")
        if not company_id:
            return self._reject(Err(ErrorKind.VALIDATION, "company_id missing from token"))
        company_id = str(company_id)

        try:
            result = self._route(company_id, raw_body)
        except Exception as e:
            kind = classify_failure(e)
            if kind.is_client_error:
                logger.warning(f"Send request rejected for company {company_id}: {e}")
                return self._reject(Err(kind, str(e)), company_id)

            logger.error(f"Router error for company {company_id}: {e}", exc_info=True)
            return RouteOutcome(
                status_code=500,
                body={"detail": "Internal server error", "type": "server_error"},
                result="server_error",
                company_id=company_id,
                dead_letter={
                    "company_id": company_id,
                    "body": raw_body.decode("utf-8", errors="replace"),
                },
                error=str(e) or type(e).__name__,
            )

        if not result.ok:
            return self._reject(result, company_id)

        response = result.value
        return RouteOutcome(
            status_code=200,
            body=response.model_dump(by_alias=True),
            result="queued",
            message_id=response.messageId,
            company_id=company_id,
        )

    def _route(self, company_id: str, raw_body: bytes) -> Result:
        try:
            data = json.loads(raw_body or b"{}")
        except json.JSONDecodeError as e:
            return Err(ErrorKind.VALIDATION, f"Invalid JSON body: {e}")
        if not isinstance(data, dict):
            return Err(ErrorKind.VALIDATION, "Invalid JSON body: expected an object")

        try:
            request = SendRequest.model_validate(data)
        except ValidationError as e:
            return Err(ErrorKind.VALIDATION, describe_validation_error(e))

        to = format_phone_number(request.to)
        if not to.ok:
            return to

        credentials = self.gate.resolve_credentials(company_id)
        if not credentials.ok:
            return credentials

        admitted = self.gate.admit(company_id)
        if not admitted.ok:
            return admitted

        try:
            with self.session_factory() as db:
                conversation_id = self._conversation_for(db, company_id, request, to.value)
                if not conversation_id.ok:
                    return conversation_id
                recent = recent_inbound_channel(
                    db, conversation_id.value, self.session_window_hours, now=self.clock()
                )
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Session window lookup failed: {e}") from e

        channel = resolve_send_channel(
            request.channel,
            recent,
            templated=bool(request.content_sid),
            auto_upgrade=self.auto_upgrade,
            lookback_hours=self.session_window_hours,
        )
        if not channel.ok:
            return channel

        if channel.value == Channel.WHATSAPP and not credentials.value.whatsapp_number:
            if request.channel == Channel.WHATSAPP:
                return Err(ErrorKind.CONFIGURATION, "No WhatsApp number configured for company")
            # Upgrade not possible, keep the requested SMS
            channel = Ok(Channel.SMS)

        task = SendTask(
            message_id=str(uuid.uuid4()),
            company_id=company_id,
            to=to.value,
            from_number=request.from_number,
            body=request.message,
            message_type=request.message_type,
            channel=channel.value,
            target_time=request.target_time,
            conversation_id=conversation_id.value,
            content_sid=request.content_sid,
            twilio_subaccount_sid=credentials.value.subaccount_sid,
            twilio_auth_token_encrypted=credentials.value.auth_token_encrypted,
            created_at=format_instant(self.clock()),
        )

        queue = self.send_queue if request.message_type == "immediate" else self.reminder_queue
        queue.publish(task.model_dump(by_alias=True), {"MessageType": request.message_type})
        logger.info(
            f"Queued {request.message_type} {channel.value} message {task.message_id} for company {company_id}"
        )

        return Ok(
            SendResponse(
                messageId=task.message_id,
                to=task.to,
                from_number=request.from_number,
                channel=channel.value,
            )
        )

    def _conversation_for(self, db, company_id: str, request: SendRequest, to: str) -> Result:
        """
        Conversation whose inbound history decides the session window:
        the one named in the request, else the recipient's WhatsApp thread.
        """
        if request.conversation_id:
            conversation = get_conversation(db, request.conversation_id)
            if conversation is None or conversation.company_id != company_id:
                return Err(ErrorKind.VALIDATION, f"Invalid conversation_id: {request.conversation_id}")
            return Ok(conversation.id)

        for associate in find_associates_by_phone(db, to, company_id):
            conversations = find_conversations(db, associate.id, company_id, Channel.WHATSAPP)
            if conversations:
                return Ok(conversations[0].id)
        return Ok(None)

    def _reject(self, error: Err, company_id: Optional[str] = None) -> RouteOutcome:
        status_code = error.kind.http_status
        if error.kind == ErrorKind.RATE_LIMITED:
            result = "rate_limited"
        elif status_code >= 500:
            result = "server_error"
        else:
            result = "client_error"
        return RouteOutcome(
            status_code=status_code,
            body={"detail": error.message, "type": "server_error" if status_code >= 500 else "client_error"},
            result=result,
            company_id=company_id,
        )
