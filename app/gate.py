"""
Credential & rate-limit gate.

Resolves the provider subaccount a company sends from and enforces the
per-company, per-minute send ceiling.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.errors import Err, ErrorKind, InfrastructureError, Ok, Result
from app.models import Channel
from app.storage import get_credential_bindings, increment_rate_window
from app.utils import minute_window, utc_now

logger = logging.getLogger(__name__)

NO_CREDENTIALS_MESSAGE = "No Twilio subaccount configured for company"


@dataclass(frozen=True)
class Credentials:
    """Resolved sending identity for one company."""
    company_id: str
    subaccount_sid: str
    auth_token_encrypted: str
    sms_number: str
    whatsapp_number: Optional[str] = None

    def sender_for(self, channel: str) -> Optional[str]:
        return self.whatsapp_number if channel == Channel.WHATSAPP else self.sms_number


class CredentialGate:
    def __init__(
        self,
        session_factory: Callable,
        limit_per_minute: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.limit_per_minute = limit_per_minute
        self.clock = clock

    def resolve_credentials(self, company_id: str) -> Result:
        """
        Look up the company's binding.

        Several bindings for one company are tolerated: the most recently
        created one wins and a warning is logged.

        Returns:
            Ok(Credentials) or Err(CONFIGURATION)
        """
        try:
            with self.session_factory() as db:
                bindings = get_credential_bindings(db, company_id)
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Credential lookup failed: {e}") from e

        if not bindings:
            logger.warning(f"No credential binding for company {company_id}")
            return Err(ErrorKind.CONFIGURATION, NO_CREDENTIALS_MESSAGE)

        if len(bindings) > 1:
            logger.warning(
                f"Company {company_id} has {len(bindings)} credential bindings, "
                f"using most recent {bindings[0].id}"
            )

        binding = bindings[0]
        return Ok(
            Credentials(
                company_id=company_id,
                subaccount_sid=binding.subaccount_sid,
                auth_token_encrypted=binding.auth_token_encrypted,
                sms_number=binding.sms_number,
                whatsapp_number=binding.whatsapp_number,
            )
        )

    def admit(self, company_id: str) -> Result:
        """
        Count one send against the current minute and compare the
        post-increment value with the ceiling.

        Rejected attempts still count; the increment is never rolled back.

        Returns:
            Ok(count) or Err(RATE_LIMITED)
        """
        window = minute_window(self.clock())
        try:
            with self.session_factory() as db:
                count = increment_rate_window(db, company_id, window)
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Rate limit update failed: {e}") from e

        if count > self.limit_per_minute:
            logger.warning(f"Rate limit exceeded for company {company_id}: {count}/{self.limit_per_minute}")
            return Err(
                ErrorKind.RATE_LIMITED,
                f"Rate limit exceeded: maximum {self.limit_per_minute} messages per minute",
            )
        return Ok(count)
