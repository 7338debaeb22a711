"""
Keyword confirmation parser.

Default implementation of the collaborator that inbound ingestion forwards
each message to before storing it. It classifies the text, applies the side
effects to the associate's assignments or opt-out flag, and acknowledges
the message on the channel it arrived on.
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from app.models import Channel, ConfirmationStatus
from app.storage import confirm_assignments, set_associate_opted_out
from app.utils import parse_clock_time, utc_now

logger = logging.getLogger(__name__)

CONFIRMATION = "confirmation"
HELP_REQUEST = "help_request"
OPT_OUT = "opt_out"
OPT_IN = "opt_in"
UNKNOWN = "unknown"

CONFIRMATION_KEYWORDS = (
    "c",
    "confirm",
    "confirmed",
    "yes",
    "y",
    "ok",
    "okay",
    "sure",
    "will be there",
    "i'll be there",
    "ill be there",
)
OPT_OUT_KEYWORDS = ("stop", "unsubscribe")
OPT_IN_KEYWORDS = ("start", "unstop", "subscribe")

# Assignments further out than this are left for a later confirmation
CONFIRMATION_WINDOW_DAYS = 7
CONFIRMED_WITHIN_HOURS = 6
LIKELY_CONFIRMED_WITHIN_HOURS = 24


def classify_message(body: str) -> str:
    """
    Map inbound text to an action.

    Keywords match the whole message or whole words inside it; one-letter
    keywords ('c', 'y') only match on their own.
    """
    normalized = " ".join((body or "").strip().lower().split())
    if not normalized:
        return UNKNOWN

    if normalized in OPT_OUT_KEYWORDS:
        return OPT_OUT
    if normalized in OPT_IN_KEYWORDS:
        return OPT_IN
    if normalized == "help":
        return HELP_REQUEST

    for keyword in CONFIRMATION_KEYWORDS:
        if normalized == keyword:
            return CONFIRMATION
        if len(keyword) > 1 and re.search(rf"(?<![\w']){re.escape(keyword)}(?![\w'])", normalized):
            return CONFIRMATION
    return UNKNOWN


def confirmation_status_for(work_date: date, start_time: str, now: datetime) -> str:
    """
    How firm a confirmation is, from the hours left until the shift starts.

    - up to 6 hours ahead: CONFIRMED
    - up to 24 hours ahead, or already started: LIKELY_CONFIRMED
    - further out: SOFT_CONFIRMED, which keeps later reminders going
    """
    hours, minutes = parse_clock_time(start_time) or (0, 0)
    starts_at = datetime(work_date.year, work_date.month, work_date.day, hours, minutes, tzinfo=timezone.utc)
    hours_until = (starts_at - now).total_seconds() / 3600

    if 0 < hours_until <= CONFIRMED_WITHIN_HOURS:
        return ConfirmationStatus.CONFIRMED
    if hours_until <= LIKELY_CONFIRMED_WITHIN_HOURS:
        return ConfirmationStatus.LIKELY_CONFIRMED
    return ConfirmationStatus.SOFT_CONFIRMED


def confirmation_reply(first_name: str, count: int) -> str:
    if count == 0:
        return (
            f"Hi {first_name}! We don't have any upcoming assignments for you to confirm right now. "
            "If you think this is an error, please call us."
        )
    if count == 1:
        return f"Thanks {first_name}! Your assignment is confirmed. We'll see you there!"
    return f"Thanks {first_name}! Your {count} assignments are confirmed. We'll see you there!"


def help_reply(first_name: str) -> str:
    return (
        f"Hi {first_name}! Reply C or CONFIRM to confirm your assignment, "
        "HELP for this message, or STOP to stop receiving texts."
    )


def opt_out_reply(first_name: str) -> str:
    return (
        f"{first_name}, you have been unsubscribed from our text reminders. "
        "Reply START to re-subscribe."
    )


def opt_in_reply(first_name: str) -> str:
    return f"{first_name}, you've been re-subscribed to text reminders. Reply STOP to opt out anytime."


class KeywordConfirmationParser:
    def __init__(
        self,
        session_factory: Callable,
        gate=None,
        provider=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.gate = gate
        self.provider = provider
        self.clock = clock

    def handle(
        self,
        associate_id: str,
        company_id: str,
        body: str,
        first_name: str = "",
        reply_to: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> str:
        """
        Apply the action for one inbound message and acknowledge it.

        Storage errors propagate. Reply failures are logged only. Returns the
        action name.
        """
        action = classify_message(body)
        now = self.clock()
        reply = None

        if action == CONFIRMATION:
            def status_for(assignment):
                return confirmation_status_for(assignment.work_date, assignment.start_time, now)

            with self.session_factory() as db:
                count = confirm_assignments(
                    db,
                    associate_id,
                    now.date(),
                    now.date() + timedelta(days=CONFIRMATION_WINDOW_DAYS),
                    now,
                    status_for,
                )
            logger.info(f"Associate {associate_id} confirmed {count} upcoming assignments")
            reply = confirmation_reply(first_name, count)
        elif action == OPT_OUT:
            with self.session_factory() as db:
                set_associate_opted_out(db, associate_id)
            logger.info(f"Associate {associate_id} opted out")
            reply = opt_out_reply(first_name)
        elif action == OPT_IN:
            with self.session_factory() as db:
                set_associate_opted_out(db, associate_id, opted_out=False)
            logger.info(f"Associate {associate_id} opted back in")
            reply = opt_in_reply(first_name)
        elif action == HELP_REQUEST:
            logger.info(f"Associate {associate_id} asked for help (company {company_id})")
            reply = help_reply(first_name)
        else:
            logger.debug(f"No action for message from associate {associate_id}")

        if reply is not None and reply_to:
            self._send_reply(company_id, reply_to, reply, channel)
        return action

    def _send_reply(self, company_id: str, to: str, body: str, channel: Optional[str]) -> bool:
        if self.gate is None or self.provider is None:
            logger.debug(f"No provider configured, reply to {to} skipped")
            return False

        try:
            credentials = self.gate.resolve_credentials(company_id)
            if not credentials.ok:
                logger.warning(f"Reply to {to} not sent: {credentials.message}")
                return False

            result = self.provider.send(credentials.value, to, body, channel or Channel.SMS)
        except Exception:
            logger.exception(f"Reply to {to} failed")
            return False

        if not result.success:
            logger.warning(f"Reply to {to} rejected by provider: {result.error}")
            return False
        logger.info(f"Reply {result.message_sid} sent to {to} over {channel}")
        return True
