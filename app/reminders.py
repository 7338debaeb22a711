"""
Reminder scheduler.

Selects shift assignments that are due for a reminder tier, filters out the
ones that are not eligible, sends a personalized SMS to each associate and
consumes one unit of the assignment's reminder budget per successful send.

Sends within one run are sequential with a fixed delay between them to stay
under the provider's throughput ceiling.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from app.conversations import resolve_conversation
from app.errors import Err, ErrorKind, Ok, Result
from app.gate import CredentialGate
from app.metrics import record_outcome, reminders_sent_total
from app.models import Channel, ConfirmationStatus
from app.storage import (
    as_utc,
    consume_reminder,
    create_message,
    get_assignment,
    get_assignments_for_date,
    get_assignments_for_slot,
)
from app.utils import format_phone_number, parse_clock_time, utc_now

logger = logging.getLogger(__name__)


class ReminderTier(str, Enum):
    TWO_DAYS_BEFORE = "TWO_DAYS_BEFORE"
    DAY_BEFORE = "DAY_BEFORE"
    MORNING_OF = "MORNING_OF"
    TWO_HOURS_BEFORE = "TWO_HOURS_BEFORE"


SAME_DAY_COOLDOWN = timedelta(hours=4)
DEFAULT_COOLDOWN = timedelta(hours=24)

_FOOTER = "Reply C to confirm or call us.\n\nReply HELP for help, STOP to opt out."


@dataclass
class ReminderAssignment:
    job_id: str
    associate_id: str
    company_id: str
    first_name: str
    phone_number: str
    job_title: str
    customer_name: str
    work_date: date
    start_time: str
    num_reminders: int
    last_reminder_time: Optional[datetime] = None
    confirmation_status: Optional[str] = None
    opted_out: bool = False

    @property
    def assignment_id(self) -> str:
        return f"{self.job_id}-{self.associate_id}"

    @classmethod
    def from_row(cls, assignment, associate, job) -> "ReminderAssignment":
        return cls(
            job_id=assignment.job_id,
            associate_id=assignment.associate_id,
            company_id=job.company_id,
            first_name=associate.first_name,
            phone_number=associate.phone_number,
            job_title=job.job_title,
            customer_name=job.customer_name,
            work_date=assignment.work_date,
            start_time=assignment.start_time,
            num_reminders=assignment.num_reminders,
            last_reminder_time=as_utc(assignment.last_reminder_time),
            confirmation_status=assignment.confirmation_status,
            opted_out=bool(associate.opted_out),
        )


@dataclass
class ReminderResult:
    success: bool
    job_id: str
    associate_id: str
    reminder_type: str
    phone_number: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "job_id": self.job_id,
            "associate_id": self.associate_id,
            "phone_number": self.phone_number,
            "reminder_type": self.reminder_type,
            "message_id": self.message_id,
            "error": self.error,
        }


# =============================================================================
# Message Personalization
# =============================================================================

def format_time(value: str) -> str:
    """
    24-hour clock value to 12-hour display, e.g. '19:00:00' -> '7:00 PM'.
    Unparseable input is returned unchanged.
    """
    clock = parse_clock_time(value)
    if clock is None:
        return value

    hours, minutes = clock
    period = "PM" if hours >= 12 else "AM"
    display_hours = hours - 12 if hours > 12 else (hours or 12)
    return f"{display_hours}:{minutes:02d} {period}"


def format_work_date(work_date) -> str:
    """US short date, e.g. 3/7/2025."""
    if isinstance(work_date, str):
        work_date = date.fromisoformat(work_date[:10])
    return f"{work_date.month}/{work_date.day}/{work_date.year}"


def generate_reminder_message(
    first_name: str,
    job_title: str,
    customer_name: str,
    work_date,
    start_time: str,
    tier: ReminderTier,
) -> str:
    base_info = f"{job_title} for {customer_name} on {format_work_date(work_date)} at {format_time(start_time)}"

    if tier == ReminderTier.TWO_DAYS_BEFORE:
        return (
            f"Hi {first_name}!\n\nReminder: You have {base_info} in 2 days.\n\n"
            f"Please confirm you'll be there.\n\n{_FOOTER}"
        )
    if tier == ReminderTier.DAY_BEFORE:
        return (
            f"Hi {first_name}!\n\nReminder: You have {base_info} tomorrow.\n\n"
            f"Please confirm you'll be there.\n\n{_FOOTER}"
        )
    if tier == ReminderTier.MORNING_OF:
        return (
            f"Good morning {first_name}!\n\nDon't forget your {base_info} today.\n\n"
            "Please confirm that you will be able to make it, if not please inform us ASAP!\n\n"
            f"{_FOOTER}"
        )
    if tier == ReminderTier.TWO_HOURS_BEFORE:
        return (
            f"Hi {first_name}!\n\nYour {base_info} starts in about 2 hours.\n\n"
            "Please confirm that you will be able to make it, if not please inform us ASAP!\n\n"
            f"{_FOOTER}"
        )
    return f"Hi {first_name}!\n\nReminder about your {base_info}."


# =============================================================================
# Eligibility
# =============================================================================

def ineligibility_reason(assignment: ReminderAssignment, now: datetime) -> Optional[str]:
    """Why an assignment must not be reminded right now, or None if it may be."""
    if assignment.confirmation_status in ConfirmationStatus.FINAL:
        return f"confirmation status is {assignment.confirmation_status}"
    if assignment.num_reminders <= 0:
        return "no reminders left"
    if assignment.opted_out:
        return "associate opted out"

    if assignment.last_reminder_time is not None:
        cooldown = SAME_DAY_COOLDOWN if assignment.work_date == now.date() else DEFAULT_COOLDOWN
        if now - as_utc(assignment.last_reminder_time) < cooldown:
            return f"contacted within the last {int(cooldown.total_seconds() // 3600)} hours"

    return None


def is_eligible(assignment: ReminderAssignment, now: datetime) -> bool:
    reason = ineligibility_reason(assignment, now)
    if reason:
        logger.debug(f"Skipping assignment {assignment.assignment_id}: {reason}")
        return False
    return True


# =============================================================================
# Scheduler
# =============================================================================

@dataclass
class ReminderScheduler:
    session_factory: Callable
    gate: CredentialGate
    provider: object
    send_delay_ms: int = 200
    morning_of_hours_ahead: int = 2
    clock: Callable[[], datetime] = utc_now
    sleep: Callable[[float], None] = field(default=time.sleep)

    def process_scheduled_reminders(self) -> List[ReminderResult]:
        """
        Periodic run across the two-days-before, day-before and morning-of tiers.
        """
        now = self.clock()
        due = [
            (assignment, tier)
            for assignment, tier in self.find_due_reminders(now)
            if is_eligible(assignment, now)
        ]
        logger.info(f"Found {len(due)} reminders to process")

        results = self._send_sequentially(due)
        successful = sum(1 for result in results if result.success)
        logger.info(f"Processed {len(results)} reminders. Success: {successful}, Failed: {len(results) - successful}")
        return results

    def process_trigger(self, job_id: str, work_date: date, start_time: str, tier: ReminderTier) -> List[ReminderResult]:
        """Send one tier's reminder to every eligible associate on a job slot."""
        now = self.clock()
        with self.session_factory() as db:
            rows = get_assignments_for_slot(db, job_id, work_date, start_time)

        assignments = [ReminderAssignment.from_row(*row) for row in rows]
        logger.info(f"Trigger {tier.value} for job {job_id} on {work_date} {start_time}: {len(assignments)} assignments")

        due = [(assignment, tier) for assignment in assignments if is_eligible(assignment, now)]
        return self._send_sequentially(due)

    def send_test_reminder(self, job_id: str, associate_id: str) -> Result:
        """
        Send a day-before reminder to one assignment, bypassing eligibility.

        Returns:
            Ok(ReminderResult) or Err(NOT_FOUND)
        """
        with self.session_factory() as db:
            row = get_assignment(db, job_id, associate_id)

        if row is None:
            return Err(ErrorKind.NOT_FOUND, f"No assignment for job {job_id} and associate {associate_id}")

        assignment = ReminderAssignment.from_row(*row)
        return Ok(self.send_reminder_to_associate(assignment, ReminderTier.DAY_BEFORE))

    def find_due_reminders(self, now: datetime) -> List[Tuple[ReminderAssignment, ReminderTier]]:
        """
        Candidate assignments per tier. A failing tier query is logged and
        skipped; the other tiers still run.
        """
        today = now.date()
        tier_queries = [
            (ReminderTier.DAY_BEFORE, lambda db: get_assignments_for_date(db, today + timedelta(days=1))),
            (ReminderTier.MORNING_OF, lambda db: self._morning_of(db, now)),
            (ReminderTier.TWO_DAYS_BEFORE, lambda db: get_assignments_for_date(db, today + timedelta(days=2))),
        ]

        due = []
        seen = set()
        for tier, query in tier_queries:
            try:
                with self.session_factory() as db:
                    rows = query(db)
            except SQLAlchemyError as e:
                logger.error(f"Failed to query {tier.value} reminders: {e}")
                continue

            for row in rows:
                assignment = ReminderAssignment.from_row(*row)
                if assignment.assignment_id in seen:
                    continue
                seen.add(assignment.assignment_id)
                due.append((assignment, tier))
        return due

    def _morning_of(self, db, now: datetime) -> list:
        """Today's assignments starting within the next few hours."""
        horizon = now + timedelta(hours=self.morning_of_hours_ahead)
        rows = []
        for row in get_assignments_for_date(db, now.date()):
            clock = parse_clock_time(row[0].start_time)
            if clock is None:
                continue
            starts_at = datetime(now.year, now.month, now.day, clock[0], clock[1], tzinfo=timezone.utc)
            if now <= starts_at <= horizon:
                rows.append(row)
        return rows

    def _send_sequentially(self, due: Iterable[Tuple[ReminderAssignment, ReminderTier]]) -> List[ReminderResult]:
        results = []
        for index, (assignment, tier) in enumerate(due):
            if index > 0 and self.send_delay_ms:
                self.sleep(self.send_delay_ms / 1000.0)
            try:
                result = self.send_reminder_to_associate(assignment, tier)
            except Exception as e:
                logger.exception(f"Unexpected error sending reminder to associate {assignment.associate_id}")
                result = self._failure(assignment, tier, str(e))
            results.append(result)
        return results

    def send_reminder_to_associate(self, assignment: ReminderAssignment, tier: ReminderTier) -> ReminderResult:
        """
        Personalize, send and consume one unit of budget.

        A failure to record the decrement after a successful send is logged;
        the result stays successful because the message already went out.
        """
        phone = format_phone_number(assignment.phone_number)
        if not phone.ok:
            logger.warning(f"Invalid phone number for associate {assignment.associate_id}: {phone.message}")
            return self._failure(assignment, tier, phone.message)

        credentials = self.gate.resolve_credentials(assignment.company_id)
        if not credentials.ok:
            return self._failure(assignment, tier, credentials.message, phone.value)

        body = generate_reminder_message(
            assignment.first_name,
            assignment.job_title,
            assignment.customer_name,
            assignment.work_date,
            assignment.start_time,
            tier,
        )

        sent = self.provider.send(credentials.value, phone.value, body, Channel.SMS)
        if not sent.success:
            logger.error(f"Reminder send failed for associate {assignment.associate_id}: {sent.error}")
            return self._failure(assignment, tier, sent.error or "Send failed", phone.value)

        now = self.clock()
        try:
            with self.session_factory() as db:
                if not consume_reminder(db, assignment.job_id, assignment.associate_id, now):
                    logger.warning(f"Reminder budget already exhausted for {assignment.assignment_id}")
                conversation = resolve_conversation(db, assignment.associate_id, assignment.company_id, Channel.SMS)
                create_message(
                    db,
                    conversation_id=conversation.id,
                    direction="outbound",
                    sender_type="company",
                    body=body,
                    sent_at=now,
                    status=sent.status or "queued",
                    twilio_sid=sent.message_sid,
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to record reminder for {assignment.assignment_id}: {e}")

        logger.info(f"Sent {tier.value} reminder to associate {assignment.associate_id} ({sent.message_sid})")
        record_outcome(reminders_sent_total, "sent", tier=tier.value)
        return ReminderResult(
            success=True,
            job_id=assignment.job_id,
            associate_id=assignment.associate_id,
            reminder_type=tier.value,
            phone_number=phone.value,
            message_id=sent.message_sid,
        )

    def _failure(
        self,
        assignment: ReminderAssignment,
        tier: ReminderTier,
        error: str,
        phone_number: Optional[str] = None,
    ) -> ReminderResult:
        record_outcome(reminders_sent_total, "failed", tier=tier.value)
        return ReminderResult(
            success=False,
            job_id=assignment.job_id,
            associate_id=assignment.associate_id,
            reminder_type=tier.value,
            phone_number=phone_number or assignment.phone_number,
            error=error,
        )
