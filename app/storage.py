import logging
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy import create_engine, text, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from app.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        import app.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            # Schema check: the events table is created with everything else
            db.execute(text("SELECT COUNT(*) FROM message_events"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Rate Limit / Credential Repository Functions
# =============================================================================

def increment_rate_window(db: Session, company_id: str, window: str) -> int:
    """
    Atomically add one to the (company, window) counter and return the new value.

    A single INSERT ... ON CONFLICT DO UPDATE ... RETURNING statement, so
    concurrent callers in the same bucket each observe a distinct count.
    """
    from app.models import RateLimitWindow

    dialect = postgresql if db.get_bind().dialect.name == "postgresql" else sqlite
    stmt = dialect.insert(RateLimitWindow).values(company_id=company_id, window=window, count=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[RateLimitWindow.company_id, RateLimitWindow.window],
        set_={"count": RateLimitWindow.count + 1},
    ).returning(RateLimitWindow.count)

    count = db.execute(stmt).scalar_one()
    db.commit()
    logger.debug(f"Rate window {company_id}/{window} now at {count}")
    return count


def get_credential_bindings(db: Session, company_id: str) -> list:
    """Return a company's credential bindings, most recently created first."""
    from app.models import CredentialBinding

    return list(
        db.scalars(
            select(CredentialBinding)
            .where(CredentialBinding.company_id == company_id)
            .order_by(CredentialBinding.created_at.desc(), CredentialBinding.id.desc())
        )
    )


# =============================================================================
# Associate / Conversation Repository Functions
# =============================================================================

def find_associates_by_phone(db: Session, phone_number: str, company_id: Optional[str] = None) -> list:
    from app.models import Associate

    query = select(Associate).where(Associate.phone_number == phone_number)
    if company_id is not None:
        query = query.where(Associate.company_id == company_id)
    return list(db.scalars(query.order_by(Associate.id)))


def get_conversation(db: Session, conversation_id: str):
    from app.models import Conversation

    return db.get(Conversation, conversation_id)


def find_conversations(db: Session, associate_id: str, company_id: str, channel: Optional[str]) -> list:
    """
    Conversations for (associate, company, channel).

    channel=None selects legacy rows whose channel was never set.
    """
    from app.models import Conversation

    query = select(Conversation).where(
        Conversation.associate_id == associate_id,
        Conversation.company_id == company_id,
    )
    if channel is None:
        query = query.where(Conversation.channel.is_(None))
    else:
        query = query.where(Conversation.channel == channel)
    return list(db.scalars(query.order_by(Conversation.created_at, Conversation.id)))


def create_conversation(db: Session, associate_id: str, company_id: str, channel: str):
    """
    Insert a conversation, or return the row a concurrent writer created first.
    """
    from app.models import Conversation

    conversation = Conversation(associate_id=associate_id, company_id=company_id, channel=channel)
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Conversation for {associate_id}/{company_id}/{channel} created concurrently, reusing it")
        existing = find_conversations(db, associate_id, company_id, channel)
        if not existing:
            raise
        return existing[0]
    db.refresh(conversation)
    logger.info(f"Created conversation {conversation.id} ({channel}) for associate {associate_id}")
    return conversation


def set_conversation_channel(db: Session, conversation_id: str, channel: str) -> bool:
    """Assign a channel to a legacy conversation. Only rows with NULL channel are touched."""
    from app.models import Conversation

    result = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id, Conversation.channel.is_(None))
        .values(channel=channel)
    )
    db.commit()
    return result.rowcount == 1


def has_inbound_since(db: Session, conversation_id: str, since: datetime) -> bool:
    from app.models import Message

    found = db.scalar(
        select(Message.id)
        .where(
            Message.conversation_id == conversation_id,
            Message.direction == "inbound",
            Message.sent_at >= since,
        )
        .limit(1)
    )
    return found is not None


# =============================================================================
# Message / Event Repository Functions
# =============================================================================

def create_message(
    db: Session,
    conversation_id: str,
    direction: str,
    sender_type: str,
    body: Optional[str],
    sent_at: datetime,
    status: Optional[str] = None,
    twilio_sid: Optional[str] = None,
):
    from app.models import Message

    message = Message(
        conversation_id=conversation_id,
        direction=direction,
        sender_type=sender_type,
        body=body,
        sent_at=sent_at,
        status=status,
        twilio_sid=twilio_sid,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(f"Message stored: id={message.id}, conversation={conversation_id}, direction={direction}")
    return message


def get_message_by_sid(db: Session, message_sid: str):
    from app.models import Message

    return db.scalars(select(Message).where(Message.twilio_sid == message_sid).limit(1)).first()


def update_message_status(db: Session, message_id: str, status: str, delivered_at: Optional[datetime] = None) -> None:
    from app.models import Message

    values = {"status": status}
    if delivered_at is not None:
        values["delivered_at"] = delivered_at
    db.execute(update(Message).where(Message.id == message_id).values(**values))
    db.commit()


def create_message_event(db: Session, **fields) -> Tuple[Optional[object], bool]:
    """
    Create a delivery event (idempotent).

    Returns:
        Tuple of (event, is_duplicate)
        - (event, False): first time this (message_sid, message_status) was seen
        - (None, True): the pair already exists
    """
    from app.models import MessageEvent

    event = MessageEvent(**fields)
    try:
        db.add(event)
        db.commit()
    except IntegrityError:
        # (message_sid, message_status) already exists - expected for idempotency
        db.rollback()
        logger.info(f"Duplicate event detected: {fields.get('message_sid')} + {fields.get('message_status')}")
        return None, True

    db.refresh(event)
    return event, False


def link_event_message(db: Session, event_id: int, message_id: str) -> None:
    from app.models import MessageEvent

    db.execute(update(MessageEvent).where(MessageEvent.id == event_id).values(message_id=message_id))
    db.commit()


def link_event_fallback(db: Session, event_id: int, fallback_message_id: str) -> None:
    from app.models import MessageEvent

    db.execute(
        update(MessageEvent)
        .where(MessageEvent.id == event_id)
        .values(fallback_sms_message_id=fallback_message_id)
    )
    db.commit()


def has_fallback(db: Session, message_sid: str) -> bool:
    from app.models import MessageEvent

    found = db.scalar(
        select(MessageEvent.id)
        .where(
            MessageEvent.message_sid == message_sid,
            MessageEvent.fallback_sms_message_id.is_not(None),
        )
        .limit(1)
    )
    return found is not None


def first_policy_failure_event_id(db: Session, message_sid: str, statuses, error_code: str) -> Optional[int]:
    """Lowest event id among the policy-violation failures recorded for a message."""
    from app.models import MessageEvent

    return db.scalar(
        select(MessageEvent.id)
        .where(
            MessageEvent.message_sid == message_sid,
            MessageEvent.message_status.in_(statuses),
            MessageEvent.error_code == error_code,
        )
        .order_by(MessageEvent.id.asc())
        .limit(1)
    )



# =============================================================================
# Reminder Assignment Repository Functions
# =============================================================================

def _assignment_query():
    from app.models import Associate, Job, JobAssignment

    return (
        select(JobAssignment, Associate, Job)
        .join(Associate, Associate.id == JobAssignment.associate_id)
        .join(Job, Job.id == JobAssignment.job_id)
    )


def get_assignments_for_date(db: Session, work_date: date) -> List[tuple]:
    """Assignments on a work date that still have reminder budget, by start time."""
    from app.models import JobAssignment

    query = (
        _assignment_query()
        .where(JobAssignment.work_date == work_date, JobAssignment.num_reminders > 0)
        .order_by(JobAssignment.start_time.asc())
    )
    return [tuple(row) for row in db.execute(query).all()]


def get_assignments_for_slot(db: Session, job_id: str, work_date: date, start_time: str) -> List[tuple]:
    from app.models import JobAssignment

    query = _assignment_query().where(
        JobAssignment.job_id == job_id,
        JobAssignment.work_date == work_date,
        JobAssignment.start_time == start_time,
    )
    return [tuple(row) for row in db.execute(query).all()]


def get_assignment(db: Session, job_id: str, associate_id: str) -> Optional[tuple]:
    from app.models import JobAssignment

    row = db.execute(
        _assignment_query().where(
            JobAssignment.job_id == job_id,
            JobAssignment.associate_id == associate_id,
        )
    ).first()
    return tuple(row) if row else None


def consume_reminder(db: Session, job_id: str, associate_id: str, now: datetime) -> bool:
    """
    Decrement the reminder budget by one and stamp last_reminder_time.

    The WHERE clause keeps the budget from ever going below zero.
    Returns False when the budget was already exhausted.
    """
    from app.models import JobAssignment

    result = db.execute(
        update(JobAssignment)
        .where(
            JobAssignment.job_id == job_id,
            JobAssignment.associate_id == associate_id,
            JobAssignment.num_reminders > 0,
        )
        .values(num_reminders=JobAssignment.num_reminders - 1, last_reminder_time=now)
    )
    db.commit()
    return result.rowcount == 1


def get_upcoming_unconfirmed_assignments(db: Session, associate_id: str, from_date: date, to_date: date) -> list:
    from app.models import ConfirmationStatus, JobAssignment

    query = select(JobAssignment).where(
        JobAssignment.associate_id == associate_id,
        JobAssignment.work_date >= from_date,
        JobAssignment.work_date <= to_date,
    )
    return [
        assignment
        for assignment in db.scalars(query)
        if assignment.confirmation_status not in ConfirmationStatus.FINAL
    ]


def confirm_assignments(
    db: Session, associate_id: str, from_date: date, to_date: date, now: datetime, status_for: Callable
) -> int:
    """
    Confirm an associate's unconfirmed assignments between two dates.

    `status_for(assignment)` picks the status stored on each one. Returns the count.
    """
    assignments = get_upcoming_unconfirmed_assignments(db, associate_id, from_date, to_date)
    for assignment in assignments:
        assignment.confirmation_status = status_for(assignment)
        assignment.last_confirmation_time = now
    db.commit()
    return len(assignments)


def set_associate_opted_out(db: Session, associate_id: str, opted_out: bool = True) -> None:
    from app.models import Associate

    db.execute(update(Associate).where(Associate.id == associate_id).values(opted_out=opted_out))
    db.commit()
