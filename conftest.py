"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any app module is imported,
then the settings cache is cleared so they are picked up.
"""

import os
import tempfile
from datetime import date, datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

_TEST_DB = os.path.join(tempfile.gettempdir(), "messaging_orchestrator_test.db")

os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DB}")
os.environ.setdefault("JWT_VERIFICATION_KEY", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("CREDENTIALS_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("SEND_QUEUE_URL", "https://sqs.test/send")
os.environ.setdefault("REMINDER_QUEUE_URL", "https://sqs.test/reminders")
os.environ.setdefault("DLQ_URL", "https://sqs.test/dlq")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402

from app.deps import Deps, get_deps  # noqa: E402
from app.errors import InfrastructureError  # noqa: E402
from app.main import app  # noqa: E402
from app.models import (  # noqa: E402
    Associate,
    Conversation,
    CredentialBinding,
    Job,
    JobAssignment,
    Message,
)
from app.provider import SendResult  # noqa: E402
from app.storage import Base, SessionLocal, engine  # noqa: E402


# =============================================================================
# Fakes
# =============================================================================

class FakeQueue:
    """In-memory stand-in for SqsQueue."""

    def __init__(self, queue_url="https://sqs.test/fake"):
        self.queue_url = queue_url
        self.published = []
        self.fail = False

    def publish(self, body, attributes=None):
        if self.fail:
            raise InfrastructureError("Failed to publish to queue: connection reset")
        self.published.append((body, attributes or {}))
        return f"sqs-{len(self.published)}"


class FakeDeadLetterSink:
    def __init__(self):
        self.records = []

    def record(self, payload, error, source="message_router"):
        self.records.append({"payload": payload, "error": error, "source": source})
        return True


class FakeProvider:
    """Records sends; succeeds unless `fail_with` is set."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send(self, credentials, to, body, channel):
        self.sent.append({"company_id": credentials.company_id, "to": to, "body": body, "channel": channel})
        if self.fail_with:
            return SendResult(success=False, error=self.fail_with)
        return SendResult(success=True, message_sid=f"SM{len(self.sent):04d}", status="queued")


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# =============================================================================
# Seed Data
# =============================================================================

class Seeder:
    """Inserts rows for tests and returns their ids."""

    def __init__(self, session_factory, encryption_key):
        self.session_factory = session_factory
        self.cipher = Fernet(encryption_key.encode())

    def _add(self, row):
        with self.session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            db.expunge(row)
        return row

    def credentials(self, company_id="co-1", sms_number="+15550001111",
                    whatsapp_number="+15550002222", created_at=None, subaccount_sid="AC_TEST"):
        return self._add(
            CredentialBinding(
                company_id=company_id,
                subaccount_sid=subaccount_sid,
                auth_token_encrypted=self.cipher.encrypt(b"auth-token").decode(),
                sms_number=sms_number,
                whatsapp_number=whatsapp_number,
                created_at=created_at or datetime.now(timezone.utc),
            )
        )

    def associate(self, phone_number="+15551230000", company_id="co-1", first_name="John", opted_out=False):
        return self._add(
            Associate(
                company_id=company_id,
                first_name=first_name,
                last_name="Doe",
                phone_number=phone_number,
                opted_out=opted_out,
            )
        )

    def job(self, company_id="co-1", job_title="Warehouse Shift", customer_name="Acme"):
        return self._add(Job(company_id=company_id, job_title=job_title, customer_name=customer_name))

    def assignment(self, job, associate, work_date: date, start_time="09:00:00", num_reminders=1,
                   last_reminder_time=None, confirmation_status=None):
        return self._add(
            JobAssignment(
                job_id=job.id,
                associate_id=associate.id,
                work_date=work_date,
                start_time=start_time,
                num_reminders=num_reminders,
                last_reminder_time=last_reminder_time,
                confirmation_status=confirmation_status,
            )
        )

    def conversation(self, associate, company_id="co-1", channel="whatsapp", created_at=None):
        return self._add(
            Conversation(
                associate_id=associate.id,
                company_id=company_id,
                channel=channel,
                created_at=created_at or datetime.now(timezone.utc),
            )
        )

    def message(self, conversation, direction="inbound", sent_at=None, body="hello",
                twilio_sid=None, status=None):
        return self._add(
            Message(
                conversation_id=conversation.id,
                direction=direction,
                sender_type="associate" if direction == "inbound" else "company",
                body=body,
                sent_at=sent_at or datetime.now(timezone.utc),
                twilio_sid=twilio_sid,
                status=status,
            )
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def session_factory():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def deps(session_factory, clock, sleeps) -> Deps:
    container = Deps(get_settings(), session_factory=session_factory, clock=clock, sleep=sleeps.append)
    container.send_queue = FakeQueue("https://sqs.test/send")
    container.reminder_queue = FakeQueue("https://sqs.test/reminders")
    container.dead_letters = FakeDeadLetterSink()
    container.provider = FakeProvider()
    return container


@pytest.fixture
def client(deps):
    """Test client wired to the fake dependencies."""
    app.dependency_overrides[get_deps] = lambda: deps
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory, get_settings().CREDENTIALS_ENCRYPTION_KEY)


@pytest.fixture
def make_token():
    def _make(claims=None, key=None):
        payload = {"company_id": "co-1", "sub": "user-1"} if claims is None else claims
        return jwt.encode(payload, key or get_settings().JWT_VERIFICATION_KEY, algorithm="HS256")
    return _make


@pytest.fixture
def auth_headers(make_token):
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def cron_headers():
    return {"Authorization": f"Bearer {get_settings().CRON_SECRET}"}
