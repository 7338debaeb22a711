"""
Tests for the incoming-message webhook, conversation resolution and the
keyword confirmation parser.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app import conversations as conversations_module
from app.confirmations import (
    CONFIRMATION,
    HELP_REQUEST,
    OPT_IN,
    OPT_OUT,
    UNKNOWN,
    classify_message,
    confirmation_status_for,
)
from app.conversations import promote_if_unambiguous, resolve_conversation
from app.inbound import InboundIngestor, resolve_associate
from app.main import EMPTY_TWIML
from app.models import Associate, Channel, ConfirmationStatus, Conversation, JobAssignment, Message


NOW = datetime(2025, 3, 10, 7, 0, tzinfo=timezone.utc)


def inbound(sender="+15551230000", to="+15550001111", body="Running 5 min late", sid="SMin1"):
    return {"From": sender, "To": to, "Body": body, "MessageSid": sid}


def stored_messages(session_factory):
    with session_factory() as db:
        return list(db.scalars(select(Message).where(Message.direction == "inbound")))


def conversations_for(session_factory, associate_id):
    with session_factory() as db:
        return list(
            db.scalars(select(Conversation).where(Conversation.associate_id == associate_id).order_by(Conversation.id))
        )


class BrokenParser:
    def handle(self, associate_id, company_id, body, **kwargs):
        raise RuntimeError("parser exploded")


class TestIncomingWebhook:
    def test_sms_message_stored(self, client, session_factory, seed):
        associate = seed.associate()

        response = client.post("/webhooks/twilio/incoming", data=inbound())

        assert response.status_code == 200
        assert response.text == EMPTY_TWIML
        assert response.headers["content-type"].startswith("text/xml")

        messages = stored_messages(session_factory)
        assert len(messages) == 1
        assert messages[0].body == "Running 5 min late"
        assert messages[0].sender_type == "associate"
        assert messages[0].status == "received"
        assert messages[0].twilio_sid == "SMin1"

        conversation, = conversations_for(session_factory, associate.id)
        assert conversation.channel == Channel.SMS
        assert messages[0].conversation_id == conversation.id

    def test_whatsapp_message_uses_whatsapp_conversation(self, client, session_factory, seed):
        associate = seed.associate()

        client.post(
            "/webhooks/twilio/incoming",
            data=inbound(sender="whatsapp:+15551230000", to="whatsapp:+15550002222"),
        )

        conversation, = conversations_for(session_factory, associate.id)
        assert conversation.channel == Channel.WHATSAPP

    def test_unknown_sender_not_stored(self, client, session_factory):
        response = client.post("/webhooks/twilio/incoming", data=inbound(sender="+15559990000"))

        assert response.status_code == 200
        assert response.text == EMPTY_TWIML
        assert stored_messages(session_factory) == []

    def test_associate_without_company_not_stored(self, client, session_factory, seed):
        seed.associate(company_id=None)

        response = client.post("/webhooks/twilio/incoming", data=inbound())

        assert response.status_code == 200
        assert stored_messages(session_factory) == []

    def test_storage_failure_still_acknowledged(self, client, deps, monkeypatch):
        def explode(message):
            raise RuntimeError("database is gone")

        monkeypatch.setattr(deps.ingestor, "_ingest", explode)

        response = client.post("/webhooks/twilio/incoming", data=inbound())

        assert response.status_code == 200
        assert response.text == EMPTY_TWIML

    def test_parser_failure_does_not_block_storage(self, client, deps, session_factory, seed, clock):
        seed.associate()
        deps.ingestor = InboundIngestor(session_factory, parser=BrokenParser(), clock=clock)

        client.post("/webhooks/twilio/incoming", data=inbound(body="C"))

        assert len(stored_messages(session_factory)) == 1


class TestResolveAssociate:
    def test_normalized_lookup(self, session_factory, seed):
        associate = seed.associate(phone_number="+15551230000")

        with session_factory() as db:
            assert resolve_associate(db, "(555) 123-0000").id == associate.id

    def test_raw_number_fallback(self, session_factory, seed):
        associate = seed.associate(phone_number="555-123-0000")

        with session_factory() as db:
            assert resolve_associate(db, "555-123-0000").id == associate.id

    def test_prefers_company_bound_record(self, session_factory, seed):
        seed.associate(company_id=None)
        bound = seed.associate(company_id="co-1")
        seed.associate(company_id=None)

        with session_factory() as db:
            assert resolve_associate(db, "+15551230000").id == bound.id

    def test_unknown(self, session_factory):
        with session_factory() as db:
            assert resolve_associate(db, "+15559990000") is None


class TestResolveConversation:
    def test_exact_match_reused(self, session_factory, seed):
        associate = seed.associate()
        existing = seed.conversation(associate, channel=Channel.SMS)

        with session_factory() as db:
            conversation = resolve_conversation(db, associate.id, "co-1", Channel.SMS)

        assert conversation.id == existing.id

    def test_single_legacy_row_promoted(self, session_factory, seed):
        associate = seed.associate()
        legacy = seed.conversation(associate, channel=Channel.UNSET)

        with session_factory() as db:
            conversation = resolve_conversation(db, associate.id, "co-1", Channel.WHATSAPP)
            assert conversation.id == legacy.id
            assert conversation.channel == Channel.WHATSAPP

        assert len(conversations_for(session_factory, associate.id)) == 1

    def test_ambiguous_legacy_rows_left_alone(self, session_factory, seed):
        associate = seed.associate()
        first = seed.conversation(associate, channel=Channel.UNSET)
        second = seed.conversation(associate, channel=Channel.UNSET)

        with session_factory() as db:
            conversation = resolve_conversation(db, associate.id, "co-1", Channel.SMS)
            new_id = conversation.id

        assert new_id not in (first.id, second.id)
        channels = {c.id: c.channel for c in conversations_for(session_factory, associate.id)}
        assert channels == {first.id: None, second.id: None, new_id: Channel.SMS}

    def test_channels_are_separate_threads(self, session_factory, seed):
        associate = seed.associate()

        with session_factory() as db:
            sms_id = resolve_conversation(db, associate.id, "co-1", Channel.SMS).id
            whatsapp_id = resolve_conversation(db, associate.id, "co-1", Channel.WHATSAPP).id
            again_id = resolve_conversation(db, associate.id, "co-1", Channel.SMS).id

        assert sms_id != whatsapp_id
        assert again_id == sms_id

    def test_inbound_promotes_legacy_conversation(self, client, session_factory, seed):
        associate = seed.associate()
        legacy = seed.conversation(associate, channel=Channel.UNSET)

        client.post("/webhooks/twilio/incoming", data=inbound())

        conversation, = conversations_for(session_factory, associate.id)
        assert conversation.id == legacy.id
        assert conversation.channel == Channel.SMS
        assert stored_messages(session_factory)[0].conversation_id == legacy.id

    def test_existing_channel_row_wins_over_late_promotion(self, session_factory, seed, monkeypatch):
        associate = seed.associate()
        legacy = seed.conversation(associate, channel=Channel.UNSET)
        sms = seed.conversation(associate, channel=Channel.SMS)
        real_find = conversations_module.find_conversations
        lookups = []

        def find_missing_sms_once(db, associate_id, company_id, channel):
            lookups.append(channel)
            if channel == Channel.SMS and lookups.count(Channel.SMS) == 1:
                return []
            return real_find(db, associate_id, company_id, channel)

        monkeypatch.setattr(conversations_module, "find_conversations", find_missing_sms_once)

        with session_factory() as db:
            conversation_id = resolve_conversation(db, associate.id, "co-1", Channel.SMS).id

        assert conversation_id == sms.id
        channels = {c.id: c.channel for c in conversations_for(session_factory, associate.id)}
        assert channels == {legacy.id: None, sms.id: Channel.SMS}

    def test_promotion_refused_when_channel_row_exists(self, session_factory, seed):
        associate = seed.associate()
        legacy = seed.conversation(associate, channel=Channel.UNSET)
        whatsapp = seed.conversation(associate, channel=Channel.WHATSAPP)

        with session_factory() as db:
            candidate = db.get(Conversation, legacy.id)
            assert promote_if_unambiguous(db, [candidate], Channel.WHATSAPP) is None

        channels = {c.id: c.channel for c in conversations_for(session_factory, associate.id)}
        assert channels == {legacy.id: None, whatsapp.id: Channel.WHATSAPP}


class TestClassifyMessage:
    @pytest.mark.parametrize("body", ["C", " c ", "Yes", "confirm", "OK", "Yes I will be there", "okay thanks",
                                      "I'll be there!"])
    def test_confirmations(self, body):
        assert classify_message(body) == CONFIRMATION

    @pytest.mark.parametrize("body", ["STOP", "unsubscribe"])
    def test_opt_out(self, body):
        assert classify_message(body) == OPT_OUT

    @pytest.mark.parametrize("body", ["START", "unstop"])
    def test_opt_in(self, body):
        assert classify_message(body) == OPT_IN

    def test_help(self):
        assert classify_message("HELP") == HELP_REQUEST

    @pytest.mark.parametrize("body", ["", "cancel", "yesterday was fine", "can you call me", "book"])
    def test_unknown(self, body):
        assert classify_message(body) == UNKNOWN


class TestConfirmationStatus:
    @pytest.mark.parametrize("days, start_time, expected", [
        (0, "11:00:00", ConfirmationStatus.CONFIRMED),
        (0, "13:00", ConfirmationStatus.CONFIRMED),
        (0, "06:00:00", ConfirmationStatus.LIKELY_CONFIRMED),
        (1, "05:00:00", ConfirmationStatus.LIKELY_CONFIRMED),
        (1, "09:00:00", ConfirmationStatus.SOFT_CONFIRMED),
        (3, "09:00:00", ConfirmationStatus.SOFT_CONFIRMED),
        (0, "tbd", ConfirmationStatus.LIKELY_CONFIRMED),
    ])
    def test_bands(self, days, start_time, expected):
        work_date = NOW.date() + timedelta(days=days)

        assert confirmation_status_for(work_date, start_time, NOW) == expected


class TestConfirmationParser:
    @pytest.fixture(autouse=True)
    def fixed_clock(self, clock):
        clock.now = NOW
        return clock

    def test_status_follows_time_until_shift(self, client, deps, session_factory, seed):
        seed.credentials()
        associate = seed.associate()
        today_job, tomorrow_job, later_job = seed.job(), seed.job(), seed.job()
        seed.assignment(today_job, associate, work_date=NOW.date(), start_time="11:00:00")
        seed.assignment(tomorrow_job, associate, work_date=NOW.date() + timedelta(days=1), start_time="05:00:00")
        seed.assignment(later_job, associate, work_date=NOW.date() + timedelta(days=3))

        client.post("/webhooks/twilio/incoming", data=inbound(body="C"))

        with session_factory() as db:
            statuses = {
                job.id: db.get(JobAssignment, (job.id, associate.id)).confirmation_status
                for job in (today_job, tomorrow_job, later_job)
            }
            assert db.get(JobAssignment, (later_job.id, associate.id)).last_confirmation_time is not None
        assert statuses == {
            today_job.id: ConfirmationStatus.CONFIRMED,
            tomorrow_job.id: ConfirmationStatus.LIKELY_CONFIRMED,
            later_job.id: ConfirmationStatus.SOFT_CONFIRMED,
        }
        assert len(stored_messages(session_factory)) == 1

        reply, = deps.provider.sent
        assert reply["to"] == "+15551230000"
        assert reply["channel"] == Channel.SMS
        assert reply["body"] == "Thanks John! Your 3 assignments are confirmed. We'll see you there!"

    def test_early_confirmation_keeps_reminders_going(self, client, deps, session_factory, seed):
        seed.credentials()
        associate = seed.associate()
        job = seed.job()
        seed.assignment(job, associate, work_date=NOW.date() + timedelta(days=2), num_reminders=3)

        client.post("/webhooks/twilio/incoming", data=inbound(body="yes"))
        results = deps.scheduler.process_scheduled_reminders()

        with session_factory() as db:
            assignment = db.get(JobAssignment, (job.id, associate.id))
            assert assignment.confirmation_status == ConfirmationStatus.SOFT_CONFIRMED
            assert assignment.num_reminders == 2
        assert [result.success for result in results] == [True]

    def test_assignments_beyond_a_week_untouched(self, client, deps, session_factory, seed):
        seed.credentials()
        associate = seed.associate()
        job = seed.job()
        seed.assignment(job, associate, work_date=NOW.date() + timedelta(days=8))

        client.post("/webhooks/twilio/incoming", data=inbound(body="C"))

        with session_factory() as db:
            assert db.get(JobAssignment, (job.id, associate.id)).confirmation_status is None
        assert "don't have any upcoming assignments" in deps.provider.sent[0]["body"]

    def test_past_assignments_untouched(self, client, session_factory, seed):
        associate = seed.associate()
        job = seed.job()
        seed.assignment(job, associate, work_date=NOW.date() - timedelta(days=1))

        client.post("/webhooks/twilio/incoming", data=inbound(body="yes"))

        with session_factory() as db:
            assert db.get(JobAssignment, (job.id, associate.id)).confirmation_status is None

    def test_final_status_kept(self, client, session_factory, seed):
        associate = seed.associate()
        job = seed.job()
        seed.assignment(job, associate, work_date=NOW.date() + timedelta(days=3),
                        confirmation_status=ConfirmationStatus.DECLINED)

        client.post("/webhooks/twilio/incoming", data=inbound(body="C"))

        with session_factory() as db:
            assert db.get(JobAssignment, (job.id, associate.id)).confirmation_status == ConfirmationStatus.DECLINED

    def test_stop_opts_out(self, client, deps, session_factory, seed):
        seed.credentials()
        associate = seed.associate()

        client.post("/webhooks/twilio/incoming", data=inbound(body="STOP"))

        with session_factory() as db:
            assert db.get(Associate, associate.id).opted_out is True
        assert "unsubscribed" in deps.provider.sent[0]["body"]

    def test_start_opts_back_in(self, client, deps, session_factory, seed):
        seed.credentials()
        associate = seed.associate(opted_out=True)

        client.post("/webhooks/twilio/incoming", data=inbound(body="START"))

        with session_factory() as db:
            assert db.get(Associate, associate.id).opted_out is False
        assert "re-subscribed" in deps.provider.sent[0]["body"]

    def test_help_reply(self, client, deps, seed):
        seed.credentials()
        seed.associate()

        client.post("/webhooks/twilio/incoming", data=inbound(body="help"))

        reply, = deps.provider.sent
        assert reply["body"].startswith("Hi John!")
        assert "STOP" in reply["body"]

    def test_whatsapp_message_answered_on_whatsapp(self, client, deps, seed):
        seed.credentials()
        seed.associate()

        client.post(
            "/webhooks/twilio/incoming",
            data=inbound(sender="whatsapp:+15551230000", to="whatsapp:+15550002222", body="HELP"),
        )

        reply, = deps.provider.sent
        assert reply["to"] == "+15551230000"
        assert reply["channel"] == Channel.WHATSAPP

    def test_unrecognized_message_not_answered(self, client, deps, session_factory, seed):
        seed.credentials()
        seed.associate()

        client.post("/webhooks/twilio/incoming", data=inbound(body="Running 5 min late"))

        assert deps.provider.sent == []
        assert len(stored_messages(session_factory)) == 1

    def test_failed_reply_does_not_undo_confirmation(self, client, deps, session_factory, seed):
        seed.credentials()
        associate = seed.associate()
        job = seed.job()
        seed.assignment(job, associate, work_date=NOW.date() + timedelta(days=1))
        deps.provider.fail_with = "Twilio returned HTTP 503"

        response = client.post("/webhooks/twilio/incoming", data=inbound(body="C"))

        assert response.status_code == 200
        with session_factory() as db:
            assert db.get(JobAssignment, (job.id, associate.id)).confirmation_status is not None
        assert len(stored_messages(session_factory)) == 1

    def test_no_credentials_no_reply(self, client, deps, session_factory, seed):
        associate = seed.associate()

        client.post("/webhooks/twilio/incoming", data=inbound(body="STOP"))

        assert deps.provider.sent == []
        with session_factory() as db:
            assert db.get(Associate, associate.id).opted_out is True
