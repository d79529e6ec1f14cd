"""
Tests for conversation thread reconstruction and validation.
"""

from datetime import UTC, datetime, timedelta

import pytest
from conftest import CONTRACTOR, HOMEOWNER, STRANGER

from nailit.features.email_ingestion.domain.models import (
    GmailProviderMetadata,
    IngestionStatus,
    Message,
    TeamMember,
)
from nailit.features.email_ingestion.services.thread_reconstruction import (
    ThreadReconstructionEngine,
    build_role_directory,
    normalize_role,
    normalize_subject,
    summarize,
)

START = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def message(
    message_id,
    sender,
    subject,
    sent_at,
    body="",
    thread_id="thread-1",
    in_reply_to=None,
):
    return Message(
        provider_message_id=message_id,
        thread_id=thread_id,
        sender=sender,
        recipients=[HOMEOWNER if sender == CONTRACTOR else CONTRACTOR],
        subject=subject,
        sent_at=sent_at,
        body_text=body,
        ingestion_status=IngestionStatus.COMPLETED,
        provider_metadata=GmailProviderMetadata(in_reply_to=in_reply_to),
    )


@pytest.fixture
def engine(team_members, test_settings):
    return ThreadReconstructionEngine(build_role_directory(team_members), test_settings)


def kitchen_quote(reply_after=timedelta(hours=2), thread_id="thread-1"):
    return [
        message(
            "m1",
            CONTRACTOR,
            "Kitchen Quote",
            START,
            "Here is the cost estimate for the kitchen.",
            thread_id=thread_id,
        ),
        message(
            "m2",
            HOMEOWNER,
            "Re: Kitchen Quote",
            START + reply_after,
            "Thanks! Quick question about the tile.",
            thread_id=thread_id,
        ),
    ]


@pytest.mark.parametrize(
    "subject,expected",
    [
        ("Re: Kitchen Quote", "Kitchen Quote"),
        ("RE:  Kitchen Quote ", "Kitchen Quote"),
        ("Re: Re: Kitchen Quote", "Re: Kitchen Quote"),
        ("Kitchen Quote", "Kitchen Quote"),
        (None, ""),
    ],
)
def test_normalize_subject(subject, expected):
    assert normalize_subject(subject) == expected


@pytest.mark.parametrize(
    "role,expected",
    [
        ("Homeowner", "homeowner"),
        ("owner", "homeowner"),
        ("Client", "homeowner"),
        ("General Contractor", "contractor"),
        ("Designer", "designer"),
        ("", "unknown"),
        (None, "unknown"),
    ],
)
def test_normalize_role(role, expected):
    assert normalize_role(role) == expected


def test_role_directory_marks_project_owner_as_homeowner():
    directory = build_role_directory(
        [TeamMember(name="Dana", email="Dana@Design.com", role="designer")],
        owner_email="Alice@Home.com",
    )

    assert directory == {"dana@design.com": "designer", "alice@home.com": "homeowner"}


def test_kitchen_quote_exchange_is_valid(engine):
    threads = engine.reconstruct(kitchen_quote())

    assert len(threads) == 1
    thread = threads[0]
    assert thread.thread_key == "thread-1"
    assert thread.subject == "Kitchen Quote"
    assert [m.provider_message_id for m in thread.ordered_messages] == ["m1", "m2"]
    assert thread.participants == {CONTRACTOR, HOMEOWNER}
    assert thread.is_bidirectional is True
    assert thread.has_proper_threading is True
    assert thread.has_realistic_timing is True
    assert thread.has_authentic_content is True
    assert thread.contractor_initiated is True
    assert thread.homeowner_responded is True
    assert thread.is_valid is True
    assert thread.validation_errors == []
    assert thread.warnings == []


def test_messages_are_ordered_by_send_time(engine):
    messages = list(reversed(kitchen_quote()))

    thread = engine.reconstruct(messages)[0]

    assert [m.provider_message_id for m in thread.ordered_messages] == ["m1", "m2"]


def test_long_gap_warns_but_keeps_thread(engine):
    threads = engine.reconstruct(kitchen_quote(reply_after=timedelta(days=10)))

    assert len(threads) == 1
    thread = threads[0]
    assert thread.has_realistic_timing is False
    assert thread.is_valid is True
    assert [w.code for w in thread.warnings] == ["timing_gap"]
    assert thread.warnings[0].message == "240.0h between consecutive messages"


def test_instant_reply_is_not_realistic_timing(engine):
    thread = engine.reconstruct(kitchen_quote(reply_after=timedelta(minutes=1)))[0]

    assert thread.has_realistic_timing is False
    assert thread.is_valid is True


def test_one_sided_thread_is_invalid(engine):
    messages = [
        message("m1", CONTRACTOR, "Schedule update", START, "Schedule update for next week."),
        message("m2", CONTRACTOR, "Re: Schedule update", START + timedelta(hours=3), "Material delivery moved."),
    ]

    thread = engine.reconstruct(messages)[0]

    assert thread.is_bidirectional is False
    assert thread.is_valid is False
    assert "Conversation is not bidirectional" in thread.validation_errors


def test_reply_without_marker_breaks_threading(engine):
    messages = kitchen_quote()
    messages[1].subject = "Kitchen Quote"

    thread = engine.reconstruct(messages)[0]

    assert thread.has_proper_threading is False
    assert thread.is_valid is False
    assert "Replies carry no reply marker" in thread.validation_errors


def test_in_reply_to_header_counts_as_reply_marker(engine):
    messages = kitchen_quote()
    messages[1].subject = "Kitchen Quote"
    messages[1].provider_metadata = GmailProviderMetadata(in_reply_to="<m1@mail.gmail.com>")

    thread = engine.reconstruct(messages)[0]

    assert thread.has_proper_threading is True


def test_content_without_role_keywords_is_not_authentic(engine):
    messages = [
        message("m1", CONTRACTOR, "Hello", START, "Hi there."),
        message("m2", HOMEOWNER, "Re: Hello", START + timedelta(hours=2), "Hi back."),
    ]

    thread = engine.reconstruct(messages)[0]

    assert thread.has_authentic_content is False
    assert thread.is_valid is False


def test_homeowner_initiated_thread_is_flagged(engine):
    messages = [
        message("m1", HOMEOWNER, "Question about permit", START, "Can you check the permit?"),
        message("m2", CONTRACTOR, "Re: Question about permit", START + timedelta(hours=1), "Permit update attached."),
    ]

    thread = engine.reconstruct(messages)[0]

    assert thread.contractor_initiated is False
    assert thread.homeowner_responded is False
    assert [w.code for w in thread.warnings] == ["not_contractor_initiated"]
    assert thread.is_valid is True


def test_threadless_messages_group_by_subject(engine):
    messages = [
        message("m1", CONTRACTOR, "Permit", START, "Permit update.", thread_id=None),
        message("m2", HOMEOWNER, "RE: permit", START + timedelta(hours=1), "Thanks!", thread_id=None),
    ]

    threads = engine.reconstruct(messages)

    assert len(threads) == 1
    assert threads[0].thread_key == "subject:permit"
    assert "subject_fallback" in [w.code for w in threads[0].warnings]


def test_threadless_kitchen_quote_is_one_valid_thread(engine):
    threads = engine.reconstruct(kitchen_quote(thread_id=None))

    assert len(threads) == 1
    thread = threads[0]
    assert thread.thread_key == "subject:kitchen quote"
    assert [m.provider_message_id for m in thread.ordered_messages] == ["m1", "m2"]
    assert thread.has_realistic_timing is True
    assert thread.is_valid is True
    assert [w.code for w in thread.warnings] == ["subject_fallback"]


def test_threadless_long_gap_stays_grouped_with_timing_warning(engine):
    threads = engine.reconstruct(kitchen_quote(reply_after=timedelta(days=10), thread_id=None))

    assert len(threads) == 1
    thread = threads[0]
    assert thread.has_realistic_timing is False
    assert thread.is_valid is True
    assert [w.code for w in thread.warnings] == ["subject_fallback", "timing_gap"]


def test_threadless_subject_only_messages_fail_content_check(engine):
    messages = kitchen_quote(thread_id=None)
    for m in messages:
        m.body_text = ""

    thread = engine.reconstruct(messages)[0]

    assert thread.is_bidirectional is True
    assert thread.has_proper_threading is True
    assert thread.has_authentic_content is False
    assert thread.validation_errors == ["Content does not match expected role patterns"]


def test_threadless_reply_joins_existing_thread(engine):
    messages = kitchen_quote()
    messages[1].thread_id = None

    threads = engine.reconstruct(messages)

    assert len(threads) == 1
    assert threads[0].thread_key == "thread-1"
    assert "subject_fallback" in [w.code for w in threads[0].warnings]


def test_distinct_thread_ids_stay_separate(engine):
    first = kitchen_quote()
    second = [
        message("m3", CONTRACTOR, "Bathroom invoice", START + timedelta(days=1), "Invoice attached.", thread_id="thread-2"),
    ]

    threads = engine.reconstruct(first + second)

    assert [t.thread_key for t in threads] == ["thread-1", "thread-2"]


def test_unknown_senders_do_not_count_as_a_side(engine):
    messages = [
        message("m1", CONTRACTOR, "Quote", START, "Quote attached."),
        message("m2", STRANGER, "Re: Quote", START + timedelta(hours=1), "Thanks!"),
    ]

    thread = engine.reconstruct(messages)[0]

    assert engine.side_of(STRANGER) == "unknown"
    assert thread.is_bidirectional is False


def test_summarize_counts_and_issues(engine):
    valid = kitchen_quote()
    one_sided = [
        message("m3", CONTRACTOR, "Hello", START + timedelta(days=1), "Hi.", thread_id="thread-2"),
    ]

    report = summarize(engine.reconstruct(valid + one_sided))

    assert report.total_threads == 2
    assert report.valid_threads == 1
    assert report.bidirectional_threads == 1
    assert report.contractor_initiated == 2
    assert report.homeowner_responses == 1
    assert report.proper_threading == 2
    assert report.authentic_content == 1
    assert report.issues == ["Some threads lack role-typical content"]
    assert report.to_dict()["total_threads"] == 2


def test_summarize_empty():
    report = summarize([])

    assert report.total_threads == 0
    assert report.issues == []
