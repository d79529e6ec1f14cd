"""
Thread reconstruction and conversation validation.

Messages are grouped by the provider's thread ID. Messages without one fall
back to their normalized subject, joining an existing group that already
holds that subject. This fallback can merge unrelated conversations that
share a subject line ("Invoice", "Question"); threads built that way are
flagged with a subject_fallback warning.
"""

import re
from collections.abc import Iterable
from datetime import timedelta

from nailit.config import Settings, settings
from nailit.features.email_ingestion.domain.errors import ThreadValidationWarning
from nailit.features.email_ingestion.domain.models import (
    ConversationThread,
    Message,
    TeamMember,
    ThreadValidationReport,
)
from nailit.features.email_ingestion.filters.membership import normalize_email
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CONTRACTOR = "contractor"
HOMEOWNER = "homeowner"
UNKNOWN = "unknown"

_REPLY_PREFIX = re.compile(r"^\s*re:\s*", re.IGNORECASE)
_HOMEOWNER_ROLES = {"homeowner", "owner", "client"}


def normalize_subject(subject: str | None) -> str:
    """Strip one leading 'Re:' (any case) and surrounding whitespace."""
    return _REPLY_PREFIX.sub("", subject or "", count=1).strip()


def normalize_role(role: str | None) -> str:
    value = (role or "").strip().lower()
    if not value:
        return UNKNOWN
    if value in _HOMEOWNER_ROLES or HOMEOWNER in value:
        return HOMEOWNER
    if CONTRACTOR in value:
        return CONTRACTOR
    return value


def build_role_directory(
    team_members: Iterable[TeamMember], owner_email: str | None = None
) -> dict[str, str]:
    """Map normalized addresses to conversation sides."""
    directory = {}
    for member in team_members:
        address = normalize_email(member.email)
        if address:
            directory[address] = normalize_role(member.role)
    owner = normalize_email(owner_email)
    if owner:
        directory[owner] = HOMEOWNER
    return directory


def _has_reply_marker(message: Message) -> bool:
    return bool(_REPLY_PREFIX.match(message.subject or "")) or bool(
        message.provider_metadata.in_reply_to
    )


def _contains_keyword(message: Message, keywords: frozenset[str]) -> bool:
    text = f"{message.subject or ''}\n{message.body_text or ''}".lower()
    return any(keyword in text for keyword in keywords)


class ThreadReconstructionEngine:
    def __init__(self, role_directory: dict[str, str], config: Settings | None = None):
        config = config or settings
        self.role_directory = {normalize_email(k): v for k, v in role_directory.items()}
        self.max_gap = timedelta(hours=config.THREAD_MAX_GAP_HOURS)
        self.min_reply_gap = timedelta(minutes=config.THREAD_MIN_REPLY_GAP_MINUTES)
        self.side_keywords = {
            CONTRACTOR: config.contractor_keywords(),
            HOMEOWNER: config.homeowner_keywords(),
        }

    def side_of(self, address: str | None) -> str:
        return self.role_directory.get(normalize_email(address), UNKNOWN)

    def group(self, messages: Iterable[Message]) -> dict[str, list[Message]]:
        """Group by thread_id, then attach threadless messages by normalized subject."""
        groups: dict[str, list[Message]] = {}
        subject_index: dict[str, str] = {}
        threadless: list[Message] = []

        for message in messages:
            if message.thread_id:
                groups.setdefault(message.thread_id, []).append(message)
                subject_index.setdefault(normalize_subject(message.subject).lower(), message.thread_id)
            else:
                threadless.append(message)

        for message in threadless:
            subject = normalize_subject(message.subject).lower()
            key = subject_index.get(subject)
            if key is None:
                key = f"subject:{subject}"
                subject_index[subject] = key
            groups.setdefault(key, []).append(message)

        return groups

    def reconstruct(self, messages: Iterable[Message]) -> list[ConversationThread]:
        threads = []
        for key, group in self.group(messages).items():
            ordered = sorted(group, key=lambda m: m.sort_time)
            thread = ConversationThread(
                thread_key=key,
                subject=normalize_subject(ordered[0].subject),
                ordered_messages=ordered,
                participants={
                    address
                    for m in ordered
                    for address in (m.sender, *m.recipients, *m.cc_recipients)
                    if address
                },
            )
            if key.startswith("subject:") or any(not m.thread_id for m in ordered):
                thread.warnings.append(
                    ThreadValidationWarning(
                        "subject_fallback",
                        "Grouped by subject; unrelated messages with the same subject may be merged",
                    )
                )
            self.validate(thread)
            threads.append(thread)

        threads.sort(key=lambda t: t.ordered_messages[0].sort_time)
        logger.debug(
            "Threads reconstructed",
            thread_count=len(threads),
            valid_threads=sum(1 for t in threads if t.is_valid),
        )
        return threads

    def validate(self, thread: ConversationThread) -> ConversationThread:
        messages = thread.ordered_messages
        sides = [self.side_of(m.sender) for m in messages]
        known_sides = {side for side in sides if side != UNKNOWN}

        # Bidirectionality
        thread.is_bidirectional = len(known_sides) >= 2
        if not thread.is_bidirectional:
            thread.validation_errors.append("Conversation is not bidirectional")
        thread.contractor_initiated = bool(sides) and sides[0] == CONTRACTOR
        thread.homeowner_responded = HOMEOWNER in sides[1:]
        if messages and not thread.contractor_initiated:
            thread.warnings.append(
                ThreadValidationWarning("not_contractor_initiated", "First message is not from a contractor")
            )

        # Threading integrity
        thread.has_proper_threading = len(messages) <= 1 or any(
            _has_reply_marker(m) for m in messages[1:]
        )
        if not thread.has_proper_threading:
            thread.validation_errors.append("Replies carry no reply marker")

        # Timing plausibility (warnings only)
        long_gaps = []
        has_reply_gap = len(messages) <= 1
        for previous, current in zip(messages, messages[1:]):
            gap = current.sort_time - previous.sort_time
            if gap > self.max_gap:
                long_gaps.append(round(gap.total_seconds() / 3600, 1))
            elif gap >= self.min_reply_gap:
                has_reply_gap = True
        for hours in long_gaps:
            thread.warnings.append(
                ThreadValidationWarning("timing_gap", f"{hours}h between consecutive messages")
            )
        thread.has_realistic_timing = not long_gaps and has_reply_gap

        # Content plausibility
        checked_sides = [side for side in known_sides if side in self.side_keywords]
        thread.has_authentic_content = bool(checked_sides) and all(
            any(
                _contains_keyword(m, self.side_keywords[side])
                for m, message_side in zip(messages, sides)
                if message_side == side
            )
            for side in checked_sides
        )
        if not thread.has_authentic_content:
            thread.validation_errors.append("Content does not match expected role patterns")

        thread.is_valid = (
            thread.is_bidirectional and thread.has_proper_threading and thread.has_authentic_content
        )
        return thread


def summarize(threads: list[ConversationThread]) -> ThreadValidationReport:
    """Aggregate validation flags across threads."""
    report = ThreadValidationReport(
        total_threads=len(threads),
        valid_threads=sum(1 for t in threads if t.is_valid),
        bidirectional_threads=sum(1 for t in threads if t.is_bidirectional),
        contractor_initiated=sum(1 for t in threads if t.contractor_initiated),
        homeowner_responses=sum(1 for t in threads if t.homeowner_responded),
        realistic_timing=sum(1 for t in threads if t.has_realistic_timing),
        proper_threading=sum(1 for t in threads if t.has_proper_threading),
        authentic_content=sum(1 for t in threads if t.has_authentic_content),
        warnings=sum(len(t.warnings) for t in threads),
    )

    if threads and report.bidirectional_threads == 0:
        report.issues.append("No bidirectional conversations found")
    if threads and report.proper_threading < report.total_threads:
        report.issues.append("Some threads lack reply markers")
    if threads and report.authentic_content < report.total_threads:
        report.issues.append("Some threads lack role-typical content")
    return report
