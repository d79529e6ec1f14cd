"""
Team membership filter.

Only mail exchanged with a project's team members is ingested. The check runs
on header metadata, before any message body is downloaded.
"""

import re
from collections.abc import Iterable

from nailit.features.email_ingestion.domain.models import MembershipDecision
from nailit.models.domain.gmail_domain import normalize_address

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(value: str | None) -> str:
    """'Jane Doe <Jane@Example.com> ' -> 'jane@example.com'."""
    return normalize_address(value)


def validate_team_member_email(email: str | None) -> tuple[bool, str | None]:
    """Validate the format of an address before it joins a whitelist."""
    if not email or not email.strip():
        return False, "Email is required"
    if not EMAIL_PATTERN.match(email.strip()):
        return False, "Invalid email format"
    return True, None


class TeamMembershipFilter:
    """
    Predicate over a message's sender (and optionally recipients) against a
    project whitelist.

    Recipient matching lets mail the homeowner sends *to* a team member
    through; it is off unless explicitly enabled.
    """

    def __init__(self, whitelist: Iterable[str], match_recipients: bool = False):
        self.whitelist = frozenset(
            address for address in (normalize_email(entry) for entry in whitelist) if address
        )
        self.match_recipients = match_recipients

    def __len__(self) -> int:
        return len(self.whitelist)

    def is_member(self, address: str | None) -> bool:
        normalized = normalize_email(address)
        return bool(normalized) and normalized in self.whitelist

    def evaluate(
        self,
        sender: str | None,
        recipients: Iterable[str] = (),
        cc_recipients: Iterable[str] = (),
    ) -> MembershipDecision:
        if not self.whitelist:
            return MembershipDecision(False, "Project has no team members")

        normalized_sender = normalize_email(sender)
        if not normalized_sender:
            return MembershipDecision(False, "Message has no sender address")

        if normalized_sender in self.whitelist:
            return MembershipDecision(True, "Sender is a team member", normalized_sender)

        if self.match_recipients:
            for address in [*recipients, *cc_recipients]:
                normalized = normalize_email(address)
                if normalized in self.whitelist:
                    return MembershipDecision(True, "Recipient is a team member", normalized)

        return MembershipDecision(False, "Sender is not a team member")
