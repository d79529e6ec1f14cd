"""
Pre-fetch filters: team membership and deduplication.
"""

from .dedup import DedupGuard
from .membership import TeamMembershipFilter, normalize_email

__all__ = ["DedupGuard", "TeamMembershipFilter", "normalize_email"]
