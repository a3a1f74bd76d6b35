"""
Matching Rules Module
"""

from .membership_rules import (
    MembershipMatchingRules, membership_rules, MatchSuggestion, MatchingResult, FEE_BANDS
)

__all__ = ["MembershipMatchingRules", "membership_rules", "MatchSuggestion", "MatchingResult", "FEE_BANDS"]
