# Approvals module - vote aggregation on goal approval requests
from .voting import ApprovalVoteAggregator, Vote, clean_description, unanimous_decision

__all__ = [
    "ApprovalVoteAggregator",
    "Vote",
    "clean_description",
    "unanimous_decision",
]
