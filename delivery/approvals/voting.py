# delivery/approvals/voting.py
"""
Approval vote aggregation.

When a goal is pre-approved or approved by a user, every registered voter
is asked (concurrently, with the same goal snapshot) whether the request
should be honored. A decision manager folds the votes into one outcome:

GRANTED + pre_approved -> requested
GRANTED + approved     -> success
DENIED  + pre_approved -> waiting_for_pre_approval (stamp cleared)
DENIED  + approved     -> waiting_for_approval (stamp cleared)
ABSTAIN                -> no change
"""

from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, List, Optional

from ..goals.callbacks import FulfillmentCallbackRegistry
from ..goals.models import EffectSet, Goal, GoalState, GoalUpdate, StoreUpdate
from ..logging import get_logger

logger = get_logger(__name__)


class Vote(Enum):
    """Outcome of a single voter or of the whole vote."""
    GRANTED = "granted"
    DENIED = "denied"
    ABSTAIN = "abstain"


Voter = Callable[[Goal], Vote]
DecisionManager = Callable[[List[Vote]], Vote]

_DESCRIPTION_PREFIXES = ("Start required:", "Approval required:")


def unanimous_decision(votes: List[Vote]) -> Vote:
    """Any denial denies; abstentions never block."""
    if any(v == Vote.DENIED for v in votes):
        return Vote.DENIED
    return Vote.GRANTED


def clean_description(description: Optional[str]) -> str:
    """Strip the approval prompt prefix from a goal description."""
    description = description or ""
    for prefix in _DESCRIPTION_PREFIXES:
        if description.startswith(prefix):
            return description[len(prefix):].strip()
    return description


class ApprovalVoteAggregator:
    """
    Collects votes on approval requests and decides the outcome.

    Args:
        voters: Voters consulted for every request
        decision_manager: Folds the votes into one decision
        callbacks: Fulfillment callbacks run before a pre-approved goal is requested
        max_workers: Thread pool size for concurrent voting
    """

    def __init__(
        self,
        voters: Optional[List[Voter]] = None,
        decision_manager: DecisionManager = unanimous_decision,
        callbacks: Optional[FulfillmentCallbackRegistry] = None,
        max_workers: int = 4,
    ):
        self.voters: List[Voter] = list(voters or [])
        self.decision_manager = decision_manager
        self.callbacks = callbacks or FulfillmentCallbackRegistry()
        self.max_workers = max_workers

    def register_voter(self, voter: Voter) -> None:
        self.voters.append(voter)

    def collect_votes(self, goal: Goal) -> List[Vote]:
        if not self.voters:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(self.voters))) as executor:
            return list(executor.map(lambda voter: voter(goal), self.voters))

    def decide(self, votes: List[Vote]) -> Vote:
        return self.decision_manager(votes)

    def on_goal_approved(self, goal: Goal) -> EffectSet:
        """Effects for a goal that was just pre-approved or approved."""
        if goal.state not in (GoalState.PRE_APPROVED, GoalState.APPROVED):
            return EffectSet()

        votes = self.collect_votes(goal)
        decision = self.decide(votes)
        logger.info(
            "approval_vote_decided",
            goal=goal.unique_name,
            goal_set_id=goal.goal_set_id,
            state=goal.state.value,
            decision=decision.value,
            votes=[v.value for v in votes],
        )

        if decision == Vote.GRANTED:
            return EffectSet([self._grant(goal)])
        if decision == Vote.DENIED:
            return EffectSet([self._deny(goal)])
        return EffectSet()

    def _grant(self, goal: Goal) -> StoreUpdate:
        description = clean_description(goal.description)
        if goal.state == GoalState.PRE_APPROVED:
            prepared = self.callbacks.apply(goal)
            return StoreUpdate(prepared, GoalUpdate(
                state=GoalState.REQUESTED,
                description=description,
                data=prepared.data,
            ))
        return StoreUpdate(goal, GoalUpdate(state=GoalState.SUCCESS, description=description))

    def _deny(self, goal: Goal) -> StoreUpdate:
        if goal.state == GoalState.PRE_APPROVED:
            user = goal.pre_approval.user_id if goal.pre_approval else None
            return StoreUpdate(goal, GoalUpdate(
                state=GoalState.WAITING_FOR_PRE_APPROVAL,
                description=f"{goal.description} | start by @{user} denied",
                clear_pre_approval=True,
            ))
        user = goal.approval.user_id if goal.approval else None
        return StoreUpdate(goal, GoalUpdate(
            state=GoalState.WAITING_FOR_APPROVAL,
            description=f"{goal.description} | approval by @{user} denied",
            clear_approval=True,
        ))
