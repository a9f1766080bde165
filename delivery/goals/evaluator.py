# delivery/goals/evaluator.py
"""
Dependency evaluator.

Reacts to goal state changes by computing the store updates that advance
the rest of the goal set:

- success/skipped: request (or ask pre-approval for) dependents whose
  preconditions are all met
- failure/stopped/canceled: skip every planned transitive dependent
- seeding: request root goals of a freshly planned goal set and fail
  goals whose preconditions can never resolve

compute_effects is pure; on_goal_changed re-fetches the goal set first
so concurrent evaluations never work from a cached graph.
"""

from typing import List, Optional

from .callbacks import FulfillmentCallbackRegistry
from .graph import find_unresolvable, is_directly_dependent_on, preconditions_are_met, transitive_dependents
from .models import EffectSet, FulfillmentMethod, Goal, GoalState, GoalUpdate, StoreUpdate
from .state_machine import FAILED_STATES, SUCCESS_STATES
from .store import GoalStore
from ..logging import get_logger
from ..settings import settings

logger = get_logger(__name__)

_SKIP_REASONS = {
    GoalState.FAILURE: "failed",
    GoalState.STOPPED: "was stopped",
    GoalState.CANCELED: "was canceled",
}


def should_be_planned_or_skipped(goal: Goal) -> bool:
    """Can the goal (still or again) be requested?"""
    if goal.state in (GoalState.PLANNED, GoalState.SKIPPED):
        return True
    return goal.state == GoalState.FAILURE and goal.retry_feasible


class DependencyEvaluator:
    """
    Computes effects of a goal state change on its goal set.

    Args:
        store: Goal store used to re-fetch the goal set
        callbacks: Fulfillment callbacks applied before a goal is requested
        registration: Name of the running registration
    """

    def __init__(
        self,
        store: GoalStore,
        callbacks: Optional[FulfillmentCallbackRegistry] = None,
        registration: Optional[str] = None,
    ):
        self.store = store
        self.callbacks = callbacks or FulfillmentCallbackRegistry()
        self.registration = registration or settings.registration_name

    def on_goal_changed(self, changed: Goal) -> EffectSet:
        goals = self.store.fetch_goals_for_goal_set(changed.goal_set_id)
        return self.compute_effects(changed, goals)

    def compute_effects(self, changed: Goal, goals: List[Goal]) -> EffectSet:
        if changed.state in SUCCESS_STATES:
            return self.unblock(changed, goals)
        if changed.state in FAILED_STATES:
            return self.skip(changed, goals)
        return EffectSet()

    def is_fulfillment_eligible(self, goal: Goal) -> bool:
        """Side effects fulfilled under our own registration name are never requested by us."""
        fulfillment = goal.fulfillment
        if fulfillment.method == FulfillmentMethod.SIDE_EFFECT:
            return fulfillment.name != self.registration
        return True

    def unblock(self, changed: Goal, goals: List[Goal]) -> EffectSet:
        effects = EffectSet()
        for goal in goals:
            if not is_directly_dependent_on(changed.key, goal):
                continue
            if not should_be_planned_or_skipped(goal):
                continue
            if not self.is_fulfillment_eligible(goal):
                continue
            if not preconditions_are_met(goal, goals):
                logger.debug(
                    "goal_still_blocked",
                    goal=goal.unique_name,
                    goal_set_id=goal.goal_set_id,
                    trigger=changed.unique_name,
                )
                continue

            effects.append(self.request(goal))
            logger.info(
                "goal_unblocked",
                goal=goal.unique_name,
                goal_set_id=goal.goal_set_id,
                trigger=changed.unique_name,
            )
        return effects

    def skip(self, changed: Goal, goals: List[Goal]) -> EffectSet:
        reason = _SKIP_REASONS[changed.state]
        effects = EffectSet()
        for goal in transitive_dependents(changed, goals):
            if goal.state != GoalState.PLANNED:
                continue
            effects.append(StoreUpdate(goal, GoalUpdate(
                state=GoalState.SKIPPED,
                description=f"Skipped {goal.name} because {changed.name} {reason}",
            )))
            logger.info(
                "goal_skipped",
                goal=goal.unique_name,
                goal_set_id=goal.goal_set_id,
                trigger=changed.unique_name,
            )
        return effects

    def seed(self, goals: List[Goal]) -> EffectSet:
        """Effects for a freshly planned goal set."""
        effects = self.fail_unresolvable(goals)
        failing = set(effects.targets())
        for goal in goals:
            if not goal.is_root or goal.state != GoalState.PLANNED:
                continue
            if goal.unique_name in failing or not self.is_fulfillment_eligible(goal):
                continue
            effects.append(self.request(goal))
        return effects

    def fail_unresolvable(self, goals: List[Goal]) -> EffectSet:
        effects = EffectSet()
        for unique_name, keys in find_unresolvable(goals).items():
            goal = next(g for g in goals if g.unique_name == unique_name)
            if goal.state != GoalState.PLANNED:
                continue
            effects.append(StoreUpdate(goal, GoalUpdate(
                state=GoalState.FAILURE,
                description=f"Unresolvable preconditions for {goal.name}: {', '.join(keys)}",
            )))
            logger.warning(
                "goal_preconditions_unresolvable",
                goal=goal.unique_name,
                goal_set_id=goal.goal_set_id,
                preconditions=keys,
            )
        return effects

    def request(self, goal: Goal) -> StoreUpdate:
        """
        Effect that moves a ready goal forward.

        Raises:
            FulfillmentCallbackError: A fulfillment callback failed
        """
        if goal.pre_approval_required:
            return StoreUpdate(goal, GoalUpdate(
                state=GoalState.WAITING_FOR_PRE_APPROVAL,
                description=f"Start required: {goal.name}",
            ))

        prepared = self.callbacks.apply(goal)
        return StoreUpdate(prepared, GoalUpdate(
            state=GoalState.REQUESTED,
            description=f"Ready: {goal.name}",
            data=prepared.data,
        ))
