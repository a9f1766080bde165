# delivery/goals/graph.py
"""
Precondition graph helpers.

Goals reference their preconditions by GoalKey. Graphs come from
external records and may be malformed, so every walk keeps a visited set
and terminates on cycles and dangling keys.
"""

from collections import deque
from typing import Dict, Iterable, List, Optional, Set

from .models import Goal, GoalKey, GoalState
from .state_machine import FAILED_STATES, SUCCESS_STATES


def goal_keys_are_equal(a: GoalKey, b: GoalKey) -> bool:
    return a.environment == b.environment and a.unique_name == b.unique_name


def index_goals(goals: Iterable[Goal]) -> Dict[GoalKey, Goal]:
    return {goal.key: goal for goal in goals}


def find_goal(key: GoalKey, goals: Iterable[Goal]) -> Optional[Goal]:
    for goal in goals:
        if goal_keys_are_equal(goal.key, key):
            return goal
    return None


def is_directly_dependent_on(precondition: GoalKey, goal: Goal) -> bool:
    """Does `goal` list `precondition` among its own preconditions?"""
    return any(goal_keys_are_equal(precondition, p) for p in goal.pre_conditions)


def transitive_dependents(root: Goal, goals: List[Goal]) -> List[Goal]:
    """
    Every goal that depends on `root` directly or through other goals.

    Breadth-first; `root` itself is excluded even when it sits on a cycle.
    """
    visited: Set[GoalKey] = {root.key}
    queue = deque([root.key])
    dependents: List[Goal] = []

    while queue:
        current = queue.popleft()
        for goal in goals:
            if goal.key in visited:
                continue
            if is_directly_dependent_on(current, goal):
                visited.add(goal.key)
                dependents.append(goal)
                queue.append(goal.key)

    return dependents


def transitive_preconditions(goal: Goal, goals: List[Goal]) -> List[Goal]:
    """Every goal `goal` depends on, directly or indirectly. Missing keys are ignored."""
    by_key = index_goals(goals)
    visited: Set[GoalKey] = {goal.key}
    stack = list(goal.pre_conditions)
    found: List[Goal] = []

    while stack:
        key = stack.pop()
        if key in visited:
            continue
        visited.add(key)
        precondition = by_key.get(key)
        if precondition is None:
            continue
        found.append(precondition)
        stack.extend(precondition.pre_conditions)

    return found


def has_failed_upstream(goal: Goal, goals: List[Goal]) -> bool:
    return any(g.state in FAILED_STATES for g in transitive_preconditions(goal, goals))


def preconditions_are_met(goal: Goal, goals: List[Goal]) -> bool:
    """
    True when every precondition is success or skipped.

    A skipped precondition only counts when nothing upstream of it failed,
    otherwise failure-induced skips would unblock their own dependents.
    """
    by_key = index_goals(goals)
    for key in goal.pre_conditions:
        precondition = by_key.get(key)
        if precondition is None or precondition.state not in SUCCESS_STATES:
            return False
        if precondition.state == GoalState.SKIPPED and has_failed_upstream(precondition, goals):
            return False
    return True


def missing_preconditions(goal: Goal, goals: List[Goal]) -> List[GoalKey]:
    by_key = index_goals(goals)
    return [key for key in goal.pre_conditions if key not in by_key]


def goals_on_cycles(goals: List[Goal]) -> Set[GoalKey]:
    """Keys of goals that can reach themselves through precondition edges."""
    by_key = index_goals(goals)
    cyclic: Set[GoalKey] = set()

    for goal in goals:
        visited: Set[GoalKey] = set()
        stack = list(goal.pre_conditions)
        while stack:
            key = stack.pop()
            if key == goal.key:
                cyclic.add(goal.key)
                break
            if key in visited or key not in by_key:
                continue
            visited.add(key)
            stack.extend(by_key[key].pre_conditions)

    return cyclic


def find_unresolvable(goals: List[Goal]) -> Dict[str, List[str]]:
    """
    Goals whose preconditions can never be satisfied.

    Returns:
        Mapping of unique name to the offending precondition keys
    """
    cyclic = goals_on_cycles(goals)
    unresolvable: Dict[str, List[str]] = {}

    for goal in goals:
        problems = [str(key) for key in missing_preconditions(goal, goals)]
        if goal.key in cyclic:
            problems.extend(str(key) for key in goal.pre_conditions if key in cyclic)
        if problems:
            unresolvable[goal.unique_name] = problems

    return unresolvable
