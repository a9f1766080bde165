# delivery/goals/state_machine.py
"""
Goal state machine.

States:
PLANNED -> REQUESTED | WAITING_FOR_PRE_APPROVAL | SKIPPED
WAITING_FOR_PRE_APPROVAL -> PRE_APPROVED -> REQUESTED
REQUESTED -> IN_PROCESS -> SUCCESS | FAILURE | WAITING_FOR_APPROVAL
WAITING_FOR_APPROVAL -> APPROVED -> SUCCESS
SKIPPED | FAILURE (retry feasible) -> REQUESTED

Any non-terminal goal may be CANCELED or STOPPED. Records are versioned:
applying an update never mutates a goal, it produces the next record.
"""

import time
from dataclasses import replace
from typing import Optional, Set

from .models import Goal, GoalState, GoalUpdate, Provenance
from ..errors import ConcurrentUpdateError, InvalidTransitionError


TERMINAL_STATES: Set[GoalState] = {
    GoalState.SUCCESS,
    GoalState.FAILURE,
    GoalState.SKIPPED,
    GoalState.CANCELED,
    GoalState.STOPPED,
}

# Preconditions in these states count as met
SUCCESS_STATES: Set[GoalState] = {GoalState.SUCCESS, GoalState.SKIPPED}

# Preconditions in these states skip their planned dependents
FAILED_STATES: Set[GoalState] = {GoalState.FAILURE, GoalState.STOPPED, GoalState.CANCELED}

# Records in these states are never written over
FINAL_STATES: Set[GoalState] = {GoalState.CANCELED, GoalState.STOPPED}

_INTERRUPT = {GoalState.CANCELED, GoalState.STOPPED, GoalState.FAILURE}

# Valid state transitions (operator interventions are checked against this)
TRANSITIONS: dict[GoalState, Set[GoalState]] = {
    GoalState.PLANNED: {
        GoalState.REQUESTED, GoalState.WAITING_FOR_PRE_APPROVAL, GoalState.SKIPPED,
    } | _INTERRUPT,
    GoalState.WAITING_FOR_PRE_APPROVAL: {GoalState.PRE_APPROVED} | _INTERRUPT,
    GoalState.PRE_APPROVED: {GoalState.REQUESTED, GoalState.WAITING_FOR_PRE_APPROVAL} | _INTERRUPT,
    GoalState.REQUESTED: {GoalState.IN_PROCESS} | _INTERRUPT,
    GoalState.IN_PROCESS: {
        GoalState.IN_PROCESS, GoalState.SUCCESS, GoalState.WAITING_FOR_APPROVAL,
    } | _INTERRUPT,
    GoalState.WAITING_FOR_APPROVAL: {GoalState.APPROVED} | _INTERRUPT,
    GoalState.APPROVED: {GoalState.SUCCESS, GoalState.WAITING_FOR_APPROVAL} | _INTERRUPT,
    GoalState.SKIPPED: {GoalState.REQUESTED, GoalState.WAITING_FOR_PRE_APPROVAL} | _INTERRUPT,
    GoalState.FAILURE: {GoalState.REQUESTED, GoalState.WAITING_FOR_PRE_APPROVAL},
    GoalState.SUCCESS: {GoalState.REQUESTED},  # Restart
    GoalState.CANCELED: set(),  # Terminal
    GoalState.STOPPED: set(),  # Terminal
}


def get_valid_transitions(current_state: GoalState) -> Set[GoalState]:
    """Get valid transitions from current state."""
    return TRANSITIONS.get(current_state, set())


def is_valid_transition(current_state: GoalState, to_state: GoalState) -> bool:
    return to_state in get_valid_transitions(current_state)


def is_terminal(goal: Goal) -> bool:
    return goal.state in TERMINAL_STATES


def now_ms() -> int:
    return int(time.time() * 1000)


def check_single_writer(current: Goal, snapshot: Goal, update: GoalUpdate) -> None:
    """
    Enforce the single writer rule for IN_PROCESS.

    Canceled and stopped records are final: no writer may append to them.
    Claiming a goal (moving a non in_process snapshot to IN_PROCESS) is only
    allowed from REQUESTED, and only for a writer holding the latest record
    version. The loser of a concurrent dispatch race gets ConcurrentUpdateError
    or InvalidTransitionError.
    """
    if current.state in FINAL_STATES:
        raise InvalidTransitionError(current.state.value, update.state.value)
    if update.state != GoalState.IN_PROCESS or snapshot.state == GoalState.IN_PROCESS:
        return
    if current.state != GoalState.REQUESTED:
        raise InvalidTransitionError(current.state.value, update.state.value)
    if snapshot.version != current.version:
        raise ConcurrentUpdateError(current.unique_name, snapshot.version, current.version)


def apply_update(
    goal: Goal,
    update: GoalUpdate,
    provenance: Provenance,
    version: Optional[int] = None,
) -> Goal:
    """
    Build the next record version of a goal.

    Args:
        goal: Record the update is based on
        update: Delta to apply
        provenance: Audit entry appended to the record
        version: Explicit record version (defaults to goal.version + 1)

    Returns:
        New unsigned Goal record
    """
    approval = None if update.clear_approval else goal.approval
    if update.approval is not None:
        approval = update.approval

    pre_approval = None if update.clear_pre_approval else goal.pre_approval
    if update.pre_approval is not None:
        pre_approval = update.pre_approval

    # Phase belongs to the state it was reported in
    phase = update.phase
    if phase is None and update.state == goal.state:
        phase = goal.phase

    return replace(
        goal,
        state=update.state,
        description=update.description if update.description is not None else goal.description,
        data=update.data if update.data is not None else goal.data,
        url=update.url if update.url is not None else goal.url,
        phase=phase,
        approval=approval,
        pre_approval=pre_approval,
        provenance=goal.provenance + (provenance,),
        signature=None,
        ts=max(now_ms(), goal.ts + 1),
        version=version if version is not None else goal.version + 1,
    )
