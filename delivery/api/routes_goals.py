# delivery/api/routes_goals.py
"""
Goal set API routes.

Operator endpoints for inspecting goal sets and intervening in them:
setting a goal state, approving goals and canceling whole goal sets.
All changes go through the goal store so they are versioned, signed and
picked up by the goal event service like any other update.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from ..engine import GoalEventService
from ..errors import ConcurrentUpdateError, InvalidTransitionError
from ..goals.models import Goal, GoalState, GoalUpdate, Provenance
from ..goals.state_machine import is_terminal, is_valid_transition, now_ms
from ..logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/goal-sets", tags=["goals"])


class SetGoalStateRequest(BaseModel):
    """Request to move a goal into another state."""
    state: GoalState
    description: Optional[str] = None
    user_id: Optional[str] = None


class ApproveGoalRequest(BaseModel):
    """Request to approve (or pre-approve) a goal."""
    user_id: str
    channel_id: Optional[str] = None
    pre_approval: bool = False


class GoalSetResponse(BaseModel):
    """Current goals of a goal set."""
    goal_set_id: str
    goals: List[Dict[str, Any]]
    complete: bool


class CancelGoalSetResponse(BaseModel):
    """Result of canceling a goal set."""
    goal_set_id: str
    canceled: List[str]


def get_service(request: Request) -> GoalEventService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Goal event service not available")
    return service


def _find_goal(service: GoalEventService, goal_set_id: str, unique_name: str) -> Goal:
    goal = service.store.find_goal(goal_set_id, unique_name)
    if goal is None:
        raise HTTPException(status_code=404, detail=f"Goal '{unique_name}' not found in goal set '{goal_set_id}'")
    return goal


def _update(service: GoalEventService, goal: Goal, update: GoalUpdate, name: str) -> Goal:
    if not is_valid_transition(goal.state, update.state):
        raise HTTPException(
            status_code=409,
            detail=f"Invalid transition: {goal.state.value} -> {update.state.value}",
        )
    try:
        return service.store.update(goal, update, name=name)
    except (ConcurrentUpdateError, InvalidTransitionError) as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("")
async def list_goal_sets(
    limit: int = 50,
    service: GoalEventService = Depends(get_service),
) -> Dict[str, Any]:
    """Most recently planned goal sets."""
    return {"goal_sets": service.store.list_goal_sets(limit)}


@router.get("/{goal_set_id}", response_model=GoalSetResponse)
async def get_goal_set(
    goal_set_id: str,
    service: GoalEventService = Depends(get_service),
) -> GoalSetResponse:
    """Latest record of every goal in a goal set."""
    goals = service.store.fetch_goals_for_goal_set(goal_set_id)
    if not goals:
        raise HTTPException(status_code=404, detail="Goal set not found")
    return GoalSetResponse(
        goal_set_id=goal_set_id,
        goals=[g.to_dict() for g in goals],
        complete=all(is_terminal(g) for g in goals),
    )


@router.get("/{goal_set_id}/goals/{unique_name}/history")
async def get_goal_history(
    goal_set_id: str,
    unique_name: str,
    service: GoalEventService = Depends(get_service),
) -> Dict[str, Any]:
    """Every record version of a goal, oldest first."""
    goal = _find_goal(service, goal_set_id, unique_name)
    history = service.store.fetch_history(goal_set_id, goal.environment, unique_name)
    return {"goal_set_id": goal_set_id, "unique_name": unique_name, "records": [g.to_dict() for g in history]}


@router.post("/{goal_set_id}/goals/{unique_name}/state")
def set_goal_state(
    goal_set_id: str,
    unique_name: str,
    request: SetGoalStateRequest,
    service: GoalEventService = Depends(get_service),
) -> Dict[str, Any]:
    """
    Set the state of a goal (operator intervention).

    The transition must be valid from the goal's current state.
    """
    goal = _find_goal(service, goal_set_id, unique_name)
    description = request.description or f"{request.state.value.replace('_', ' ').capitalize()}: {goal.name}"
    record = _update(service, goal, GoalUpdate(state=request.state, description=description), "set_goal_state")
    logger.info(
        "goal_state_set",
        goal=unique_name,
        goal_set_id=goal_set_id,
        state=request.state.value,
        user=request.user_id,
    )
    return record.to_dict()


@router.post("/{goal_set_id}/goals/{unique_name}/approval")
def approve_goal(
    goal_set_id: str,
    unique_name: str,
    request: ApproveGoalRequest,
    service: GoalEventService = Depends(get_service),
) -> Dict[str, Any]:
    """Approve a goal waiting for approval, or pre-approve one waiting to start."""
    goal = _find_goal(service, goal_set_id, unique_name)
    stamp = Provenance(
        registration=service.settings.registration_name,
        name="approve_goal",
        version=service.settings.registration_version,
        ts=now_ms(),
        user_id=request.user_id,
        channel_id=request.channel_id,
    )

    if request.pre_approval:
        if goal.state != GoalState.WAITING_FOR_PRE_APPROVAL:
            raise HTTPException(status_code=409, detail=f"Goal '{unique_name}' is not waiting for pre-approval")
        update = GoalUpdate(state=GoalState.PRE_APPROVED, pre_approval=stamp)
    else:
        if goal.state != GoalState.WAITING_FOR_APPROVAL:
            raise HTTPException(status_code=409, detail=f"Goal '{unique_name}' is not waiting for approval")
        update = GoalUpdate(state=GoalState.APPROVED, approval=stamp)

    record = _update(service, goal, update, "approve_goal")
    logger.info(
        "goal_approved",
        goal=unique_name,
        goal_set_id=goal_set_id,
        pre_approval=request.pre_approval,
        user=request.user_id,
    )
    return record.to_dict()


@router.post("/{goal_set_id}/cancel", response_model=CancelGoalSetResponse)
def cancel_goal_set(
    goal_set_id: str,
    service: GoalEventService = Depends(get_service),
) -> CancelGoalSetResponse:
    """Cancel every goal of a goal set that is not terminal yet."""
    goals = service.store.fetch_goals_for_goal_set(goal_set_id)
    if not goals:
        raise HTTPException(status_code=404, detail="Goal set not found")

    canceled = []
    for goal in goals:
        # Earlier cancellations may have moved this goal already
        current = service.store.find_goal(goal_set_id, goal.unique_name) or goal
        if is_terminal(current):
            continue
        try:
            service.store.update(
                current,
                GoalUpdate(state=GoalState.CANCELED, description=f"Canceled {current.name}"),
                name="cancel_goal_set",
            )
            canceled.append(current.unique_name)
        except (ConcurrentUpdateError, InvalidTransitionError) as e:
            logger.warning("goal_cancel_failed", goal=current.unique_name, goal_set_id=goal_set_id, error=str(e))

    logger.info("goal_set_canceled", goal_set_id=goal_set_id, canceled=canceled)
    return CancelGoalSetResponse(goal_set_id=goal_set_id, canceled=canceled)
