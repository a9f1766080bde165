# delivery/fulfillment/context.py
"""
Execution context handed to goal executors.

GoalInvocation is a frozen value: executors can read the goal, the
project directory and the progress log, but cannot register handlers or
replace the goal being executed.
"""

from dataclasses import dataclass
from typing import Optional

from .progress import ProgressLog
from ..goals.models import Goal, GoalState
from ..settings import Settings


@dataclass(frozen=True)
class ExecuteGoalResult:
    """
    Result of executing a goal.

    code 0 is success. state overrides the terminal state the dispatcher
    would otherwise derive from code.
    """
    code: int = 0
    message: Optional[str] = None
    description: Optional[str] = None
    phase: Optional[str] = None
    state: Optional[GoalState] = None

    @property
    def success(self) -> bool:
        return self.code == 0


@dataclass(frozen=True)
class GoalInvocation:
    """Read-only view of one goal execution."""
    goal: Goal
    project_dir: str
    progress_log: ProgressLog
    settings: Settings
    correlation_id: Optional[str] = None

    @property
    def goal_set_id(self) -> str:
        return self.goal.goal_set_id

    @property
    def unique_name(self) -> str:
        return self.goal.unique_name
