# delivery/fulfillment/cancel.py
"""
Cancellation of isolated goal workers.

An isolated worker executes exactly one goal. When that goal is canceled
the worker process exits immediately with code 0 so the orchestrator
(e.g. Kubernetes) does not reschedule it.
"""

import os
import sys
from typing import Optional

from ..goals.models import Goal, GoalState
from ..logging import get_logger
from ..settings import Settings, settings as default_settings

logger = get_logger(__name__)


class Terminator:
    """Ends the current process."""

    def terminate(self, code: int = 0) -> None:
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(code)


class CancelGoalOnCanceled:
    """Exits the worker when its own goal is canceled."""

    def __init__(self, settings: Optional[Settings] = None, terminator: Optional[Terminator] = None):
        self.settings = settings or default_settings
        self.terminator = terminator or Terminator()

    def is_own_goal(self, goal: Goal) -> bool:
        return (
            self.settings.goal_set_id == goal.goal_set_id
            and self.settings.goal_unique_name == goal.unique_name
        )

    def handle(self, goal: Goal) -> bool:
        """
        Returns:
            True if termination was triggered
        """
        if goal.state != GoalState.CANCELED or not self.is_own_goal(goal):
            return False

        logger.info("goal_canceled_exiting", goal=goal.unique_name, goal_set_id=goal.goal_set_id)
        self.terminator.terminate(0)
        return True
