# delivery/goals/callbacks.py
"""
Fulfillment callbacks.

A fulfillment callback prepares a goal right before it is requested,
e.g. resolving a container spec and storing it in the goal data.
Callbacks run in registration order and each sees the previous result.
"""

from dataclasses import dataclass
from typing import Callable, List

from .models import Goal
from ..errors import FulfillmentCallbackError
from ..logging import get_logger

logger = get_logger(__name__)

CallbackFn = Callable[[Goal], Goal]


@dataclass(frozen=True)
class FulfillmentCallback:
    """Callback bound to the fulfillment name it prepares."""
    fulfillment_name: str
    callback: CallbackFn


class FulfillmentCallbackRegistry:
    """Ordered collection of fulfillment callbacks."""

    def __init__(self):
        self._callbacks: List[FulfillmentCallback] = []

    def register(self, fulfillment_name: str, callback: CallbackFn) -> None:
        self._callbacks.append(FulfillmentCallback(fulfillment_name, callback))

    def callbacks_for(self, goal: Goal) -> List[FulfillmentCallback]:
        return [c for c in self._callbacks if c.fulfillment_name == goal.fulfillment.name]

    def apply(self, goal: Goal) -> Goal:
        """
        Run every matching callback over the goal.

        Raises:
            FulfillmentCallbackError: A callback failed; the goal stays unchanged
        """
        prepared = goal
        for entry in self.callbacks_for(goal):
            try:
                prepared = entry.callback(prepared)
            except Exception as e:
                logger.error(
                    "fulfillment_callback_failed",
                    goal=goal.unique_name,
                    goal_set_id=goal.goal_set_id,
                    fulfillment=entry.fulfillment_name,
                    error=str(e),
                )
                raise FulfillmentCallbackError(
                    f"Fulfillment callback for '{goal.unique_name}' failed: {e}"
                ) from e
        return prepared
