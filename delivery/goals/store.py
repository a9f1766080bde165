# delivery/goals/store.py
"""
Goal record store.

The store is the only place goal records change. Every update appends a
new record version with provenance, passes it through the registered
interceptors (signing) and then notifies subscribers of the change.

Subclasses implement record persistence (_insert/_latest/_latest_for_set/
_history); InMemoryGoalStore keeps everything in process memory.
"""

import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from .models import Goal, GoalUpdate, Provenance
from .state_machine import apply_update, check_single_writer, now_ms
from ..errors import GoalNotFoundError
from ..logging import get_logger

logger = get_logger(__name__)

GoalListener = Callable[[Goal], None]
RecordInterceptor = Callable[[Goal], Goal]


class GoalStore:
    """
    Base goal store.

    Args:
        registration: Name written into provenance records
        registration_version: Version written into provenance records
    """

    def __init__(self, registration: str = "goal-delivery", registration_version: str = "0.1.0"):
        self.registration = registration
        self.registration_version = registration_version
        self._interceptors: List[RecordInterceptor] = []
        self._listeners: List[GoalListener] = []
        self._write_lock = threading.RLock()

    # --- extension points -------------------------------------------------

    def add_interceptor(self, interceptor: RecordInterceptor) -> None:
        """Register a function applied to every record right before it is written."""
        self._interceptors.append(interceptor)

    def subscribe(self, listener: GoalListener) -> Callable[[], None]:
        """
        Subscribe to the change feed.

        Returns:
            Function that removes the subscription
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- reads ------------------------------------------------------------

    def fetch_goals_for_goal_set(self, goal_set_id: str) -> List[Goal]:
        """Latest record of every goal in a goal set, in creation order."""
        return self._latest_for_set(goal_set_id)

    def fetch_goal(self, goal_set_id: str, environment: str, unique_name: str) -> Optional[Goal]:
        """Latest record of a single goal, or None."""
        return self._latest(goal_set_id, environment, unique_name)

    def fetch_history(self, goal_set_id: str, environment: str, unique_name: str) -> List[Goal]:
        """All record versions of a goal, oldest first."""
        return self._history(goal_set_id, environment, unique_name)

    def find_goal(self, goal_set_id: str, unique_name: str) -> Optional[Goal]:
        """Latest record of a goal looked up by unique name only."""
        for goal in self.fetch_goals_for_goal_set(goal_set_id):
            if goal.unique_name == unique_name:
                return goal
        return None

    def list_goal_sets(self, limit: int = 50) -> List[str]:
        """Most recently created goal set ids."""
        raise NotImplementedError

    # --- writes -----------------------------------------------------------

    def create_goals(self, goals: List[Goal], name: str = "create_goals") -> List[Goal]:
        """Store the first record version of each goal and notify subscribers."""
        created = []
        for goal in goals:
            record = replace(
                goal,
                version=1,
                ts=goal.ts or now_ms(),
                provenance=goal.provenance + (self.provenance(name),),
                signature=None,
            )
            record = self._intercept(record)
            self._insert(record)
            created.append(record)

        logger.info(
            "goals_created",
            goal_set_id=created[0].goal_set_id if created else None,
            count=len(created),
        )
        for record in created:
            self._notify(record)
        return created

    def update(
        self,
        goal: Goal,
        update: GoalUpdate,
        name: str = "update",
        correlation_id: Optional[str] = None,
    ) -> Goal:
        """
        Append the next record version of a goal.

        Args:
            goal: Record the update was computed from
            update: Delta to apply
            name: Name of the handler performing the update (provenance)
            correlation_id: Correlation id of the triggering event

        Returns:
            The stored record

        Raises:
            GoalNotFoundError: The goal was never created
            ConcurrentUpdateError: Lost a race to move the goal in_process
            InvalidTransitionError: The goal is canceled or stopped, or is not
                requested when claimed
        """
        # Check and append atomically within this process
        with self._write_lock:
            current = self._latest(goal.goal_set_id, goal.environment, goal.unique_name)
            if current is None:
                raise GoalNotFoundError(
                    f"Goal not found: {goal.goal_set_id}/{goal.environment}/{goal.unique_name}"
                )

            check_single_writer(current, goal, update)

            record = apply_update(
                goal,
                update,
                self.provenance(name, correlation_id),
                version=current.version + 1,
            )
            record = self._intercept(record)
            self._insert(record)

        logger.info(
            "goal_updated",
            goal=record.unique_name,
            goal_set_id=record.goal_set_id,
            from_state=current.state.value,
            to_state=record.state.value,
            version=record.version,
        )
        self._notify(record)
        return record

    def provenance(self, name: str, correlation_id: Optional[str] = None) -> Provenance:
        return Provenance(
            registration=self.registration,
            name=name,
            version=self.registration_version,
            correlation_id=correlation_id,
            ts=now_ms(),
        )

    # --- internals --------------------------------------------------------

    def _intercept(self, record: Goal) -> Goal:
        for interceptor in self._interceptors:
            record = interceptor(record)
        return record

    def _notify(self, record: Goal) -> None:
        for listener in list(self._listeners):
            listener(record)

    def _insert(self, record: Goal) -> None:
        raise NotImplementedError

    def _latest(self, goal_set_id: str, environment: str, unique_name: str) -> Optional[Goal]:
        raise NotImplementedError

    def _latest_for_set(self, goal_set_id: str) -> List[Goal]:
        raise NotImplementedError

    def _history(self, goal_set_id: str, environment: str, unique_name: str) -> List[Goal]:
        raise NotImplementedError


class InMemoryGoalStore(GoalStore):
    """Process-local goal store."""

    def __init__(self, registration: str = "goal-delivery", registration_version: str = "0.1.0"):
        super().__init__(registration, registration_version)
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, str, str], List[Goal]] = {}
        self._order: Dict[str, List[Tuple[str, str, str]]] = {}

    def _insert(self, record: Goal) -> None:
        key = (record.goal_set_id, record.environment, record.unique_name)
        with self._lock:
            if key not in self._records:
                self._records[key] = []
                self._order.setdefault(record.goal_set_id, []).append(key)
            self._records[key].append(record)

    def _latest(self, goal_set_id: str, environment: str, unique_name: str) -> Optional[Goal]:
        with self._lock:
            versions = self._records.get((goal_set_id, environment, unique_name))
            return versions[-1] if versions else None

    def _latest_for_set(self, goal_set_id: str) -> List[Goal]:
        with self._lock:
            return [self._records[key][-1] for key in self._order.get(goal_set_id, [])]

    def _history(self, goal_set_id: str, environment: str, unique_name: str) -> List[Goal]:
        with self._lock:
            return list(self._records.get((goal_set_id, environment, unique_name), []))

    def list_goal_sets(self, limit: int = 50) -> List[str]:
        """Most recently created goal set ids."""
        with self._lock:
            return list(reversed(list(self._order)))[:limit]
