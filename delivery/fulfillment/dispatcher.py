# delivery/fulfillment/dispatcher.py
"""
Fulfillment dispatcher.

Executes requested goals:
- side-effect fulfillments are left to the system that owns them
- "other" fulfillments fail, nothing here can run them
- sdm fulfillments run the registered GoalImplementation, either in this
  process or delegated to a goal scheduler for isolated goals

Only one dispatcher wins the requested -> in_process transition for a
goal; losers back off without executing.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .context import ExecuteGoalResult, GoalInvocation
from .progress import ProgressLog
from .project import ProjectLoader
from ..errors import ConcurrentUpdateError, InvalidTransitionError
from ..goals.models import FulfillmentMethod, Goal, GoalState, GoalUpdate
from ..goals.store import GoalStore
from ..logging import get_logger
from ..settings import Settings, settings as default_settings

logger = get_logger(__name__)

GoalExecutor = Callable[[GoalInvocation], Optional[ExecuteGoalResult]]


class ProjectListenerEvent(Enum):
    BEFORE = "before"
    AFTER = "after"


ProjectListener = Callable[[str, GoalInvocation, ProjectListenerEvent], None]


@dataclass
class ProjectListenerRegistration:
    """Listener run before and/or after the executor with the project directory."""
    name: str
    listener: ProjectListener
    events: Tuple[ProjectListenerEvent, ...] = (ProjectListenerEvent.BEFORE, ProjectListenerEvent.AFTER)


@dataclass
class GoalImplementation:
    """Executor registered for a fulfillment name."""
    name: str
    executor: GoalExecutor
    isolated: bool = False
    project_listeners: List[ProjectListenerRegistration] = field(default_factory=list)


class ImplementationRegistry:
    """Goal implementations keyed by fulfillment name."""

    def __init__(self):
        self._implementations: Dict[str, GoalImplementation] = {}

    def register(self, implementation: GoalImplementation) -> None:
        self._implementations[implementation.name] = implementation

    def find(self, name: str) -> Optional[GoalImplementation]:
        return self._implementations.get(name)

    def names(self) -> List[str]:
        return list(self._implementations)


class GoalScheduler:
    """Delegates execution of isolated goals to another runtime."""

    def supports(self, goal: Goal, isolated: bool = False) -> bool:
        raise NotImplementedError

    def schedule(self, invocation: GoalInvocation) -> ExecuteGoalResult:
        raise NotImplementedError


class FulfillmentDispatcher:
    """
    Runs requested goals.

    Args:
        store: Goal store
        implementations: Registered goal implementations
        project_loader: Provides project working copies
        scheduler: Optional scheduler for isolated goals
        settings: Runtime settings
    """

    def __init__(
        self,
        store: GoalStore,
        implementations: ImplementationRegistry,
        project_loader: ProjectLoader,
        scheduler: Optional[GoalScheduler] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.implementations = implementations
        self.project_loader = project_loader
        self.scheduler = scheduler
        self.settings = settings or default_settings

    def fulfill(self, goal: Goal, correlation_id: Optional[str] = None) -> Optional[Goal]:
        """
        Fulfill a requested goal.

        Returns:
            The last record written for the goal, or None if nothing was done
        """
        method = goal.fulfillment.method
        if method == FulfillmentMethod.SIDE_EFFECT:
            logger.info(
                "goal_side_effect_not_fulfilled",
                goal=goal.unique_name,
                fulfillment=goal.fulfillment.name,
            )
            return None
        if method == FulfillmentMethod.OTHER:
            return self.store.update(
                goal,
                GoalUpdate(state=GoalState.FAILURE, description=f"No fulfillment for {goal.name}"),
                name="fulfill_goal",
                correlation_id=correlation_id,
            )

        current = self.store.fetch_goal(goal.goal_set_id, goal.environment, goal.unique_name)
        if current is None or not (current.state == GoalState.REQUESTED or self._is_resumable(current)):
            logger.info(
                "goal_no_longer_requested",
                goal=goal.unique_name,
                goal_set_id=goal.goal_set_id,
                state=current.state.value if current else None,
            )
            return None

        implementation = self.implementations.find(current.fulfillment.name)
        if implementation is None:
            return self.store.update(
                current,
                GoalUpdate(
                    state=GoalState.FAILURE,
                    description=f"No implementation registered for {current.fulfillment.name}",
                ),
                name="fulfill_goal",
                correlation_id=correlation_id,
            )

        if self._should_schedule(implementation, current):
            return self._schedule(current, correlation_id)

        return self._execute(implementation, current, correlation_id)

    def _should_schedule(self, implementation: GoalImplementation, goal: Goal) -> bool:
        return (
            not self.settings.isolated_goal
            and self.scheduler is not None
            and self.scheduler.supports(goal, implementation.isolated)
        )

    def _is_resumable(self, goal: Goal) -> bool:
        """An isolated worker picks up its goal after its init container claimed it."""
        return (
            goal.state == GoalState.IN_PROCESS
            and self.settings.isolated_goal
            and not self.settings.isolated_goal_init
            and goal.goal_set_id == self.settings.goal_set_id
            and goal.unique_name == self.settings.goal_unique_name
        )

    def _schedule(self, goal: Goal, correlation_id: Optional[str]) -> Optional[Goal]:
        progress_log = ProgressLog(goal.unique_name, goal.goal_set_id)
        invocation = GoalInvocation(
            goal=goal,
            project_dir="",
            progress_log=progress_log,
            settings=self.settings,
            correlation_id=correlation_id,
        )
        try:
            result = self.scheduler.schedule(invocation)
        except Exception as e:
            logger.error("goal_schedule_failed", goal=goal.unique_name, error=str(e), exc_info=True)
            result = ExecuteGoalResult(code=1, message=str(e))
        finally:
            progress_log.close()

        logger.info("goal_scheduled", goal=goal.unique_name, goal_set_id=goal.goal_set_id, code=result.code)
        if result.success:
            return None
        return self.store.update(
            goal,
            GoalUpdate(
                state=GoalState.FAILURE,
                description=result.description or f"Failed to schedule {goal.name}",
            ),
            name="fulfill_goal",
            correlation_id=correlation_id,
        )

    def _execute(
        self,
        implementation: GoalImplementation,
        goal: Goal,
        correlation_id: Optional[str],
    ) -> Optional[Goal]:
        if goal.state == GoalState.IN_PROCESS:
            in_process = goal
        else:
            try:
                in_process = self.store.update(
                    goal,
                    GoalUpdate(state=GoalState.IN_PROCESS, description=f"Working: {goal.name}"),
                    name="fulfill_goal",
                    correlation_id=correlation_id,
                )
            except (ConcurrentUpdateError, InvalidTransitionError) as e:
                logger.info("goal_already_claimed", goal=goal.unique_name, reason=str(e))
                return None

        progress_log = ProgressLog(goal.unique_name, goal.goal_set_id)
        self._report_start(in_process, progress_log)
        start = time.time()

        try:
            with self.project_loader.load(in_process) as project_dir:
                invocation = GoalInvocation(
                    goal=in_process,
                    project_dir=project_dir,
                    progress_log=progress_log,
                    settings=self.settings,
                    correlation_id=correlation_id,
                )
                self._run_listeners(implementation, invocation, ProjectListenerEvent.BEFORE)
                result = implementation.executor(invocation) or ExecuteGoalResult()
                if result.success:
                    self._run_listeners(implementation, invocation, ProjectListenerEvent.AFTER)
        except Exception as e:
            logger.error(
                "goal_execution_failed",
                goal=goal.unique_name,
                goal_set_id=goal.goal_set_id,
                error=str(e),
                exc_info=True,
            )
            progress_log.write(f"Error: {e}")
            result = ExecuteGoalResult(code=1, message=str(e))

        progress_log.write("/--")
        progress_log.write(f"Result: code={result.code} message={result.message or ''}")
        progress_log.write(f"Duration: {time.time() - start:.1f}s")
        progress_log.write("\\--")
        progress_log.close()

        latest = self.store.fetch_goal(goal.goal_set_id, goal.environment, goal.unique_name) or in_process
        if latest.state != GoalState.IN_PROCESS:
            # Canceled, stopped or otherwise moved on while running
            logger.info(
                "goal_result_discarded",
                goal=goal.unique_name,
                goal_set_id=goal.goal_set_id,
                state=latest.state.value,
                code=result.code,
            )
            return latest
        try:
            return self.store.update(
                latest,
                completion_update(latest, result),
                name="fulfill_goal",
                correlation_id=correlation_id,
            )
        except InvalidTransitionError as e:
            logger.info("goal_result_discarded", goal=goal.unique_name, goal_set_id=goal.goal_set_id,
                        reason=str(e), code=result.code)
            return None

    def _run_listeners(
        self,
        implementation: GoalImplementation,
        invocation: GoalInvocation,
        event: ProjectListenerEvent,
    ) -> None:
        for registration in implementation.project_listeners:
            if event not in registration.events:
                continue
            logger.debug("project_listener", goal=invocation.unique_name, listener=registration.name, event=event.value)
            registration.listener(invocation.project_dir, invocation, event)

    def _report_start(self, goal: Goal, progress_log: ProgressLog) -> None:
        progress_log.write("/--")
        progress_log.write(f"Repository: {goal.repo.slug}/{goal.branch}")
        progress_log.write(f"Sha: {goal.sha}")
        progress_log.write(f"Goal: {goal.name} - {goal.environment}")
        progress_log.write(f"GoalSet: {goal.goal_set} - {goal.goal_set_id}")
        progress_log.write(f"SDM: {self.settings.registration_name}:{self.settings.registration_version}")
        progress_log.write("\\--")


def completion_update(goal: Goal, result: ExecuteGoalResult) -> GoalUpdate:
    """Terminal (or approval) update for an execution result."""
    if result.state is not None:
        state = result.state
    elif not result.success:
        state = GoalState.FAILURE
    elif goal.approval_required:
        state = GoalState.WAITING_FOR_APPROVAL
    else:
        state = GoalState.SUCCESS

    if result.description:
        description = result.description
    elif state == GoalState.WAITING_FOR_APPROVAL:
        description = f"Approval required: {goal.name}"
    elif state == GoalState.FAILURE:
        description = f"Failed: {goal.name}" + (f" ({result.message})" if result.message else "")
    else:
        description = f"Completed: {goal.name}"

    return GoalUpdate(state=state, description=description, phase=result.phase)
