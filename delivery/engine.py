# delivery/engine.py
"""
Goal event service.

Message-driven entry point of the orchestrator. Every record written to
the goal store is handed to GoalEventService.handle, which verifies the
signature and routes the goal by state:

    success, skipped            -> dependency evaluator (unblock)
    failure, stopped, canceled  -> dependency evaluator (skip), cancellation
    requested                   -> fulfillment dispatcher
    pre_approved, approved      -> approval vote aggregator

Resulting effects are applied through store.update, which notifies the
service again. Notifications are queued and drained one at a time, so a
handler writing to the store never re-enters another handler.

In an isolated goal worker only the worker's own goal is handled.
"""

import threading
from collections import deque
from typing import Callable, Deque, List, Optional

from .approvals.voting import ApprovalVoteAggregator, Voter
from .cache.goal_cache import FileSystemGoalCache, GoalCache, NoOpGoalCache
from .container.goal import container_goal
from .container.k8s_scheduler import KubernetesGoalScheduler, KubernetesJobCleanup, is_configured_in_env
from .container.spec import ContainerRegistration
from .errors import ConcurrentUpdateError, GoalNotFoundError, GoalSignatureError, InvalidTransitionError
from .fulfillment.cancel import CancelGoalOnCanceled
from .fulfillment.dispatcher import FulfillmentDispatcher, GoalImplementation, ImplementationRegistry
from .fulfillment.project import ProjectLoader
from .goals.callbacks import FulfillmentCallbackRegistry
from .goals.evaluator import DependencyEvaluator
from .goals.models import EffectSet, Goal, GoalState
from .goals.state_machine import FAILED_STATES, SUCCESS_STATES, is_terminal
from .goals.store import GoalStore
from .logging import get_logger
from .settings import Settings, settings as default_settings
from .signing.verifier import FULFILLMENT_OPERATION, GoalSigningInterceptor, SigningConfig, verify_goal

logger = get_logger(__name__)

GoalCompletionListener = Callable[[Goal], None]

# Operation name for verification of non-fulfillment events
EVENT_OPERATION = "handle_goal_event"


class GoalEventService:
    """
    Routes goal change events to the orchestrator components.

    Args:
        store: Goal store
        evaluator: Dependency evaluator
        dispatcher: Fulfillment dispatcher
        aggregator: Approval vote aggregator
        signing: Signing configuration (verification is off without it)
        canceller: Exits an isolated worker whose goal got canceled
        completion_listeners: Called with every terminal goal record
        settings: Runtime settings
    """

    def __init__(
        self,
        store: GoalStore,
        evaluator: DependencyEvaluator,
        dispatcher: FulfillmentDispatcher,
        aggregator: Optional[ApprovalVoteAggregator] = None,
        signing: Optional[SigningConfig] = None,
        canceller: Optional[CancelGoalOnCanceled] = None,
        completion_listeners: Optional[List[GoalCompletionListener]] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.aggregator = aggregator or ApprovalVoteAggregator(callbacks=evaluator.callbacks)
        self.signing = signing or SigningConfig()
        self.canceller = canceller
        self.completion_listeners: List[GoalCompletionListener] = list(completion_listeners or [])
        self.settings = settings or default_settings
        self.cache: GoalCache = NoOpGoalCache()

        self._queue: Deque[Goal] = deque()
        self._lock = threading.Lock()
        self._draining = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --- lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Subscribe to the store change feed."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_change)
            logger.info("goal_event_service_started", isolated=self.settings.isolated_goal)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for listener in self.completion_listeners:
            if isinstance(listener, KubernetesJobCleanup):
                listener.stop()
        logger.info("goal_event_service_stopped")

    def add_completion_listener(self, listener: GoalCompletionListener) -> None:
        self.completion_listeners.append(listener)

    # --- registration -----------------------------------------------------

    @property
    def implementations(self) -> ImplementationRegistry:
        return self.dispatcher.implementations

    @property
    def callbacks(self) -> FulfillmentCallbackRegistry:
        return self.evaluator.callbacks

    def register_implementation(self, implementation: GoalImplementation) -> None:
        self.implementations.register(implementation)

    def register_container_goal(self, registration: ContainerRegistration) -> GoalImplementation:
        """Register a container goal on Kubernetes (when scheduling there) or Docker."""
        scheduler = self.dispatcher.scheduler
        implementation = container_goal(
            registration,
            self.callbacks,
            cache=self.cache,
            scheduler=scheduler if isinstance(scheduler, KubernetesGoalScheduler) else None,
            project_loader=self.dispatcher.project_loader,
        )
        self.register_implementation(implementation)
        return implementation

    # --- events -----------------------------------------------------------

    def on_push(self, goals: List[Goal], correlation_id: Optional[str] = None) -> EffectSet:
        """
        Plan a goal set: store its goals and request the roots.

        Returns:
            The seeding effects that were applied
        """
        held = self._hold()
        try:
            created = self.store.create_goals(goals, name="on_push")
            effects = self.evaluator.seed(created)
            self.apply(effects, name="seed_goals", correlation_id=correlation_id)
            logger.info(
                "goal_set_planned",
                goal_set_id=created[0].goal_set_id if created else None,
                goals=len(created),
                seeded=effects.targets(),
            )
            return effects
        finally:
            if held:
                self._drain()

    def handle(self, goal: Goal, correlation_id: Optional[str] = None) -> EffectSet:
        """
        Handle one goal change event.

        Raises:
            GoalSignatureError: The goal signature is missing or invalid
        """
        if self.settings.isolated_goal:
            return self._handle_own_goal(goal, correlation_id)

        operation = FULFILLMENT_OPERATION if goal.state == GoalState.REQUESTED else EVENT_OPERATION
        verify_goal(goal, self.signing, self.store, operation)

        effects = EffectSet()
        if goal.state in SUCCESS_STATES or goal.state in FAILED_STATES:
            effects = self.evaluator.on_goal_changed(goal)
        elif goal.state == GoalState.REQUESTED:
            self.dispatcher.fulfill(goal, correlation_id)
        elif goal.state in (GoalState.PRE_APPROVED, GoalState.APPROVED):
            effects = self.aggregator.on_goal_approved(goal)

        self.apply(effects, name=f"on_{goal.state.value}", correlation_id=correlation_id)

        if is_terminal(goal):
            self._notify_completion(goal)
        return effects

    def execute_own_goal(self, correlation_id: Optional[str] = None) -> Optional[Goal]:
        """
        Execute the goal an isolated worker was started for.

        Raises:
            GoalNotFoundError: The worker goal does not exist
        """
        goal = self.store.find_goal(self.settings.goal_set_id or "", self.settings.goal_unique_name or "")
        if goal is None:
            raise GoalNotFoundError(
                f"Goal not found: {self.settings.goal_set_id}/{self.settings.goal_unique_name}"
            )
        verify_goal(goal, self.signing, self.store, FULFILLMENT_OPERATION)
        logger.info("isolated_goal_executing", goal=goal.unique_name, goal_set_id=goal.goal_set_id)
        return self.dispatcher.fulfill(goal, correlation_id)

    def apply(self, effects: EffectSet, name: str, correlation_id: Optional[str] = None) -> List[Goal]:
        """Write effects to the store; effects that lost a race are dropped."""
        written = []
        for effect in effects:
            try:
                written.append(self.store.update(effect.goal, effect.update, name=name,
                                                 correlation_id=correlation_id))
            except (ConcurrentUpdateError, InvalidTransitionError) as e:
                logger.info("goal_effect_dropped", goal=effect.unique_name, state=effect.state.value,
                            reason=str(e))
        return written

    # --- internals --------------------------------------------------------

    def _handle_own_goal(self, goal: Goal, correlation_id: Optional[str]) -> EffectSet:
        if goal.goal_set_id != self.settings.goal_set_id or goal.unique_name != self.settings.goal_unique_name:
            return EffectSet()
        verify_goal(goal, self.signing, self.store, EVENT_OPERATION)
        if goal.state == GoalState.CANCELED and self.canceller is not None:
            self.canceller.handle(goal)
        return EffectSet()

    def _notify_completion(self, goal: Goal) -> None:
        for listener in self.completion_listeners:
            try:
                listener(goal)
            except Exception as e:
                logger.error("goal_completion_listener_failed", goal=goal.unique_name, error=str(e),
                             exc_info=True)

    def _hold(self) -> bool:
        """Queue notifications instead of draining them; True if this call owns the drain."""
        with self._lock:
            if self._draining:
                return False
            self._draining = True
            return True

    def _on_change(self, goal: Goal) -> None:
        with self._lock:
            self._queue.append(goal)
            if self._draining:
                return
            self._draining = True
        self._drain()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._draining = False
                    return
                goal = self._queue.popleft()
            try:
                self.handle(goal)
            except GoalSignatureError as e:
                logger.warning("goal_event_rejected", goal=goal.unique_name, goal_set_id=goal.goal_set_id,
                               reason=e.reason)
            except Exception as e:
                logger.error("goal_event_failed", goal=goal.unique_name, goal_set_id=goal.goal_set_id,
                             state=goal.state.value, error=str(e), exc_info=True)


def build_service(
    store: GoalStore,
    project_loader: ProjectLoader,
    settings: Optional[Settings] = None,
    voters: Optional[List[Voter]] = None,
) -> GoalEventService:
    """
    Wire a GoalEventService from settings.

    Signing is enabled through a store interceptor, Kubernetes scheduling
    and job cleanup when a kubernetes goal scheduler is configured, the
    file system goal cache when caching is enabled.
    """
    s = settings or default_settings
    callbacks = FulfillmentCallbackRegistry()

    signing = SigningConfig.from_settings(s)
    if signing.enabled:
        store.add_interceptor(GoalSigningInterceptor(signing))

    scheduler = None
    completion_listeners: List[GoalCompletionListener] = []
    if is_configured_in_env("kubernetes", "kubernetes-all", value=s.goal_scheduler):
        scheduler = KubernetesGoalScheduler(settings=s)
        if not s.isolated_goal:
            cleanup = KubernetesJobCleanup(settings=s)
            cleanup.start()
            completion_listeners.append(cleanup)

    service = GoalEventService(
        store=store,
        evaluator=DependencyEvaluator(store, callbacks, s.registration_name),
        dispatcher=FulfillmentDispatcher(store, ImplementationRegistry(), project_loader, scheduler, s),
        aggregator=ApprovalVoteAggregator(voters, callbacks=callbacks),
        signing=signing,
        canceller=CancelGoalOnCanceled(s) if s.isolated_goal else None,
        completion_listeners=completion_listeners,
        settings=s,
    )
    if s.cache_enabled:
        service.cache = FileSystemGoalCache(s.cache_path)

    logger.info(
        "goal_event_service_built",
        registration=s.registration_name,
        signing=signing.enabled,
        scheduler=type(scheduler).__name__ if scheduler else None,
        cache=type(service.cache).__name__,
    )
    return service
