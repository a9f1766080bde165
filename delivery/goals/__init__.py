# Goals module - goal records, state machine, store and dependency evaluation
from .models import (
    EffectSet,
    Fulfillment,
    FulfillmentMethod,
    Goal,
    GoalKey,
    GoalState,
    GoalUpdate,
    Provenance,
    PushRef,
    RepoRef,
    StoreUpdate,
)
from .state_machine import (
    FAILED_STATES,
    SUCCESS_STATES,
    TERMINAL_STATES,
    apply_update,
    get_valid_transitions,
    is_terminal,
    is_valid_transition,
)
from .store import GoalStore, InMemoryGoalStore
from .sql_store import SqlGoalStore
from .callbacks import FulfillmentCallbackRegistry
from .evaluator import DependencyEvaluator

__all__ = [
    "EffectSet",
    "Fulfillment",
    "FulfillmentMethod",
    "Goal",
    "GoalKey",
    "GoalState",
    "GoalUpdate",
    "Provenance",
    "PushRef",
    "RepoRef",
    "StoreUpdate",
    "FAILED_STATES",
    "SUCCESS_STATES",
    "TERMINAL_STATES",
    "apply_update",
    "get_valid_transitions",
    "is_terminal",
    "is_valid_transition",
    "GoalStore",
    "InMemoryGoalStore",
    "SqlGoalStore",
    "FulfillmentCallbackRegistry",
    "DependencyEvaluator",
]
