# Fulfillment module - goal execution
from .context import ExecuteGoalResult, GoalInvocation
from .progress import ProgressLog
from .project import GitProjectLoader, LocalProjectLoader, ProjectLoader
from .dispatcher import (
    FulfillmentDispatcher,
    GoalImplementation,
    GoalScheduler,
    ImplementationRegistry,
    ProjectListenerEvent,
    ProjectListenerRegistration,
    completion_update,
)
from .cancel import CancelGoalOnCanceled, Terminator

__all__ = [
    "ExecuteGoalResult",
    "GoalInvocation",
    "ProgressLog",
    "GitProjectLoader",
    "LocalProjectLoader",
    "ProjectLoader",
    "FulfillmentDispatcher",
    "GoalImplementation",
    "GoalScheduler",
    "ImplementationRegistry",
    "ProjectListenerEvent",
    "ProjectListenerRegistration",
    "completion_update",
    "CancelGoalOnCanceled",
    "Terminator",
]
