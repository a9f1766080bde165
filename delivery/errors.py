# delivery/errors.py
"""
Exception hierarchy for the delivery orchestrator.

Validation errors fail a single goal, trust errors halt event handling,
infrastructure errors are logged and handled best-effort by the caller.
"""


class DeliveryError(Exception):
    """Base exception for delivery orchestrator errors."""
    pass


class ConfigurationError(DeliveryError):
    """Raised when required configuration is missing or malformed."""
    pass


class GoalNotFoundError(DeliveryError):
    """Raised when a goal record cannot be found in the store."""
    pass


class InvalidTransitionError(DeliveryError):
    """Raised when a goal update requests a transition the state machine forbids."""

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state} -> {to_state}")


class FulfillmentCallbackError(DeliveryError):
    """Raised when a fulfillment callback fails while preparing a goal."""
    pass


class GoalSigningError(DeliveryError):
    """Raised when a goal cannot be signed or the signing setup is invalid."""
    pass


class GoalSignatureError(DeliveryError):
    """
    Raised when an incoming goal has a missing or invalid signature.

    This is a hard stop: the event must not be processed any further.
    """

    def __init__(self, unique_name: str, goal_set_id: str, reason: str):
        self.unique_name = unique_name
        self.goal_set_id = goal_set_id
        self.reason = reason
        super().__init__(
            f"Goal signature {reason} for '{unique_name}' of '{goal_set_id}'. Rejecting goal!"
        )


class ContainerSpecError(DeliveryError):
    """Raised when a container goal specification is malformed."""
    pass


class KubernetesApiError(DeliveryError):
    """Raised when the Kubernetes API returns an unexpected response."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class NoCacheEntry(DeliveryError):
    """Raised by a goal cache when no entry exists for the requested classifier."""
    pass


class ConcurrentUpdateError(DeliveryError):
    """Raised when a goal update was computed from a stale record version."""

    def __init__(self, unique_name: str, expected_version: int, actual_version: int):
        self.unique_name = unique_name
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stale update for '{unique_name}': based on version {expected_version}, "
            f"store holds version {actual_version}"
        )
