# Signing module - goal signature creation and verification
from .canonical import normalize_goal
from .rsa import GoalSigningKey, GoalVerificationKey, RsaGoalSigningAlgorithm
from .verifier import (
    FULFILLMENT_OPERATION,
    GoalSigningInterceptor,
    GoalSigningScope,
    SigningConfig,
    is_goal_rejected,
    sign_goal,
    verify_goal,
)

__all__ = [
    "normalize_goal",
    "GoalSigningKey",
    "GoalVerificationKey",
    "RsaGoalSigningAlgorithm",
    "FULFILLMENT_OPERATION",
    "GoalSigningInterceptor",
    "GoalSigningScope",
    "SigningConfig",
    "is_goal_rejected",
    "sign_goal",
    "verify_goal",
]
