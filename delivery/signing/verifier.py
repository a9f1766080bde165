# delivery/signing/verifier.py
"""
Goal signing and verification.

Outgoing records are signed by GoalSigningInterceptor right before the
store writes them. Incoming records are checked by verify_goal; a goal
with a missing or invalid signature is failed in the store and the
event is rejected with GoalSignatureError.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .canonical import normalize_goal
from .rsa import GoalSigningKey, GoalVerificationKey, RsaGoalSigningAlgorithm, public_key_pem
from ..errors import GoalSignatureError, GoalSigningError, InvalidTransitionError
from ..goals.models import Goal, GoalState, GoalUpdate
from ..goals.store import GoalStore
from ..logging import get_logger
from ..settings import Settings

logger = get_logger(__name__)

# Operation name under which requested goals are fulfilled
FULFILLMENT_OPERATION = "fulfill_goal"

REJECTION_REASONS = ("signature was missing", "signature was invalid")


class GoalSigningScope(Enum):
    """Which incoming events are verified."""
    FULFILLMENT = "fulfillment"
    ALL = "all"


@dataclass
class SigningConfig:
    """Signing and verification setup."""
    enabled: bool = False
    scope: GoalSigningScope = GoalSigningScope.FULFILLMENT
    signing_key: Optional[GoalSigningKey] = None
    verification_keys: List[GoalVerificationKey] = field(default_factory=list)
    algorithms: list = field(default_factory=list)

    def all_verification_keys(self) -> List[GoalVerificationKey]:
        """Configured verification keys plus the public half of the signing key."""
        keys = list(self.verification_keys)
        if self.signing_key is not None:
            public = self.signing_key.public_key or public_key_pem(
                self.signing_key.private_key, self.signing_key.passphrase
            )
            keys.append(GoalVerificationKey(
                name=self.signing_key.name,
                public_key=public,
                algorithm=self.signing_key.algorithm,
            ))
        return keys

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningConfig":
        """
        Build the signing config from settings, reading PEM files.

        Raises:
            GoalSigningError: A configured key file cannot be read
        """
        signing_key = None
        if settings.signing_key_path:
            signing_key = GoalSigningKey(
                name=settings.registration_name,
                private_key=_read_pem(settings.signing_key_path),
                public_key=(
                    _read_pem(settings.signing_public_key_path)
                    if settings.signing_public_key_path else None
                ),
                passphrase=settings.signing_passphrase,
            )

        verification_keys = [
            GoalVerificationKey(name=Path(p).stem, public_key=_read_pem(p))
            for p in settings.verification_key_paths
        ]

        return cls(
            enabled=settings.signing_enabled,
            scope=GoalSigningScope(settings.signing_scope),
            signing_key=signing_key,
            verification_keys=verification_keys,
        )


def _read_pem(path: str) -> str:
    try:
        return Path(path).read_text()
    except OSError as e:
        raise GoalSigningError(f"Unable to read key file '{path}': {e}") from e


def find_algorithm(algorithm_name: str, config: SigningConfig, key_name: str):
    """
    Look up a signing algorithm by name (case insensitive).

    Raises:
        GoalSigningError: No configured algorithm has that name
    """
    for algorithm in list(config.algorithms) + [RsaGoalSigningAlgorithm()]:
        if algorithm.name.lower() == algorithm_name.lower():
            return algorithm
    raise GoalSigningError(
        f"Goal signing or verification key '{key_name}' requested algorithm "
        f"'{algorithm_name}' which isn't configured"
    )


def sign_goal(goal: Goal, config: SigningConfig) -> Goal:
    """Return the goal with a fresh signature, or unchanged when signing is off."""
    if not config.enabled or config.signing_key is None:
        return goal

    key = config.signing_key
    algorithm = find_algorithm(key.algorithm, config, key.name)
    signature = algorithm.sign(normalize_goal(goal), key)
    logger.debug("goal_signed", goal=goal.unique_name, goal_set_id=goal.goal_set_id)
    return replace(goal, signature=signature)


def is_in_scope(scope: GoalSigningScope, operation: str) -> bool:
    if scope == GoalSigningScope.ALL:
        return True
    return scope == GoalSigningScope.FULFILLMENT and operation == FULFILLMENT_OPERATION


def rejection_description(goal: Goal, reason: str) -> str:
    return f"Rejected {goal.name} because {reason}"


def is_goal_rejected(goal: Goal) -> bool:
    """
    Is this record our own rejection of the goal?

    Only the terminal failure record carrying the exact rejection
    description matches; it is exempt from verification so rejecting an
    unsigned goal does not loop. Any other state is always verified.
    """
    if goal.state != GoalState.FAILURE:
        return False
    return goal.description in [rejection_description(goal, r) for r in REJECTION_REASONS]


def verify_goal(
    goal: Goal,
    config: SigningConfig,
    store: GoalStore,
    operation: str,
) -> Optional[GoalVerificationKey]:
    """
    Verify the signature of an incoming goal.

    Returns:
        The key that verified the goal, or None when verification did not apply

    Raises:
        GoalSignatureError: Signature missing or invalid; the goal was failed
    """
    if not config.enabled or not is_in_scope(config.scope, operation) or is_goal_rejected(goal):
        return None

    if not goal.signature:
        _reject(goal, "signature was missing", store)
        raise GoalSignatureError(goal.unique_name, goal.goal_set_id, "missing")

    message = normalize_goal(goal)
    for key in config.all_verification_keys():
        algorithm = find_algorithm(key.algorithm, config, key.name)
        if algorithm.verify(message, goal.signature, key):
            logger.info(
                "goal_signature_verified",
                goal=goal.unique_name,
                goal_set_id=goal.goal_set_id,
                key=key.name,
                algorithm=key.algorithm,
            )
            return key

    _reject(goal, "signature was invalid", store)
    raise GoalSignatureError(goal.unique_name, goal.goal_set_id, "invalid")


def _reject(goal: Goal, reason: str, store: GoalStore) -> None:
    logger.warning(
        "goal_rejected",
        goal=goal.unique_name,
        goal_set_id=goal.goal_set_id,
        reason=reason,
    )
    try:
        store.update(
            goal,
            GoalUpdate(state=GoalState.FAILURE, description=rejection_description(goal, reason)),
            name="verify_goal",
        )
    except InvalidTransitionError:
        # Canceled and stopped goals keep their final record
        logger.info("goal_rejection_not_recorded", goal=goal.unique_name, state=goal.state.value)


class GoalSigningInterceptor:
    """Store interceptor signing every record before it is written."""

    def __init__(self, config: SigningConfig):
        self.config = config

    def __call__(self, record: Goal) -> Goal:
        return sign_goal(record, self.config)
