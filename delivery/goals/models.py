# delivery/goals/models.py
"""
Goal data model.

A Goal is an immutable record version. State changes never mutate a
goal in place: a GoalUpdate describes the next state and the store
appends a new record version carrying fresh provenance.

Wire form (to_dict/from_dict) uses camelCase keys and must stay field
stable, because signatures are computed over it.
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class GoalState(Enum):
    """
    Goal lifecycle states.

    planned -> requested -> in_process -> success | failure
    planned -> waiting_for_pre_approval -> pre_approved -> requested
    in_process -> waiting_for_approval -> approved -> success
    planned -> skipped (upstream failure)
    """
    PLANNED = "planned"
    REQUESTED = "requested"
    IN_PROCESS = "in_process"
    WAITING_FOR_PRE_APPROVAL = "waiting_for_pre_approval"
    PRE_APPROVED = "pre_approved"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    APPROVED = "approved"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELED = "canceled"
    STOPPED = "stopped"


class FulfillmentMethod(Enum):
    """How a goal gets fulfilled."""
    SDM = "sdm"
    SIDE_EFFECT = "side-effect"
    OTHER = "other"


@dataclass(frozen=True)
class GoalKey:
    """Identity of a goal within a goal set. The display name is informational."""
    environment: str
    unique_name: str
    name: Optional[str] = field(default=None, compare=False)

    def __str__(self) -> str:
        return f"{self.environment}/{self.unique_name}"

    def to_dict(self) -> Dict[str, Any]:
        return {"environment": self.environment, "uniqueName": self.unique_name, "name": self.name}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GoalKey":
        return cls(environment=d["environment"], unique_name=d["uniqueName"], name=d.get("name"))


@dataclass(frozen=True)
class Fulfillment:
    """Identifies which dispatcher path executes a goal."""
    method: FulfillmentMethod
    name: str
    registration: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"method": self.method.value, "name": self.name, "registration": self.registration}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Fulfillment":
        return cls(
            method=FulfillmentMethod(d["method"]),
            name=d["name"],
            registration=d.get("registration"),
        )


@dataclass(frozen=True)
class Provenance:
    """
    Audit entry recording which process produced a state transition.

    Approval and pre-approval stamps use the same shape with user_id and
    channel_id set.
    """
    registration: Optional[str] = None
    name: Optional[str] = None
    version: Optional[str] = None
    correlation_id: Optional[str] = None
    ts: int = 0
    user_id: Optional[str] = None
    channel_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registration": self.registration,
            "name": self.name,
            "version": self.version,
            "correlationId": self.correlation_id,
            "ts": self.ts,
            "userId": self.user_id,
            "channelId": self.channel_id,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["Provenance"]:
        if not d:
            return None
        return cls(
            registration=d.get("registration"),
            name=d.get("name"),
            version=d.get("version"),
            correlation_id=d.get("correlationId"),
            ts=d.get("ts") or 0,
            user_id=d.get("userId"),
            channel_id=d.get("channelId"),
        )


@dataclass(frozen=True)
class RepoRef:
    """Repository coordinates."""
    owner: str
    name: str
    provider_id: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class PushRef:
    """Reference to the commit a goal set was planned for."""
    sha: str
    branch: str
    repo: RepoRef
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "branch": self.branch,
            "repo": {
                "owner": self.repo.owner,
                "name": self.repo.name,
                "providerId": self.repo.provider_id,
            },
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PushRef":
        repo = d["repo"]
        return cls(
            sha=d["sha"],
            branch=d["branch"],
            repo=RepoRef(owner=repo["owner"], name=repo["name"], provider_id=repo["providerId"]),
            version=d.get("version"),
        )


@dataclass(frozen=True)
class Goal:
    """One versioned goal record."""
    unique_name: str
    name: str
    environment: str
    goal_set_id: str
    state: GoalState
    push: PushRef
    fulfillment: Fulfillment
    goal_set: Optional[str] = None
    description: Optional[str] = None
    phase: Optional[str] = None
    url: Optional[str] = None
    external_urls: Tuple[str, ...] = ()
    pre_conditions: Tuple[GoalKey, ...] = ()
    retry_feasible: bool = False
    approval_required: bool = False
    pre_approval_required: bool = False
    approval: Optional[Provenance] = None
    pre_approval: Optional[Provenance] = None
    provenance: Tuple[Provenance, ...] = ()
    data: Optional[str] = None
    signature: Optional[str] = None
    ts: int = 0
    version: int = 1

    @property
    def key(self) -> GoalKey:
        return GoalKey(environment=self.environment, unique_name=self.unique_name, name=self.name)

    @property
    def sha(self) -> str:
        return self.push.sha

    @property
    def branch(self) -> str:
        return self.push.branch

    @property
    def repo(self) -> RepoRef:
        return self.push.repo

    @property
    def is_root(self) -> bool:
        return len(self.pre_conditions) == 0

    def data_dict(self) -> Dict[str, Any]:
        """Parse the opaque data payload; malformed payloads are treated as empty."""
        if not self.data:
            return {}
        try:
            parsed = json.loads(self.data)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def with_data(self, data: Dict[str, Any]) -> "Goal":
        return replace(self, data=json.dumps(data, sort_keys=True))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uniqueName": self.unique_name,
            "name": self.name,
            "environment": self.environment,
            "goalSetId": self.goal_set_id,
            "goalSet": self.goal_set,
            "state": self.state.value,
            "description": self.description,
            "phase": self.phase,
            "url": self.url,
            "externalUrls": list(self.external_urls),
            "preConditions": [p.to_dict() for p in self.pre_conditions],
            "fulfillment": self.fulfillment.to_dict(),
            "retryFeasible": self.retry_feasible,
            "approvalRequired": self.approval_required,
            "preApprovalRequired": self.pre_approval_required,
            "approval": self.approval.to_dict() if self.approval else None,
            "preApproval": self.pre_approval.to_dict() if self.pre_approval else None,
            "provenance": [p.to_dict() for p in self.provenance],
            "data": self.data,
            "signature": self.signature,
            "push": self.push.to_dict(),
            "ts": self.ts,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Goal":
        return cls(
            unique_name=d["uniqueName"],
            name=d.get("name") or d["uniqueName"],
            environment=d["environment"],
            goal_set_id=d["goalSetId"],
            goal_set=d.get("goalSet"),
            state=GoalState(d["state"]),
            description=d.get("description"),
            phase=d.get("phase"),
            url=d.get("url"),
            external_urls=tuple(d.get("externalUrls") or ()),
            pre_conditions=tuple(GoalKey.from_dict(p) for p in d.get("preConditions") or ()),
            fulfillment=Fulfillment.from_dict(d["fulfillment"]),
            retry_feasible=bool(d.get("retryFeasible")),
            approval_required=bool(d.get("approvalRequired")),
            pre_approval_required=bool(d.get("preApprovalRequired")),
            approval=Provenance.from_dict(d.get("approval")),
            pre_approval=Provenance.from_dict(d.get("preApproval")),
            provenance=tuple(
                p for p in (Provenance.from_dict(x) for x in d.get("provenance") or ()) if p
            ),
            data=d.get("data"),
            signature=d.get("signature"),
            push=PushRef.from_dict(d["push"]),
            ts=d.get("ts") or 0,
            version=d.get("version") or 1,
        )


@dataclass(frozen=True)
class GoalUpdate:
    """
    Delta describing the next version of a goal record.

    Approval stamps are set by passing approval/pre_approval and removed
    with clear_approval/clear_pre_approval.
    """
    state: GoalState
    description: Optional[str] = None
    data: Optional[str] = None
    phase: Optional[str] = None
    url: Optional[str] = None
    approval: Optional[Provenance] = None
    pre_approval: Optional[Provenance] = None
    clear_approval: bool = False
    clear_pre_approval: bool = False


@dataclass(frozen=True)
class StoreUpdate:
    """Effect: ask the store to append `update` on top of `goal`."""
    goal: Goal
    update: GoalUpdate

    @property
    def unique_name(self) -> str:
        return self.goal.unique_name

    @property
    def state(self) -> GoalState:
        return self.update.state


class EffectSet(List[StoreUpdate]):
    """Ordered collection of store updates produced by one evaluation."""

    def __init__(self, updates: Iterable[StoreUpdate] = ()):
        super().__init__(updates)

    def for_goal(self, unique_name: str) -> Optional[StoreUpdate]:
        """First effect targeting the given goal, if any."""
        for effect in self:
            if effect.unique_name == unique_name:
                return effect
        return None

    def targets(self) -> List[str]:
        return [effect.unique_name for effect in self]
