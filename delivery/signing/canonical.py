# delivery/signing/canonical.py
"""
Canonical goal representation for signing.

The canonical string lists the security relevant fields of a goal record
in fixed order, one per line. The data payload is represented by its
SHA-256 hash. Absent values render as "undefined".
"""

import hashlib
from typing import Any, Optional

from ..goals.models import Goal, Provenance


def compute_sha256(data: str) -> str:
    """Lowercase hex SHA-256 of a UTF-8 string."""
    return hashlib.sha256(data.encode("utf-8")).hexdigest().lower()


def normalize_value(value: Any) -> str:
    if not value:
        return "undefined"
    if isinstance(value, bool):
        return "true"
    return str(value)


def normalize_provenance(p: Optional[Provenance]) -> str:
    if p is None:
        return "undefined"
    return (
        f"{normalize_value(p.registration)}:{normalize_value(p.version)}/{normalize_value(p.name)}"
        f"-{normalize_value(p.user_id)}-{normalize_value(p.channel_id)}-{p.ts}"
    )


def normalize_goal(goal: Goal) -> str:
    """Canonical string covered by a goal signature."""
    pre_conditions = ",".join(
        f"{p.environment}/{normalize_value(p.name)}/{normalize_value(p.unique_name)}"
        for p in goal.pre_conditions
    )
    data = compute_sha256(goal.data) if goal.data else "undefined"

    lines = [
        f"uniqueName:{goal.unique_name}",
        f"environment:{goal.environment}",
        f"goalSetId:{goal.goal_set_id}",
        f"state:{goal.state.value}",
        f"ts:{goal.ts}",
        f"version:{goal.version}",
        f"repo:{goal.repo.owner}/{goal.repo.name}/{goal.repo.provider_id}",
        f"sha:{goal.sha}",
        f"branch:{goal.branch}",
        f"fulfillment:{goal.fulfillment.name}-{goal.fulfillment.method.value}",
        f"preConditions:{pre_conditions}",
        f"data:{data}",
        f"url:{normalize_value(goal.url)}",
        f"externalUrls:{','.join(goal.external_urls)}",
        f"provenance:{','.join(normalize_provenance(p) for p in goal.provenance)}",
        f"retry:{normalize_value(goal.retry_feasible)}",
        f"approvalRequired:{normalize_value(goal.approval_required)}",
        f"approval:{normalize_provenance(goal.approval)}",
        f"preApprovalRequired:{normalize_value(goal.pre_approval_required)}",
        f"preApproval:{normalize_provenance(goal.pre_approval)}",
    ]
    return "\n".join(lines)
