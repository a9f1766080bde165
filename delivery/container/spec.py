# delivery/container/spec.py
"""
Container goal specification.

A container goal runs one or more containers against the project. The
first container is the main container: its exit code decides the goal
result and its working directory is the project home. All others are
sidecars that live only as long as the main container.

Registrations hold the static spec as plain dicts (camelCase, the shape
Kubernetes uses). An optional callback returns a partial spec that is
deep-merged over the static one; the merged result is validated into
pydantic models.
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ContainerSpecError

# File system location of the project inside containers
CONTAINER_PROJECT_HOME = "/atm/home"


class ContainerEnv(BaseModel):
    """Environment variable."""
    model_config = ConfigDict(extra="allow")

    name: str
    value: Optional[str] = None


class ContainerPort(BaseModel):
    """Port exposed from a container."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    container_port: int = Field(alias="containerPort", gt=0, lt=65536)


class ContainerVolumeMount(BaseModel):
    """Mount of a declared goal volume."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    mount_path: str = Field(alias="mountPath")


class GoalContainer(BaseModel):
    """One container of a container goal."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    image: str
    args: List[str] = Field(default_factory=list)
    command: List[str] = Field(default_factory=list)
    env: List[ContainerEnv] = Field(default_factory=list)
    ports: List[ContainerPort] = Field(default_factory=list)
    volume_mounts: List[ContainerVolumeMount] = Field(default_factory=list, alias="volumeMounts")
    working_dir: Optional[str] = Field(default=None, alias="workingDir")


class HostPath(BaseModel):
    path: str


class GoalContainerVolume(BaseModel):
    """Volume containers can mount."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    host_path: Optional[HostPath] = Field(default=None, alias="hostPath")


class GoalContainerSpec(BaseModel):
    """Containers and volumes of a container goal."""
    containers: List[GoalContainer] = Field(default_factory=list)
    volumes: List[GoalContainerVolume] = Field(default_factory=list)

    @property
    def main(self) -> Optional[GoalContainer]:
        return self.containers[0] if self.containers else None

    def to_k8s(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


SpecCallback = Callable[["ContainerRegistration", str, Any], Optional[Dict[str, Any]]]


@dataclass
class ContainerRegistration:
    """
    Container goal registration.

    Args:
        name: Fulfillment name of the goal implementation
        containers: Static container specs (dicts)
        volumes: Static volume specs (dicts)
        callback: (registration, project_dir, goal) -> partial spec dict
        docker_options: Extra `docker run` options
        input: Cache classifiers restored before execution
        output: Cache entries (classifier + patterns) stored after execution
    """
    name: str
    containers: List[Dict[str, Any]] = field(default_factory=list)
    volumes: List[Dict[str, Any]] = field(default_factory=list)
    callback: Optional[SpecCallback] = None
    docker_options: List[str] = field(default_factory=list)
    input: List[str] = field(default_factory=list)
    output: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        # Dots are not valid in container or job names
        self.name = re.sub(r"\.+", "-", self.name)


def deep_merge(base: Any, override: Any) -> Any:
    """
    Recursively merge `override` into a copy of `base`.

    Dicts merge by key, lists merge element-wise by index (extra elements
    are appended), None in `override` never replaces a value.
    """
    if override is None:
        return copy.deepcopy(base)
    if isinstance(base, dict) and isinstance(override, dict):
        merged = copy.deepcopy(base)
        for key, value in override.items():
            merged[key] = deep_merge(base.get(key), value)
        return merged
    if isinstance(base, list) and isinstance(override, list):
        merged = [deep_merge(b, o) for b, o in zip(base, override)]
        if len(base) > len(override):
            merged.extend(copy.deepcopy(base[len(override):]))
        else:
            merged.extend(copy.deepcopy(override[len(base):]))
        return merged
    return copy.deepcopy(override)


def validate_spec(raw: Dict[str, Any]) -> GoalContainerSpec:
    """
    Raises:
        ContainerSpecError: The spec is malformed
    """
    try:
        return GoalContainerSpec.model_validate(raw)
    except ValidationError as e:
        raise ContainerSpecError(f"Invalid container goal spec: {e}") from e


def resolve_spec(registration: ContainerRegistration, project_dir: str, goal: Any) -> GoalContainerSpec:
    """
    Merge the static spec with the callback result and validate it.

    Raises:
        ContainerSpecError: The merged spec is malformed or has no containers
    """
    raw = {"containers": registration.containers, "volumes": registration.volumes}
    if registration.callback is not None:
        raw = deep_merge(raw, registration.callback(registration, project_dir, goal) or {})

    spec = validate_spec(raw)
    if not spec.containers:
        raise ContainerSpecError(f"No containers defined in container goal '{registration.name}'")
    return spec
