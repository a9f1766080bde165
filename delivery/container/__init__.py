# Container module - container goal runners (Docker, Kubernetes)
from .spec import (
    CONTAINER_PROJECT_HOME,
    ContainerRegistration,
    GoalContainer,
    GoalContainerSpec,
    deep_merge,
    resolve_spec,
)
from .docker import DockerContainerRunner, SubprocessRunner, container_docker_options, docker_executor
from .k8s_client import KubernetesApi
from .k8s_scheduler import (
    KubernetesGoalScheduler,
    KubernetesJobCleanup,
    create_job_spec,
    is_configured_in_env,
    k8s_job_env,
    k8s_job_name,
)
from .k8s import KubernetesContainerRunner, k8s_executor, k8s_fulfillment_callback
from .goal import container_goal

__all__ = [
    "CONTAINER_PROJECT_HOME",
    "ContainerRegistration",
    "GoalContainer",
    "GoalContainerSpec",
    "deep_merge",
    "resolve_spec",
    "DockerContainerRunner",
    "SubprocessRunner",
    "container_docker_options",
    "docker_executor",
    "KubernetesApi",
    "KubernetesGoalScheduler",
    "KubernetesJobCleanup",
    "create_job_spec",
    "is_configured_in_env",
    "k8s_job_env",
    "k8s_job_name",
    "KubernetesContainerRunner",
    "k8s_executor",
    "k8s_fulfillment_callback",
    "container_goal",
]
