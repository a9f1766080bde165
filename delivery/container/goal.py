# delivery/container/goal.py
"""
Container goal implementations.

Builds the GoalImplementation of a container registration. With a
Kubernetes scheduler the goal runs as a Kubernetes job (a fulfillment
callback stores the service spec at request time); otherwise the
containers run on the local Docker daemon.

Container goals are always isolated. Registration `input` classifiers are
restored from the goal cache before execution and `output` entries are
cached afterwards.
"""

from typing import List, Optional

from .docker import DockerContainerRunner, docker_executor
from .k8s import KubernetesContainerRunner, k8s_executor, k8s_fulfillment_callback
from .k8s_scheduler import KubernetesGoalScheduler
from .spec import ContainerRegistration
from ..cache.goal_cache import GoalCache
from ..cache.listeners import CacheEntry, cache_put, cache_restore
from ..fulfillment.dispatcher import GoalImplementation, ProjectListenerRegistration
from ..fulfillment.project import ProjectLoader
from ..goals.callbacks import FulfillmentCallbackRegistry
from ..logging import get_logger

logger = get_logger(__name__)


def cache_listeners(registration: ContainerRegistration, cache: Optional[GoalCache]) -> List[ProjectListenerRegistration]:
    if cache is None:
        return []
    listeners = []
    if registration.input:
        listeners.append(cache_restore(registration.input, cache))
    if registration.output:
        listeners.append(cache_put([CacheEntry.from_dict(o) for o in registration.output], cache))
    return listeners


def container_goal(
    registration: ContainerRegistration,
    callbacks: FulfillmentCallbackRegistry,
    cache: Optional[GoalCache] = None,
    scheduler: Optional[KubernetesGoalScheduler] = None,
    project_loader: Optional[ProjectLoader] = None,
    docker: Optional[DockerContainerRunner] = None,
    k8s: Optional[KubernetesContainerRunner] = None,
) -> GoalImplementation:
    """
    Create the implementation of a container goal.

    Args:
        registration: Container registration
        callbacks: Registry receiving the Kubernetes fulfillment callback
        cache: Goal cache for input/output entries
        scheduler: Kubernetes scheduler; selects the Kubernetes runner
        project_loader: Loads the project for spec callbacks at request time
        docker: Docker runner override
        k8s: Kubernetes runner override
    """
    if scheduler is not None:
        callbacks.register(registration.name, k8s_fulfillment_callback(registration, scheduler, project_loader))
        executor = k8s_executor(registration, k8s)
        runtime = "kubernetes"
    else:
        executor = docker_executor(registration, docker)
        runtime = "docker"

    logger.info("container_goal_registered", goal=registration.name, runtime=runtime,
                containers=len(registration.containers))
    return GoalImplementation(
        name=registration.name,
        executor=executor,
        isolated=True,
        project_listeners=cache_listeners(registration, cache),
    )
