# delivery/container/k8s.py
"""
Kubernetes container goal runner.

Container goals on Kubernetes run inside the goal job pod scheduled by
KubernetesGoalScheduler:

- at request time k8s_fulfillment_callback stores a service spec in the
  goal data; the scheduler adds its containers, an init container and a
  shared "home" volume to the job
- the init container (this orchestrator in init mode) copies the project
  into the shared volume
- the goal containers run against the shared volume
- the orchestrator container waits for the main goal container to exit,
  tails its log and copies the shared volume back into the project
"""

import logging
import os
import socket
import threading
import time
from typing import Any, Callable, Dict, Optional

from .k8s_client import KubernetesApi
from .k8s_scheduler import K8S_SERVICE_TYPE, SERVICE_DATA_KEY, KubernetesGoalScheduler, k8s_job_env, \
    namespace_from_service_account
from .spec import CONTAINER_PROJECT_HOME, ContainerRegistration, resolve_spec
from .util import copy_project, goal_env_vars, log_and_write
from ..errors import ContainerSpecError, DeliveryError
from ..fulfillment.context import ExecuteGoalResult, GoalInvocation
from ..fulfillment.project import ProjectLoader
from ..goals.models import Goal, GoalState
from ..logging import get_logger
from ..settings import Settings, settings as default_settings

logger = get_logger(__name__)

INIT_CONTAINER_NAME = "atm-init"
HOME_VOLUME_NAME = "home"


def k8s_service_spec(
    registration: ContainerRegistration,
    goal: Goal,
    pod_spec: Dict[str, Any],
    settings: Settings,
    project_dir: str = "",
) -> Dict[str, Any]:
    """
    Service spec describing the goal containers of a job.

    Raises:
        ContainerSpecError: No containers are defined
    """
    try:
        spec = resolve_spec(registration, project_dir, goal)
    except ContainerSpecError as e:
        if "No containers" in str(e):
            raise ContainerSpecError("No containers defined in K8sGoalContainerSpec") from e
        raise

    identity = goal_env_vars(goal)
    containers = []
    for index, container in enumerate(spec.to_k8s()["containers"]):
        if index == 0:
            container["workingDir"] = CONTAINER_PROJECT_HOME
        container["env"] = identity + (container.get("env") or [])
        containers.append(container)

    home_mount = {"mountPath": CONTAINER_PROJECT_HOME, "name": HOME_VOLUME_NAME}
    return {
        "type": K8S_SERVICE_TYPE,
        "spec": {
            "container": containers,
            "initContainer": {
                "env": k8s_job_env(pod_spec, goal, settings) + [
                    {"name": "ATOMIST_ISOLATED_GOAL_INIT", "value": "true"},
                ],
                "image": pod_spec["spec"]["containers"][0]["image"],
                "name": INIT_CONTAINER_NAME,
                "volumeMounts": [dict(home_mount)],
                "workingDir": CONTAINER_PROJECT_HOME,
            },
            "volume": [{"name": HOME_VOLUME_NAME, "emptyDir": {}}],
            "volumeMount": [dict(home_mount)],
        },
    }


def k8s_fulfillment_callback(
    registration: ContainerRegistration,
    scheduler: KubernetesGoalScheduler,
    project_loader: Optional[ProjectLoader] = None,
) -> Callable[[Goal], Goal]:
    """
    Fulfillment callback storing the Kubernetes service spec of a
    container goal in its data under `sdm/service`.

    The project is only loaded when the registration has a spec callback.
    """

    def callback(goal: Goal) -> Goal:
        pod_spec = scheduler.parent_pod()
        if registration.callback is not None and project_loader is not None:
            with project_loader.load(goal) as project_dir:
                service = k8s_service_spec(registration, goal, pod_spec, scheduler.settings, project_dir)
        else:
            service = k8s_service_spec(registration, goal, pod_spec, scheduler.settings)

        data = goal.data_dict()
        services = dict(data.get(SERVICE_DATA_KEY) or {})
        services[registration.name] = service
        data[SERVICE_DATA_KEY] = services
        return goal.with_data(data)

    return callback


def _container_status(pod: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    statuses = (pod.get("status") or {}).get("containerStatuses") or []
    for status in statuses:
        if status.get("name") == name:
            return status
    return None


class KubernetesContainerRunner:
    """
    Executes container goals inside a Kubernetes goal job.

    Args:
        api: Kubernetes API client (from settings by default)
        settings: Runtime settings
        poll_interval: Seconds between container start checks
        log_grace: Seconds to let log tailing catch up after exit
        work_dir: Shared project directory (the process working directory)
    """

    def __init__(
        self,
        api: Optional[KubernetesApi] = None,
        settings: Optional[Settings] = None,
        poll_interval: float = 0.5,
        log_grace: float = 1.0,
        work_dir: Optional[str] = None,
    ):
        self._api = api
        self.settings = settings or default_settings
        self.poll_interval = poll_interval
        self.log_grace = log_grace
        self.work_dir = work_dir

    @property
    def api(self) -> KubernetesApi:
        if self._api is None:
            self._api = KubernetesApi.from_settings(self.settings)
        return self._api

    def execute(self, registration: ContainerRegistration, invocation: GoalInvocation) -> ExecuteGoalResult:
        goal = invocation.goal
        progress_log = invocation.progress_log
        work_dir = self.work_dir or os.getcwd()

        if self.settings.isolated_goal_init:
            try:
                copy_project(invocation.project_dir, work_dir)
            except OSError as e:
                message = f"Failed to copy project for goal execution: {e}"
                log_and_write(logger, logging.ERROR, "container_project_copy_failed", message, progress_log,
                              goal=goal.unique_name)
                return ExecuteGoalResult(code=1, message=message)
            return ExecuteGoalResult(state=GoalState.IN_PROCESS, description=f"Working: {goal.name}")

        name = self._main_container_name(registration, invocation)
        if name is None:
            message = f"Failed to get main container name from either goal registration or data: '{goal.data}'"
            log_and_write(logger, logging.ERROR, "k8s_main_container_unknown", message, progress_log,
                          goal=goal.unique_name)
            return ExecuteGoalResult(code=1, message=message)

        namespace = self.settings.pod_namespace or namespace_from_service_account()
        pod = self.settings.pod_name or socket.gethostname()

        try:
            self._container_started(namespace, pod, name, invocation)
        except DeliveryError as e:
            log_and_write(logger, logging.ERROR, "k8s_container_start_failed", str(e), progress_log,
                          goal=goal.unique_name, container=name)
            return ExecuteGoalResult(code=1, message=str(e))

        tail = threading.Thread(target=self._follow_log, args=(namespace, pod, name, invocation), daemon=True)
        tail.start()

        code = 0
        message = f"Container '{name}' completed successfully"
        try:
            exit_code = self._container_exit_code(namespace, pod, name)
            if exit_code == 0:
                log_and_write(logger, logging.INFO, "k8s_container_exited", f"Container '{name}' exited with status 0",
                              progress_log, goal=goal.unique_name, container=name)
            else:
                raise DeliveryError(f"Container '{name}' exited with status {exit_code}")
        except DeliveryError as e:
            message = f"Container '{name}' failed: {e}"
            log_and_write(logger, logging.ERROR, "k8s_container_failed", message, progress_log,
                          goal=goal.unique_name, container=name)
            code += 1
        finally:
            tail.join(self.log_grace)

        try:
            copy_project(work_dir, invocation.project_dir)
        except OSError as e:
            msg = f"Failed to update project after goal execution: {e}"
            log_and_write(logger, logging.ERROR, "container_project_update_failed", msg, progress_log,
                          goal=goal.unique_name)
            code += 1
            message += f" but failed to update project after goal execution: {e}"

        return ExecuteGoalResult(code=code, message=message)

    def _main_container_name(self, registration: ContainerRegistration, invocation: GoalInvocation) -> Optional[str]:
        try:
            spec = resolve_spec(registration, invocation.project_dir, invocation.goal)
            return spec.main.name
        except ContainerSpecError as e:
            log_and_write(logger, logging.WARNING, "k8s_registration_spec_unusable",
                          f"Failed to get main container name from goal registration: {e}",
                          invocation.progress_log, goal=invocation.unique_name)

        service = (invocation.goal.data_dict().get(SERVICE_DATA_KEY) or {}).get(registration.name) or {}
        containers = (service.get("spec") or {}).get("container") or []
        if containers and isinstance(containers[0], dict):
            return containers[0].get("name")
        return None

    def _container_started(self, namespace: str, pod: str, name: str, invocation: GoalInvocation) -> None:
        """
        Poll the pod until the container runs or already terminated.

        Raises:
            DeliveryError: The container did not start in time
        """
        attempts = self.settings.k8s_container_start_attempts
        for _ in range(attempts):
            time.sleep(self.poll_interval)
            status = _container_status(self.api.read_pod(namespace, pod), name)
            state = (status or {}).get("state") or {}
            if (state.get("running") or {}).get("startedAt") or state.get("terminated"):
                log_and_write(logger, logging.DEBUG, "k8s_container_started", f"Container '{name}' started",
                              invocation.progress_log, container=name)
                return
        raise DeliveryError(
            f"Container '{name}' failed to start within {int(attempts * self.poll_interval * 1000)} ms"
        )

    def _container_exit_code(self, namespace: str, pod: str, name: str) -> int:
        """Watch the pod until the container terminates."""
        while True:
            for event in self.api.watch_pod(namespace, pod):
                status = _container_status(event.get("object") or {}, name)
                terminated = ((status or {}).get("state") or {}).get("terminated")
                if terminated:
                    return int(terminated.get("exitCode") or 0)
            # Watch streams end on server timeout; check once before re-opening
            status = _container_status(self.api.read_pod(namespace, pod), name)
            terminated = ((status or {}).get("state") or {}).get("terminated")
            if terminated:
                return int(terminated.get("exitCode") or 0)

    def _follow_log(self, namespace: str, pod: str, name: str, invocation: GoalInvocation) -> None:
        try:
            for line in self.api.follow_log(namespace, pod, name):
                invocation.progress_log.write(line)
        except DeliveryError as e:
            logger.warning("k8s_log_follow_failed", container=name, error=str(e))


def k8s_executor(registration: ContainerRegistration, runner: Optional[KubernetesContainerRunner] = None):
    """Goal executor running a container registration in a Kubernetes goal job."""
    k8s = runner or KubernetesContainerRunner()

    def execute(invocation: GoalInvocation) -> ExecuteGoalResult:
        return k8s.execute(registration, invocation)

    return execute
