# delivery/container/k8s_scheduler.py
"""
Kubernetes goal scheduling.

KubernetesGoalScheduler delegates isolated goals to Kubernetes jobs. The
job is built from the spec of the pod this orchestrator runs in, so the
job runs the same image and configuration, switched into isolated goal
mode through environment variables.

KubernetesJobCleanup is a goal completion listener: jobs of completed
goals are remembered with a TTL and deleted (with their pods) by a
periodic sweep.
"""

import copy
import json
import os
import re
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .k8s_client import KubernetesApi
from ..errors import DeliveryError, KubernetesApiError
from ..fulfillment.context import ExecuteGoalResult, GoalInvocation
from ..fulfillment.dispatcher import GoalScheduler
from ..goals.models import Goal, GoalState
from ..logging import get_logger
from ..settings import Settings, settings as default_settings
from ..signing.canonical import compute_sha256

logger = get_logger(__name__)

# Annotation holding registration and goal identity of a job
SDM_ANNOTATION = "atomist.com/sdm"

# Goal data key holding service specs added to goal jobs
SERVICE_DATA_KEY = "sdm/service"
K8S_SERVICE_TYPE = "atomist.com/sdm/service/k8s"

MAX_NAME_LENGTH = 63


def is_configured_in_env(*values: str, value: Optional[str] = None) -> bool:
    """
    Is one of `values` configured as goal scheduler?

    The configured value may be a plain string, a JSON string or a JSON
    array of strings.
    """
    configured = value if value is not None else default_settings.goal_scheduler
    if not configured:
        return False
    try:
        parsed = json.loads(configured)
    except ValueError:
        return configured in values
    if isinstance(parsed, list):
        return any(v in values for v in parsed)
    return parsed in values


def sanitize_name(name: str) -> str:
    """Make a registration name usable as label value."""
    return name.replace("@", "").replace("/", ".")


def goal_id(goal: Goal) -> str:
    """Stable label-safe identifier of a goal."""
    return compute_sha256(f"{goal.goal_set_id}/{goal.environment}/{goal.unique_name}")[:32]


def k8s_job_name(pod_spec: Dict[str, Any], goal: Goal) -> str:
    """Job name, truncated to the Kubernetes name limit."""
    goal_name = goal.unique_name.split("#")[0].lower()
    prefix = pod_spec["spec"]["containers"][0]["name"]
    name = f"{prefix}-job-{goal.goal_set_id[:7]}-{goal_name}"
    return re.sub(r"[^a-z0-9]+$", "", name[:MAX_NAME_LENGTH])


def k8s_job_env(
    pod_spec: Dict[str, Any],
    goal: Goal,
    settings: Settings,
    correlation_id: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Environment switching a job container into isolated goal mode. Empty values are dropped."""
    goal_name = goal.unique_name.split("#")[0].lower()
    env = [
        {"name": "ATOMIST_JOB_NAME", "value": k8s_job_name(pod_spec, goal)},
        {
            "name": "ATOMIST_REGISTRATION_NAME",
            "value": f"{settings.registration_name}-job-{goal.goal_set_id[:7]}-{goal_name}",
        },
        {"name": "ATOMIST_GOAL_TEAM", "value": settings.workspace_id or ""},
        {"name": "ATOMIST_GOAL_TEAM_NAME", "value": settings.workspace_name or ""},
        {"name": "ATOMIST_GOAL_ID", "value": goal_id(goal)},
        {"name": "ATOMIST_GOAL_SET_ID", "value": goal.goal_set_id},
        {"name": "ATOMIST_GOAL_UNIQUE_NAME", "value": goal.unique_name},
        {"name": "ATOMIST_CORRELATION_ID", "value": correlation_id or ""},
        {"name": "ATOMIST_ISOLATED_GOAL", "value": "true"},
    ]
    return [e for e in env if e["value"]]


def add_service_specs(job: Dict[str, Any], goal: Goal) -> None:
    """
    Add containers, init containers and volumes of Kubernetes service specs
    found in the goal data to the job pod.
    """
    services = goal.data_dict().get(SERVICE_DATA_KEY) or {}
    pod = job["spec"]["template"]["spec"]
    for name, service in services.items():
        if not isinstance(service, dict) or service.get("type") != K8S_SERVICE_TYPE:
            continue
        spec = service.get("spec") or {}
        logger.debug("k8s_service_added", goal=goal.unique_name, service=name)

        containers = spec.get("container") or []
        pod["containers"].extend(containers if isinstance(containers, list) else [containers])

        init = spec.get("initContainer") or []
        pod["initContainers"] = (init if isinstance(init, list) else [init]) + (pod.get("initContainers") or [])

        volumes = spec.get("volume") or []
        pod["volumes"] = (pod.get("volumes") or []) + (volumes if isinstance(volumes, list) else [volumes])

        mounts = spec.get("volumeMount") or []
        main = pod["containers"][0]
        main["volumeMounts"] = (main.get("volumeMounts") or []) + (mounts if isinstance(mounts, list) else [mounts])


def rewrite_cache_path(job: Dict[str, Any], cache_path: str, workspace_id: Optional[str]) -> None:
    """Scope host path cache volumes by workspace."""
    if not workspace_id:
        return
    pod = job["spec"]["template"]["spec"]
    names = {
        m["name"]
        for c in pod.get("containers") or []
        for m in c.get("volumeMounts") or []
        if m.get("mountPath") == cache_path
    }
    for volume in pod.get("volumes") or []:
        host_path = volume.get("hostPath") or {}
        path = host_path.get("path")
        if volume.get("name") not in names or not path or path.rstrip("/").endswith(workspace_id):
            continue
        host_path["path"] = f"{path}{workspace_id}" if path.endswith("/") else f"{path}/{workspace_id}"


def create_job_spec(
    pod_spec: Dict[str, Any],
    namespace: str,
    goal: Goal,
    settings: Settings,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a batch/v1 Job executing `goal` from the parent pod spec."""
    pod = copy.deepcopy(pod_spec["spec"])
    name = k8s_job_name(pod_spec, goal)

    # Prefer nodes already running jobs of the same goal set
    pod["affinity"] = {
        "podAffinity": {
            "preferredDuringSchedulingIgnoredDuringExecution": [
                {
                    "weight": 100,
                    "podAffinityTerm": {
                        "labelSelector": {
                            "matchExpressions": [
                                {"key": "goalSetId", "operator": "In", "values": [goal.goal_set_id]},
                            ],
                        },
                        "topologyKey": "kubernetes.io/hostname",
                    },
                },
            ],
        },
    }
    pod.pop("nodeName", None)
    pod["restartPolicy"] = "Never"

    container = pod["containers"][0]
    container["name"] = name
    container["env"] = (container.get("env") or []) + k8s_job_env(pod_spec, goal, settings, correlation_id)
    container.pop("livenessProbe", None)
    container.pop("readinessProbe", None)

    labels = {
        "goalSetId": goal.goal_set_id,
        "goalId": goal_id(goal),
        "creator": sanitize_name(settings.registration_name),
        "workspaceId": settings.workspace_id,
    }
    labels = {k: v for k, v in labels.items() if v}
    detail = {
        "sdm": {"name": settings.registration_name, "version": settings.registration_version},
        "goal": {"goalId": goal_id(goal), "goalSetId": goal.goal_set_id, "uniqueName": goal.unique_name},
    }

    job = {
        "kind": "Job",
        "apiVersion": "batch/v1",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels,
            "annotations": {SDM_ANNOTATION: json.dumps(detail)},
        },
        "spec": {
            "backoffLimit": 0,
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": pod,
            },
        },
    }
    add_service_specs(job, goal)
    rewrite_cache_path(job, settings.cache_path, settings.workspace_id)
    return job


class KubernetesGoalScheduler(GoalScheduler):
    """
    Schedules goals as Kubernetes jobs.

    Args:
        api: Kubernetes API client (from settings by default)
        settings: Runtime settings
        isolate_all: Schedule every goal, isolated or not
    """

    def __init__(
        self,
        api: Optional[KubernetesApi] = None,
        settings: Optional[Settings] = None,
        isolate_all: bool = False,
    ):
        self._api = api
        self.settings = settings or default_settings
        self.isolate_all = isolate_all
        self.pod_spec: Optional[Dict[str, Any]] = None

    @property
    def api(self) -> KubernetesApi:
        if self._api is None:
            self._api = KubernetesApi.from_settings(self.settings)
        return self._api

    @property
    def pod_name(self) -> str:
        return self.settings.pod_name or socket.gethostname()

    @property
    def namespace(self) -> str:
        return self.settings.pod_namespace or "default"

    def supports(self, goal: Goal, isolated: bool = False) -> bool:
        scheduler = self.settings.goal_scheduler
        return not self.settings.isolated_goal and (
            ((isolated or self.isolate_all) and is_configured_in_env("kubernetes", value=scheduler))
            or is_configured_in_env("kubernetes-all", value=scheduler)
        )

    def parent_pod(self) -> Dict[str, Any]:
        """
        Spec of the pod this orchestrator runs in, read once.

        Raises:
            KubernetesApiError: The pod could not be read
        """
        if self.pod_spec is None:
            self.pod_spec = self.api.read_pod(self.namespace, self.pod_name)
        return self.pod_spec

    def schedule(self, invocation: GoalInvocation) -> ExecuteGoalResult:
        goal = invocation.goal
        try:
            pod_spec = self.parent_pod()
        except DeliveryError as e:
            message = f"Failed to obtain parent pod spec from k8s: {e}"
            logger.error("k8s_parent_pod_failed", goal=goal.unique_name, error=str(e))
            return ExecuteGoalResult(code=1, message=message, description=message)

        job = create_job_spec(pod_spec, self.namespace, goal, self.settings, invocation.correlation_id)
        namespace, name = job["metadata"]["namespace"], job["metadata"]["name"]

        invocation.progress_log.write("/--")
        invocation.progress_log.write(
            f"Scheduling k8s job '{namespace}:{name}' for goal '{goal.name} ({goal.unique_name})'"
        )
        invocation.progress_log.write("\\--")

        try:
            if self.api.read_job(namespace, name) is not None:
                logger.info("k8s_job_exists_deleting", job=name, namespace=namespace, goal=goal.unique_name)
                self.api.delete_job(namespace, name)
            created = self.api.create_job(namespace, job)
        except KubernetesApiError as e:
            message = f"Failed to schedule k8s job '{namespace}:{name}' for goal '{goal.unique_name}'"
            logger.error("k8s_job_schedule_failed", job=name, namespace=namespace, goal=goal.unique_name,
                         error=str(e))
            return ExecuteGoalResult(code=1, message=f"{message}: {e}", description=message)

        logger.info(
            "k8s_job_scheduled",
            job=name,
            namespace=namespace,
            goal=goal.unique_name,
            goal_set_id=goal.goal_set_id,
            status=(created or {}).get("status"),
        )
        invocation.progress_log.flush()
        return ExecuteGoalResult(code=0, message=f"Scheduled k8s job '{namespace}:{name}'")


@dataclass
class ExpiringJob:
    deadline: float
    name: str
    namespace: str


class KubernetesJobCleanup:
    """
    Goal completion listener deleting jobs of completed goals after a TTL.

    Args:
        api: Kubernetes API client (from settings by default)
        settings: Runtime settings
        ttl: Seconds a completed job is kept
        interval: Seconds between sweeps
        clock: Time source
    """

    def __init__(
        self,
        api: Optional[KubernetesApi] = None,
        settings: Optional[Settings] = None,
        ttl: Optional[float] = None,
        interval: Optional[float] = None,
        clock=time.time,
    ):
        self._api = api
        self.settings = settings or default_settings
        self.ttl = ttl if ttl is not None else self.settings.k8s_job_ttl_seconds
        self.interval = interval if interval is not None else self.settings.k8s_job_ttl_check_interval_seconds
        self.clock = clock
        self._jobs: Dict[str, ExpiringJob] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def api(self) -> KubernetesApi:
        if self._api is None:
            self._api = KubernetesApi.from_settings(self.settings)
        return self._api

    @property
    def pending(self) -> List[str]:
        with self._lock:
            return [job.name for job in self._jobs.values()]

    def __call__(self, goal: Goal) -> None:
        """Remember the jobs of a completed goal."""
        if goal.state == GoalState.IN_PROCESS:
            return

        creator = sanitize_name(self.settings.registration_name)
        selector = f"goalSetId={goal.goal_set_id},creator={creator}"
        try:
            jobs = self.api.list_jobs(self.settings.pod_namespace or "default", selector)
        except DeliveryError as e:
            logger.warning("k8s_job_list_failed", goal_set_id=goal.goal_set_id, error=str(e))
            return

        deadline = self.clock() + self.ttl
        for job in jobs:
            metadata = job.get("metadata") or {}
            if _annotated_unique_name(metadata) != goal.unique_name:
                continue
            logger.debug("k8s_job_expiring", job=metadata.get("name"), goal=goal.unique_name)
            with self._lock:
                self._jobs[metadata.get("uid") or metadata["name"]] = ExpiringJob(
                    deadline=deadline, name=metadata["name"], namespace=metadata.get("namespace") or "default"
                )

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="k8s-job-cleanup", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.sweep_once()

    def sweep_once(self) -> List[str]:
        """
        Delete every expired job and its pods.

        Returns:
            Names of the jobs removed from the cache
        """
        now = self.clock()
        with self._lock:
            expired = [(uid, job) for uid, job in self._jobs.items() if job.deadline <= now]

        removed = []
        for uid, job in expired:
            logger.info("k8s_job_deleting", job=job.name, namespace=job.namespace)
            self._delete_job(job)
            self._delete_pods(job)
            with self._lock:
                self._jobs.pop(uid, None)
            removed.append(job.name)
        return removed

    def _delete_job(self, job: ExpiringJob) -> None:
        try:
            if self.api.read_job(job.namespace, job.name) is None:
                return
            self.api.delete_job(job.namespace, job.name, propagation_policy="Foreground")
        except DeliveryError as e:
            logger.warning("k8s_job_delete_failed", job=job.name, namespace=job.namespace, error=str(e))

    def _delete_pods(self, job: ExpiringJob) -> None:
        try:
            pods = self.api.list_pods(job.namespace, f"job-name={job.name}")
        except DeliveryError as e:
            logger.warning("k8s_job_pods_list_failed", job=job.name, namespace=job.namespace, error=str(e))
            return
        for pod in pods:
            metadata = pod.get("metadata") or {}
            try:
                self.api.delete_pod(metadata.get("namespace") or job.namespace, metadata["name"])
            except DeliveryError as e:
                # Pod may be gone already
                logger.debug("k8s_pod_delete_failed", pod=metadata.get("name"), error=str(e))


def _annotated_unique_name(metadata: Dict[str, Any]) -> Optional[str]:
    raw = (metadata.get("annotations") or {}).get(SDM_ANNOTATION)
    if not raw:
        return None
    try:
        return json.loads(raw).get("goal", {}).get("uniqueName")
    except (ValueError, AttributeError):
        return None


def namespace_from_service_account(path: str = "/var/run/secrets/kubernetes.io/serviceaccount/namespace") -> str:
    """Namespace of the running pod, "default" outside a cluster."""
    if os.path.exists(path):
        with open(path, encoding="utf-8") as f:
            return f.read().strip() or "default"
    return "default"
