# tests/test_kubernetes.py
"""
Test Kubernetes scheduling, job cleanup and the Kubernetes container runner.

The API server is simulated with httpx.MockTransport; runner tests use a
small fake API object.
"""

import json
import os
from dataclasses import replace

import httpx
import pytest

from delivery.container.k8s import (
    HOME_VOLUME_NAME,
    INIT_CONTAINER_NAME,
    KubernetesContainerRunner,
    k8s_fulfillment_callback,
    k8s_service_spec,
)
from delivery.container.k8s_client import KubernetesApi
from delivery.container.k8s_scheduler import (
    K8S_SERVICE_TYPE,
    SDM_ANNOTATION,
    SERVICE_DATA_KEY,
    KubernetesGoalScheduler,
    KubernetesJobCleanup,
    create_job_spec,
    goal_id,
    is_configured_in_env,
    k8s_job_name,
)
from delivery.container.spec import CONTAINER_PROJECT_HOME, ContainerRegistration
from delivery.errors import ContainerSpecError, KubernetesApiError
from delivery.fulfillment.context import GoalInvocation
from delivery.fulfillment.progress import ProgressLog
from delivery.goals.models import GoalState

from conftest import GOAL_SET_ID, make_goal

POD_NAME = "goal-delivery-6d8f9c-abcde"


def parent_pod():
    return {
        "metadata": {"name": POD_NAME, "namespace": "sdm"},
        "spec": {
            "nodeName": "node-1",
            "containers": [{
                "name": "goal-delivery",
                "image": "atomist/goal-delivery:0.1.0",
                "env": [{"name": "DATABASE_URL", "value": "postgresql://db/goals"}],
                "livenessProbe": {"httpGet": {"path": "/health", "port": 8000}},
                "readinessProbe": {"httpGet": {"path": "/health", "port": 8000}},
            }],
        },
    }


def registration():
    return ContainerRegistration(
        name="build",
        containers=[
            {"name": "maven", "image": "maven:3", "args": ["mvn", "package"]},
            {"name": "postgres", "image": "postgres:13"},
        ],
    )


class MockApiServer:
    """Minimal Kubernetes API server for httpx.MockTransport."""

    def __init__(self):
        self.jobs = {}
        self.requests = []
        self.fail_create = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path
        if path == f"/api/v1/namespaces/sdm/pods/{POD_NAME}":
            return httpx.Response(200, json=parent_pod())
        if path.startswith("/apis/batch/v1/namespaces/sdm/jobs/"):
            name = path.rsplit("/", 1)[1]
            if request.method == "GET":
                if name in self.jobs:
                    return httpx.Response(200, json=self.jobs[name])
                return httpx.Response(404, json={"reason": "NotFound"})
            if request.method == "DELETE":
                self.jobs.pop(name, None)
                return httpx.Response(200, json={"status": "Success"})
        if path == "/apis/batch/v1/namespaces/sdm/jobs" and request.method == "POST":
            if self.fail_create:
                return httpx.Response(422, json={"reason": "Invalid"})
            job = json.loads(request.content)
            self.jobs[job["metadata"]["name"]] = job
            return httpx.Response(201, json={**job, "status": {}})
        return httpx.Response(404, json={"reason": "NotFound"})


@pytest.fixture
def api_server():
    return MockApiServer()


@pytest.fixture
def api(api_server):
    client = KubernetesApi("https://k8s.test", transport=httpx.MockTransport(api_server), wait_min=0, wait_max=0)
    yield client
    client.close()


@pytest.fixture
def k8s_settings(settings):
    return replace(settings, goal_scheduler="kubernetes", cache_path="/opt/data")


@pytest.fixture
def goal():
    return make_goal("build#goals.py:12", state=GoalState.REQUESTED)


def invocation(goal, settings, project_dir=""):
    return GoalInvocation(
        goal=goal,
        project_dir=project_dir,
        progress_log=ProgressLog(goal.unique_name, goal.goal_set_id),
        settings=settings,
    )


class TestConfiguration:
    """Tests for goal scheduler configuration."""

    def test_plain_value(self):
        assert is_configured_in_env("kubernetes", value="kubernetes")
        assert not is_configured_in_env("kubernetes", value="docker")
        assert not is_configured_in_env("kubernetes", value="")

    def test_json_values(self):
        assert is_configured_in_env("kubernetes", value='["docker", "kubernetes"]')
        assert is_configured_in_env("kubernetes-all", value='"kubernetes-all"')
        assert not is_configured_in_env("kubernetes", value='["docker"]')

    def test_scheduler_supports(self, k8s_settings, goal):
        """Only isolated goals are scheduled unless kubernetes-all is configured."""
        scheduler = KubernetesGoalScheduler(settings=k8s_settings)
        assert scheduler.supports(goal, isolated=True)
        assert not scheduler.supports(goal, isolated=False)

        everything = KubernetesGoalScheduler(settings=replace(k8s_settings, goal_scheduler="kubernetes-all"))
        assert everything.supports(goal, isolated=False)

        worker = KubernetesGoalScheduler(settings=replace(k8s_settings, isolated_goal=True))
        assert not worker.supports(goal, isolated=True)


class TestJobSpec:
    """Tests for building goal jobs from the parent pod."""

    def test_job_name(self, goal):
        assert k8s_job_name(parent_pod(), goal) == f"goal-delivery-job-{GOAL_SET_ID[:7]}-build"

    def test_job_name_truncated(self):
        """Names are cut to 63 characters without trailing separators."""
        goal = make_goal("x" * 36 + "-release-candidate")

        name = k8s_job_name(parent_pod(), goal)

        assert len(name) <= 63
        assert name.endswith("x")

    def test_job_spec(self, goal, k8s_settings):
        """The job runs the parent pod container in isolated goal mode."""
        job = create_job_spec(parent_pod(), "sdm", goal, k8s_settings, correlation_id="corr-1")

        assert job["kind"] == "Job"
        assert job["apiVersion"] == "batch/v1"
        assert job["spec"]["backoffLimit"] == 0
        pod = job["spec"]["template"]["spec"]
        assert pod["restartPolicy"] == "Never"
        assert "nodeName" not in pod
        container = pod["containers"][0]
        assert container["name"] == job["metadata"]["name"]
        assert "livenessProbe" not in container and "readinessProbe" not in container
        env = {e["name"]: e["value"] for e in container["env"]}
        assert env["DATABASE_URL"] == "postgresql://db/goals"
        assert env["ATOMIST_ISOLATED_GOAL"] == "true"
        assert env["ATOMIST_GOAL_SET_ID"] == GOAL_SET_ID
        assert env["ATOMIST_GOAL_UNIQUE_NAME"] == "build#goals.py:12"
        assert env["ATOMIST_CORRELATION_ID"] == "corr-1"
        assert env["ATOMIST_GOAL_TEAM"] == "T29E48P34"

    def test_labels_and_annotation(self, goal, k8s_settings):
        job = create_job_spec(parent_pod(), "sdm", goal, k8s_settings)

        labels = job["metadata"]["labels"]
        assert labels == {
            "goalSetId": GOAL_SET_ID,
            "goalId": goal_id(goal),
            "creator": "goal-delivery",
            "workspaceId": "T29E48P34",
        }
        assert job["spec"]["template"]["metadata"]["labels"] == labels
        detail = json.loads(job["metadata"]["annotations"][SDM_ANNOTATION])
        assert detail["goal"]["uniqueName"] == goal.unique_name
        affinity = job["spec"]["template"]["spec"]["affinity"]["podAffinity"]
        term = affinity["preferredDuringSchedulingIgnoredDuringExecution"][0]["podAffinityTerm"]
        assert term["labelSelector"]["matchExpressions"][0]["values"] == [GOAL_SET_ID]

    def test_parent_pod_untouched(self, goal, k8s_settings):
        pod = parent_pod()

        create_job_spec(pod, "sdm", goal, k8s_settings)

        assert pod == parent_pod()

    def test_cache_path_scoped_by_workspace(self, goal, k8s_settings):
        """Host path volumes mounted at the cache path get the workspace appended."""
        pod = parent_pod()
        pod["spec"]["containers"][0]["volumeMounts"] = [{"name": "cache", "mountPath": "/opt/data"}]
        pod["spec"]["volumes"] = [{"name": "cache", "hostPath": {"path": "/mnt/cache/"}}]

        job = create_job_spec(pod, "sdm", goal, k8s_settings)

        [volume] = job["spec"]["template"]["spec"]["volumes"]
        assert volume["hostPath"]["path"] == "/mnt/cache/T29E48P34"


class TestServiceSpec:
    """Tests for container goals running inside the goal job."""

    def test_service_spec(self, goal, k8s_settings):
        """Goal containers, init container and home volume are described."""
        service = k8s_service_spec(registration(), goal, parent_pod(), k8s_settings)

        assert service["type"] == K8S_SERVICE_TYPE
        main, sidecar = service["spec"]["container"]
        assert main["workingDir"] == CONTAINER_PROJECT_HOME
        assert "workingDir" not in sidecar
        assert main["env"][0]["name"] == "ATOMIST_SLUG"
        init = service["spec"]["initContainer"]
        assert init["name"] == INIT_CONTAINER_NAME
        assert init["image"] == "atomist/goal-delivery:0.1.0"
        assert {"name": "ATOMIST_ISOLATED_GOAL_INIT", "value": "true"} in init["env"]
        assert service["spec"]["volume"] == [{"name": HOME_VOLUME_NAME, "emptyDir": {}}]

    def test_no_containers(self, goal, k8s_settings):
        with pytest.raises(ContainerSpecError, match="No containers defined in K8sGoalContainerSpec"):
            k8s_service_spec(ContainerRegistration(name="build"), goal, parent_pod(), k8s_settings)

    def test_callback_adds_service_to_job(self, api, goal, k8s_settings):
        """The fulfillment callback stores the service spec; the job picks it up."""
        scheduler = KubernetesGoalScheduler(api=api, settings=k8s_settings)
        callback = k8s_fulfillment_callback(registration(), scheduler)

        prepared = callback(goal)
        job = create_job_spec(parent_pod(), "sdm", prepared, k8s_settings)

        assert prepared.data_dict()[SERVICE_DATA_KEY]["build"]["type"] == K8S_SERVICE_TYPE
        pod = job["spec"]["template"]["spec"]
        assert [c["name"] for c in pod["containers"]][1:] == ["maven", "postgres"]
        assert pod["initContainers"][0]["name"] == INIT_CONTAINER_NAME
        assert {"name": HOME_VOLUME_NAME, "emptyDir": {}} in pod["volumes"]
        assert {"mountPath": CONTAINER_PROJECT_HOME, "name": HOME_VOLUME_NAME} in pod["containers"][0]["volumeMounts"]


class TestKubernetesApi:
    """Tests for the Kubernetes API client."""

    def test_missing_job_is_none(self, api):
        assert api.read_job("sdm", "nope") is None

    def test_transient_errors_are_retried(self):
        """5xx responses are retried before giving up."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"metadata": {"name": "p"}})

        client = KubernetesApi("https://k8s.test", transport=httpx.MockTransport(handler), wait_min=0, wait_max=0)

        assert client.read_pod("sdm", "p")["metadata"]["name"] == "p"
        assert len(calls) == 3

    def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(403, json={"reason": "Forbidden"})

        client = KubernetesApi("https://k8s.test", transport=httpx.MockTransport(handler), wait_min=0, wait_max=0)

        with pytest.raises(KubernetesApiError) as exc:
            client.read_pod("sdm", "p")
        assert exc.value.status_code == 403
        assert len(calls) == 1

    def test_exhausted_retries(self):
        client = KubernetesApi("https://k8s.test", transport=httpx.MockTransport(lambda r: httpx.Response(500)),
                               wait_min=0, wait_max=0)

        with pytest.raises(KubernetesApiError) as exc:
            client.list_jobs("sdm", "goalSetId=x")
        assert exc.value.status_code == 500

    def test_watch_pod_streams_events(self):
        events = [
            {"type": "ADDED", "object": {"metadata": {"name": "p"}}},
            {"type": "MODIFIED", "object": {"metadata": {"name": "p"}}},
        ]

        def handler(request):
            assert request.url.params["watch"] == "true"
            assert request.url.params["fieldSelector"] == "metadata.name=p"
            return httpx.Response(200, content="\n".join(json.dumps(e) for e in events).encode())

        client = KubernetesApi("https://k8s.test", transport=httpx.MockTransport(handler))

        assert [e["type"] for e in client.watch_pod("sdm", "p")] == ["ADDED", "MODIFIED"]

    def test_bearer_token(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200, json={"items": []})

        client = KubernetesApi("https://k8s.test", token="t0k3n", transport=httpx.MockTransport(handler))
        client.list_pods("sdm", "job-name=x")

        assert seen == ["Bearer t0k3n"]


class TestKubernetesGoalScheduler:
    """Tests for scheduling goal jobs."""

    def test_schedule_creates_job(self, api, api_server, goal, k8s_settings):
        scheduler = KubernetesGoalScheduler(api=api, settings=k8s_settings)

        result = scheduler.schedule(invocation(goal, k8s_settings))

        name = f"goal-delivery-job-{GOAL_SET_ID[:7]}-build"
        assert result.code == 0
        assert result.message == f"Scheduled k8s job 'sdm:{name}'"
        assert name in api_server.jobs

    def test_existing_job_is_replaced(self, api, api_server, goal, k8s_settings):
        name = f"goal-delivery-job-{GOAL_SET_ID[:7]}-build"
        api_server.jobs[name] = {"metadata": {"name": name}}
        scheduler = KubernetesGoalScheduler(api=api, settings=k8s_settings)

        assert scheduler.schedule(invocation(goal, k8s_settings)).code == 0

        assert ("DELETE", f"/apis/batch/v1/namespaces/sdm/jobs/{name}") in api_server.requests

    def test_create_failure(self, api, api_server, goal, k8s_settings):
        api_server.fail_create = True
        scheduler = KubernetesGoalScheduler(api=api, settings=k8s_settings)

        result = scheduler.schedule(invocation(goal, k8s_settings))

        assert result.code == 1
        assert result.description.startswith("Failed to schedule k8s job 'sdm:goal-delivery-job-")

    def test_parent_pod_failure(self, api, goal, k8s_settings):
        scheduler = KubernetesGoalScheduler(api=api, settings=replace(k8s_settings, pod_name="unknown"))

        result = scheduler.schedule(invocation(goal, k8s_settings))

        assert result.code == 1
        assert result.description.startswith("Failed to obtain parent pod spec from k8s")

    def test_parent_pod_read_once(self, api, api_server, goal, k8s_settings):
        scheduler = KubernetesGoalScheduler(api=api, settings=k8s_settings)

        scheduler.parent_pod()
        scheduler.parent_pod()

        assert api_server.requests.count(("GET", f"/api/v1/namespaces/sdm/pods/{POD_NAME}")) == 1


class FakeJobApi:
    """Job and pod endpoints used by the cleanup."""

    def __init__(self, jobs):
        self.jobs = jobs
        self.deleted_jobs = []
        self.deleted_pods = []
        self.selectors = []

    def list_jobs(self, namespace, label_selector):
        self.selectors.append(label_selector)
        return self.jobs

    def read_job(self, namespace, name):
        return {"metadata": {"name": name}}

    def delete_job(self, namespace, name, propagation_policy="Foreground"):
        self.deleted_jobs.append((name, propagation_policy))

    def list_pods(self, namespace, label_selector):
        return [{"metadata": {"name": f"{label_selector.split('=')[1]}-pod", "namespace": namespace}}]

    def delete_pod(self, namespace, name):
        self.deleted_pods.append(name)


def job_for(goal, name, uid):
    detail = {"goal": {"uniqueName": goal.unique_name, "goalSetId": goal.goal_set_id}}
    return {"metadata": {"name": name, "namespace": "sdm", "uid": uid,
                         "annotations": {SDM_ANNOTATION: json.dumps(detail)}}}


class TestKubernetesJobCleanup:
    """Tests for deleting jobs of completed goals."""

    def test_expired_jobs_are_deleted(self, k8s_settings):
        goal = make_goal("build", state=GoalState.SUCCESS)
        other = make_goal("test", state=GoalState.SUCCESS)
        api = FakeJobApi([job_for(goal, "job-build", "u1"), job_for(other, "job-test", "u2")])
        now = [1000.0]
        cleanup = KubernetesJobCleanup(api=api, settings=k8s_settings, ttl=60, interval=1, clock=lambda: now[0])

        cleanup(goal)

        assert api.selectors == [f"goalSetId={GOAL_SET_ID},creator=goal-delivery"]
        assert cleanup.pending == ["job-build"]
        assert cleanup.sweep_once() == []

        now[0] += 61
        assert cleanup.sweep_once() == ["job-build"]
        assert api.deleted_jobs == [("job-build", "Foreground")]
        assert api.deleted_pods == ["job-build-pod"]
        assert cleanup.pending == []

    def test_in_process_goals_ignored(self, k8s_settings):
        api = FakeJobApi([])
        cleanup = KubernetesJobCleanup(api=api, settings=k8s_settings)

        cleanup(make_goal("build", state=GoalState.IN_PROCESS))

        assert api.selectors == []

    def test_start_and_stop(self, k8s_settings):
        cleanup = KubernetesJobCleanup(api=FakeJobApi([]), settings=k8s_settings, interval=0.01)

        cleanup.start()
        cleanup.stop()

        assert cleanup._thread is None


class FakePodApi:
    """Pod endpoints used by the container runner."""

    def __init__(self, exit_code=0, started=True, logs=("Building...", "BUILD SUCCESS")):
        self.exit_code = exit_code
        self.started = started
        self.logs = list(logs)

    def _pod(self, state):
        return {"status": {"containerStatuses": [{"name": "maven", "state": state}]}}

    def read_pod(self, namespace, name):
        if not self.started:
            return self._pod({"waiting": {"reason": "ContainerCreating"}})
        return self._pod({"running": {"startedAt": "2024-01-01T00:00:00Z"}})

    def watch_pod(self, namespace, name):
        yield {"type": "MODIFIED", "object": self._pod({"running": {"startedAt": "2024-01-01T00:00:00Z"}})}
        yield {"type": "MODIFIED", "object": self._pod({"terminated": {"exitCode": self.exit_code}})}

    def follow_log(self, namespace, pod, container):
        yield from self.logs


class TestKubernetesContainerRunner:
    """Tests for running container goals inside the goal job."""

    @pytest.fixture
    def work_dir(self, tmp_path):
        path = tmp_path / "home"
        path.mkdir()
        return str(path)

    def runner(self, api, settings, work_dir):
        return KubernetesContainerRunner(api=api, settings=settings, poll_interval=0, log_grace=1, work_dir=work_dir)

    def test_init_copies_project(self, k8s_settings, work_dir, project_dir, goal):
        """The init container copies the project and leaves the goal in_process."""
        init = replace(k8s_settings, isolated_goal=True, isolated_goal_init=True)

        result = self.runner(FakePodApi(), init, work_dir).execute(
            registration(), invocation(goal, init, project_dir))

        assert result.state == GoalState.IN_PROCESS
        assert result.description == "Working: build"
        assert os.listdir(work_dir) == ["README.md"]

    def test_main_container_success(self, k8s_settings, work_dir, project_dir, goal):
        """The runner waits for the main container and copies results back."""
        worker = replace(k8s_settings, isolated_goal=True)
        with open(os.path.join(work_dir, "app.jar"), "w") as f:
            f.write("binary")
        inv = invocation(goal, worker, project_dir)

        result = self.runner(FakePodApi(), worker, work_dir).execute(registration(), inv)

        assert result.code == 0
        assert result.message == "Container 'maven' completed successfully"
        assert os.path.exists(os.path.join(project_dir, "app.jar"))
        assert "BUILD SUCCESS" in inv.progress_log.lines

    def test_main_container_failure(self, k8s_settings, work_dir, project_dir, goal):
        worker = replace(k8s_settings, isolated_goal=True)

        result = self.runner(FakePodApi(exit_code=2), worker, work_dir).execute(
            registration(), invocation(goal, worker, project_dir))

        assert result.code == 1
        assert result.message == "Container 'maven' failed: Container 'maven' exited with status 2"

    def test_container_never_starts(self, k8s_settings, work_dir, project_dir, goal):
        worker = replace(k8s_settings, isolated_goal=True, k8s_container_start_attempts=3)

        result = self.runner(FakePodApi(started=False), worker, work_dir).execute(
            registration(), invocation(goal, worker, project_dir))

        assert result.code == 1
        assert "failed to start within" in result.message

    def test_main_container_name_from_goal_data(self, k8s_settings, work_dir, project_dir, goal):
        """Without containers in the registration the stored service spec names the main container."""
        worker = replace(k8s_settings, isolated_goal=True)
        service = {"type": K8S_SERVICE_TYPE, "spec": {"container": [{"name": "maven", "image": "maven:3"}]}}
        goal = goal.with_data({SERVICE_DATA_KEY: {"build": service}})

        result = self.runner(FakePodApi(), worker, work_dir).execute(
            ContainerRegistration(name="build"), invocation(goal, worker, project_dir))

        assert result.code == 0
