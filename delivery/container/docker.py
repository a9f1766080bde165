# delivery/container/docker.py
"""
Docker container goal runner.

Runs every container of a goal on a private Docker network against a
private staging copy of the project:

1. resolve the spec and copy the project into a staging directory
2. create the network and start all containers
3. wait for the main container only, then kill the sidecars
4. remove the network and mirror the staging directory back

Cleanup of containers, network and staging directory happens on every
path; only copy-back failures and main container failures fail the goal.
"""

import logging
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from typing import IO, List, Optional, Tuple
from uuid import uuid4

from .spec import CONTAINER_PROJECT_HOME, ContainerRegistration, GoalContainer, GoalContainerSpec, resolve_spec
from .util import container_name, copy_project, goal_env_vars, log_and_write, name_suffix, network_name
from ..errors import ContainerSpecError
from ..fulfillment.context import ExecuteGoalResult, GoalInvocation
from ..fulfillment.progress import ProgressLog
from ..logging import get_logger
from ..settings import settings

logger = get_logger(__name__)


@dataclass
class CommandResult:
    """Outcome of a finished docker command."""
    code: int
    error: Optional[str] = None


class SpawnedProcess:
    """Running docker client process whose output is pumped into a progress log."""

    def __init__(self, process: subprocess.Popen, pump: threading.Thread):
        self.process = process
        self.pump = pump

    def wait(self, timeout: Optional[float] = None) -> int:
        code = self.process.wait(timeout=timeout)
        self.pump.join()
        return code

    def kill(self) -> None:
        if self.process.poll() is None:
            self.process.kill()


def _pump(stream: IO[str], progress_log: ProgressLog) -> None:
    for line in stream:
        progress_log.write(line.rstrip("\n"))
    stream.close()


class SubprocessRunner:
    """Runs docker CLI commands."""

    def __init__(self, binary: Optional[str] = None):
        self.binary = binary or settings.docker_binary

    def spawn(self, args: List[str], progress_log: ProgressLog) -> SpawnedProcess:
        """
        Start a docker command without waiting for it.

        Raises:
            OSError: The docker binary could not be started
        """
        progress_log.write(f"{self.binary} {' '.join(args)}")
        process = subprocess.Popen(
            [self.binary] + args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
        pump = threading.Thread(target=_pump, args=(process.stdout, progress_log), daemon=True)
        pump.start()
        return SpawnedProcess(process, pump)

    def run(self, args: List[str], progress_log: ProgressLog) -> CommandResult:
        """Run a docker command to completion."""
        try:
            return CommandResult(code=self.spawn(args, progress_log).wait())
        except OSError as e:
            return CommandResult(code=1, error=str(e))


def container_docker_options(container: GoalContainer, spec: GoalContainerSpec) -> List[str]:
    """
    Container specific `docker run` options: entrypoint, env, ports, volumes.

    Raises:
        ContainerSpecError: A volume mount references an undeclared volume
    """
    options: List[str] = []
    if container.command:
        options.append(f"--entrypoint={' '.join(container.command)}")
    options.extend(f"--env={e.name}={e.value or ''}" for e in container.env)
    options.extend(f"-p={p.container_port}" for p in container.ports)

    volumes = {v.name: v for v in spec.volumes}
    for mount in container.volume_mounts:
        volume = volumes.get(mount.name)
        if volume is None or volume.host_path is None:
            raise ContainerSpecError(
                f"Container '{container.name}' references volume '{mount.name}' which is not "
                f"provided in goal volumes: {sorted(volumes)}"
            )
        options.append(f"--volume={volume.host_path.path}:{mount.mount_path}")
    return options


class DockerContainerRunner:
    """
    Executes container goals with the docker CLI.

    Args:
        runner: docker command runner (SubprocessRunner by default)
        kill_timeout: Seconds to wait for a killed sidecar to exit
        staging_root: Parent directory for staging copies
    """

    def __init__(
        self,
        runner: Optional[SubprocessRunner] = None,
        kill_timeout: Optional[float] = None,
        staging_root: Optional[str] = None,
    ):
        self.runner = runner or SubprocessRunner()
        self.kill_timeout = kill_timeout if kill_timeout is not None else settings.docker_kill_timeout_seconds
        self.staging_root = staging_root

    def execute(self, registration: ContainerRegistration, invocation: GoalInvocation) -> ExecuteGoalResult:
        goal = invocation.goal
        progress_log = invocation.progress_log

        try:
            spec = resolve_spec(registration, invocation.project_dir, goal)
        except ContainerSpecError as e:
            log_and_write(logger, logging.ERROR, "container_spec_invalid", str(e), progress_log,
                          goal=goal.unique_name)
            return ExecuteGoalResult(code=1, message=str(e))

        staging = tempfile.mkdtemp(prefix="sdm-tmp-", suffix=name_suffix(goal), dir=self.staging_root)
        try:
            copy_project(invocation.project_dir, staging)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            message = f"Failed to copy project for goal execution: {e}"
            log_and_write(logger, logging.ERROR, "container_project_copy_failed", message, progress_log,
                          goal=goal.unique_name)
            return ExecuteGoalResult(code=1, message=message)

        network = network_name(goal, uuid4().hex)
        created = self.runner.run(["network", "create", network], progress_log)
        if created.code:
            shutil.rmtree(staging, ignore_errors=True)
            message = f"Failed to create Docker network '{network}'" + (
                f": {created.error}" if created.error else "")
            log_and_write(logger, logging.ERROR, "docker_network_create_failed", message, progress_log,
                          goal=goal.unique_name)
            return ExecuteGoalResult(code=created.code, message=message)

        try:
            failures, launched = self._run_containers(spec, registration, invocation, staging, network)
            message = "; ".join(failures) if failures else "Successfully completed container job"

            removed = self.runner.run(["network", "rm", network], progress_log)
            if removed.code:
                msg = f"Failed to delete Docker network '{network}'" + (
                    f": {removed.error}" if removed.error else "")
                log_and_write(logger, logging.ERROR, "docker_network_rm_failed", msg, progress_log,
                              goal=goal.unique_name)
                message += f"; {msg}"

            if launched:
                try:
                    copy_project(staging, invocation.project_dir)
                except OSError as e:
                    msg = f"Failed to update project after goal execution: {e}"
                    log_and_write(logger, logging.ERROR, "container_project_update_failed", msg, progress_log,
                                  goal=goal.unique_name)
                    failures.append(msg)
                    message = "; ".join(failures)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        return ExecuteGoalResult(code=len(failures), message=message)

    def _run_containers(
        self,
        spec: GoalContainerSpec,
        registration: ContainerRegistration,
        invocation: GoalInvocation,
        staging: str,
        network: str,
    ) -> Tuple[List[str], bool]:
        """
        Launch all containers and wait for the main one.

        Returns:
            (failures, launched) where launched is False if any container
            failed to launch
        """
        goal = invocation.goal
        progress_log = invocation.progress_log
        env_options = [f"--env={e['name']}={e['value']}" for e in goal_env_vars(goal)]

        failures: List[str] = []
        spawned: List[Tuple[str, SpawnedProcess]] = []
        for index, container in enumerate(spec.containers):
            name = container_name(goal, container.name)
            try:
                args = [
                    "run",
                    "-t",
                    "--rm",
                    f"--name={name}",
                    f"--volume={staging}:{CONTAINER_PROJECT_HOME}",
                    f"--network={network}",
                    f"--network-alias={container.name}",
                ]
                if index == 0:
                    args.append(f"--workdir={CONTAINER_PROJECT_HOME}")
                args += container_docker_options(container, spec)
                args += registration.docker_options
                args += env_options
                args += [container.image] + container.args
                spawned.append((name, self.runner.spawn(args, progress_log)))
            except (ContainerSpecError, OSError) as e:
                msg = f"Failed to start Docker container '{name}': {e}"
                log_and_write(logger, logging.ERROR, "docker_container_start_failed", msg, progress_log,
                              goal=goal.unique_name, container=name)
                failures.append(msg)
                break

        if failures:
            for name, process in spawned:
                self._stop(name, process, progress_log)
            return failures, False

        main_name, main_process = spawned[0]
        try:
            code = main_process.wait()
            if code:
                msg = f"Docker container '{main_name}' failed with exit code {code}"
                log_and_write(logger, logging.ERROR, "docker_container_failed", msg, progress_log,
                              goal=goal.unique_name, container=main_name, exit_code=code)
                failures.append(msg)
        except OSError as e:
            msg = f"Failed to execute Docker container '{main_name}': {e}"
            log_and_write(logger, logging.ERROR, "docker_container_failed", msg, progress_log,
                          goal=goal.unique_name, container=main_name)
            failures.append(msg)

        for name, process in spawned[1:]:
            self._stop(name, process, progress_log)

        return failures, True

    def _stop(self, name: str, process: SpawnedProcess, progress_log: ProgressLog) -> None:
        """Kill a container and reap its docker client. Never fails the goal."""
        killed = self.runner.run(["kill", name], progress_log)
        if killed.code:
            logger.warning("docker_kill_failed", container=name, code=killed.code, error=killed.error)
        try:
            process.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("docker_client_kill", container=name)
            process.kill()
            process.wait()


def docker_executor(registration: ContainerRegistration, runner: Optional[DockerContainerRunner] = None):
    """Goal executor running a container registration on Docker."""
    docker = runner or DockerContainerRunner()

    def execute(invocation: GoalInvocation) -> ExecuteGoalResult:
        return docker.execute(registration, invocation)

    return execute
