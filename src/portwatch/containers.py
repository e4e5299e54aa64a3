"""Docker container lookup for listening processes."""

import logging
import subprocess
from dataclasses import dataclass

from portwatch.exceptions import KillError

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ContainerInfo:
    container_id: str
    container_name: str


def parse_docker_ps(output: str) -> list[str]:
    """Container ids from ``docker ps --format '{{.ID}}\\t{{.Names}}'``."""
    ids = []
    for line in output.splitlines():
        container_id = line.split("\t", 1)[0].strip()
        if container_id and container_id != "CONTAINER":
            ids.append(container_id)
    return ids


def parse_docker_top(output: str) -> set[int]:
    """Host pids listed by ``docker top`` (second column, header skipped)."""
    pids = set()
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            pids.add(int(parts[1]))
        except ValueError:
            continue
    return pids


class DockerInspector:
    """Maps host pids to containers and stops containers via the docker CLI."""

    def __init__(self, docker_bin: str = "docker", logger: logging.Logger | None = None) -> None:
        self._docker = docker_bin
        self._log = logger or log

    def _run(self, *args: str) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                [self._docker, *args], capture_output=True, text=True, timeout=15
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            self._log.debug("docker %s failed: %s", args[0], e)
            return None

    def container_for_pid(self, pid: int) -> ContainerInfo | None:
        ps = self._run("ps", "--format", "{{.ID}}\t{{.Names}}")
        if ps is None or ps.returncode != 0:
            return None
        for container_id in parse_docker_ps(ps.stdout):
            top = self._run("top", container_id)
            if top is None or top.returncode != 0:
                continue
            if pid in parse_docker_top(top.stdout):
                return ContainerInfo(container_id, self.container_name(container_id))
        return None

    def container_name(self, container_id: str) -> str:
        result = self._run("inspect", "--format", "{{.Name}}", container_id)
        if result is None or result.returncode != 0:
            return container_id
        return result.stdout.strip().lstrip("/") or container_id

    def stop_container(self, container_id: str, pid: int = 0) -> None:
        """
        Stop a container, force removing it when a graceful stop fails.

        Raises:
            KillError: If neither ``docker stop`` nor ``docker rm -f`` worked.
        """
        self._log.info("Stopping Docker container %s", container_id)
        result = self._run("stop", container_id)
        if result is not None and result.returncode == 0:
            self._log.info("Docker container %s stopped gracefully", container_id)
            return

        self._log.info("Graceful stop failed, force removing container %s", container_id)
        result = self._run("rm", "-f", container_id)
        if result is not None and result.returncode == 0:
            self._log.info("Docker container %s force removed", container_id)
            return
        reason = result.stderr.strip() if result is not None else "docker not available"
        raise KillError(pid, f"could not remove container {container_id}: {reason}")
