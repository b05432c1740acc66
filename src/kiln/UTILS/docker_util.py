"""
Helpers over the Docker API client: networks, containers, files and images.
"""
import os
import re
import uuid
from typing import Dict, List, Optional, TextIO

import docker
from docker.errors import APIError, NotFound

from ..logger import logger
from .archive import read_first_file, tar_path
from .concurrency import ErrGroup
from .os_distribution import UNKNOWN_DISTRIBUTION, OSDistribution
from .streams import write_text

_NOT_DOCKER_ID = re.compile(r"[^a-zA-Z0-9]")
MAX_DOCKER_ID_LENGTH = 24
SYMLINK_MODE_BIT = 1 << 27


def short_id(length: int = 5) -> str:
    return uuid.uuid4().hex[:length]


def cleanup_docker_id(value: str) -> str:
    """Strips everything but alphanumerics and truncates to a usable daemon object name."""
    return _NOT_DOCKER_ID.sub("", value)[:MAX_DOCKER_ID_LENGTH]


def _read_cgroup(path: str) -> str:
    try:
        with open(path, "r") as f:
            return f.read()
    except FileNotFoundError:
        return ""


class ContainerStatus:
    def __init__(self, exists: bool = False, running: bool = False, exit_code: int = 0):
        self.exists = exists
        self.running = running
        self.exit_code = exit_code


class DockerUtil:
    """
    Thin wrapper over ``docker.APIClient`` used by the run engine.

    :param api: Low level API client; created from the environment when omitted.
    :param cgroup_content: Content of ``/proc/1/cgroup``; read from disk when None.
    :param docker_host: Value of DOCKER_HOST; taken from the environment when None.
    """
    def __init__(self, api=None, cgroup_content: Optional[str] = None, docker_host: Optional[str] = None):
        if api is None:
            api = docker.from_env().api
        self.api = api
        self.cgroup_content = _read_cgroup("/proc/1/cgroup") if cgroup_content is None else cgroup_content
        self.docker_host = os.environ.get("DOCKER_HOST", "") if docker_host is None else docker_host

    # Environment

    def is_running_in_docker(self) -> bool:
        return "docker" in self.cgroup_content or "kubepods" in self.cgroup_content

    def is_docker_host_remote(self) -> bool:
        host = self.docker_host
        return bool(host) and not host.lower().startswith("unix:")

    def current_container_id(self) -> str:
        for line in self.cgroup_content.splitlines():
            if "docker/" in line or "kubepods/" in line:
                parts = line.split(":")
                return parts[2].split("/")[-1][:12]
        raise RuntimeError(f"failed to detect current container's ID. cgroups contents:\n {self.cgroup_content}")

    # Networks

    def find_docker_networks_of(self, name_or_id: str) -> List[Dict]:
        """Networks the given container is attached to."""
        container = self.api.inspect_container(name_or_id)
        result = []
        for net in self.api.networks():
            network = self.api.inspect_network(net["Id"])
            for endpoint_id, endpoint in (network.get("Containers") or {}).items():
                if "/" + endpoint.get("Name", "") == container["Name"] or endpoint_id == container["Id"]:
                    result.append(network)
                    break
        if not result:
            raise RuntimeError(f"no networks found for container {container['Id']!r}")
        return result

    def find_self_docker_networks(self) -> List[Dict]:
        return self.find_docker_networks_of(self.current_container_id())

    def remove_network(self, network_id: str) -> None:
        """Disconnects every container from the network and removes it."""
        info = self.api.inspect_network(network_id, verbose=True)
        for endpoint in (info.get("Containers") or {}).values():
            try:
                self.api.disconnect_container_from_network(endpoint.get("Name"), network_id, force=True)
            except APIError as e:
                logger.debug("Failed to disconnect container from network", network=network_id, error=str(e))
        self.api.remove_network(network_id)

    # Containers

    def force_remove_container(self, container_id: str, timeout: int = 1) -> None:
        """Stops, kills and removes a container with its volumes. Stop and kill failures are ignored."""
        try:
            self.api.stop(container_id, timeout=timeout)
        except APIError:
            pass
        try:
            self.api.kill(container_id, signal="KILL")
        except APIError:
            pass
        self.api.remove_container(container_id, v=True, force=True)

    def _force_remove_quietly(self, container_id: str) -> None:
        try:
            self.force_remove_container(container_id)
        except APIError as e:
            logger.debug("Failed to remove temporary container", container=container_id, error=str(e))

    def get_container_status(self, container_id: str) -> ContainerStatus:
        try:
            info = self.api.inspect_container(container_id)
        except NotFound:
            return ContainerStatus()
        state = info.get("State") or {}
        return ContainerStatus(True, bool(state.get("Running")), int(state.get("ExitCode") or 0))

    def wait_until_container_exits(self, container_id: str) -> int:
        result = self.api.wait(container_id)
        return int(result.get("StatusCode", 0))

    def stream_container_logs_to(self, container_id: str, stdout: Optional[TextIO], stderr: Optional[TextIO]) -> None:
        """
        Follows the container's logs until it exits, draining stdout and stderr in parallel.
        """
        def drain(out: Optional[TextIO], **streams) -> None:
            for chunk in self.api.logs(container_id, stream=True, follow=True, **streams):
                write_text(out, chunk)

        with ErrGroup(max_workers=2) as group:
            group.go(drain, stdout, stdout=True, stderr=False)
            group.go(drain, stderr, stdout=False, stderr=True)

    def exec_in_container(self, container_id: str, command: str) -> str:
        """Runs ``/bin/sh -c command`` and returns its combined output."""
        exec_id = self.api.exec_create(container_id, ["/bin/sh", "-c", command], stdout=True, stderr=True)["Id"]
        output = self.api.exec_start(exec_id, tty=True)
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        result = self.api.exec_inspect(exec_id)
        if result.get("ExitCode"):
            raise RuntimeError(f"non-zero exit code for command {command!r} (running: {result.get('Running')})")
        return output

    def stat_path(self, container_id: str, path: str) -> Dict:
        stream, stat = self.api.get_archive(container_id, path)
        close = getattr(stream, "close", None)
        if close is not None:
            close()
        return stat

    def read_file_from_container(self, container_id: str, path: str) -> str:
        stat = self.stat_path(container_id, path)
        if stat.get("linkTarget"):
            path = stat["linkTarget"]
        stream, _ = self.api.get_archive(container_id, path)
        return read_first_file(stream).decode("utf-8", errors="replace")

    def copy_to_container(self, host_path: str, container_id: str, dst_dir: str) -> None:
        if not self.api.put_archive(container_id, dst_dir, tar_path(host_path)):
            raise APIError(f"failed to copy files into container {container_id} from path: {host_path}")

    def _create_and_start(self, image: str, **config) -> str:
        container_id = self.api.create_container(image, name=short_id(), **config)["Id"]
        try:
            self.api.start(container_id)
        except APIError:
            self._force_remove_quietly(container_id)
            raise
        return container_id

    def create_and_check_file_exists(self, image: str, path: str, **config) -> bool:
        container_id = self._create_and_start(image, **config)
        try:
            return self.stat_path(container_id, path).get("size", 0) != 0
        except NotFound:
            return False
        finally:
            self._force_remove_quietly(container_id)

    # OS detection

    def detect_os_distribution_from_container(self, container_id: str) -> OSDistribution:
        try:
            content = self.read_file_from_container(container_id, "/etc/os-release")
            self.stat_path(container_id, "/bin/sh")
        except APIError:
            return UNKNOWN_DISTRIBUTION
        return OSDistribution.from_os_release(content)

    def detect_os_distribution_from_image(self, image: str) -> OSDistribution:
        try:
            container_id = self._create_and_start(image)
        except APIError as e:
            logger.debug("Failed to start container for OS detection", image=image, error=str(e))
            return UNKNOWN_DISTRIBUTION
        try:
            return self.detect_os_distribution_from_container(container_id)
        finally:
            self._force_remove_quietly(container_id)

    # Images

    def image_exists(self, reference: str) -> bool:
        if ":" not in reference.rsplit("/", 1)[-1] and "@" not in reference:
            reference = f"{reference}:latest"
        return bool(self.api.images(name=reference))

    def inspect_image(self, reference: str) -> Dict:
        return self.api.inspect_image(reference)

    def find_images_by_label(self, label: str, value: str) -> List[Dict]:
        return self.api.images(all=True, filters={"label": f"{label}={value}"})

    def find_containers_by_label(self, label: str, value: str) -> List[Dict]:
        return self.api.containers(all=True, filters={"label": f"{label}={value}"})

    def find_networks_by_label(self, label: str, value: str) -> List[Dict]:
        return self.api.networks(filters={"label": f"{label}={value}"})

    # Volumes

    def volume_exists(self, name: str) -> bool:
        try:
            self.api.inspect_volume(name)
        except NotFound:
            return False
        return True

    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> None:
        self.api.create_volume(name=name, driver="local", labels=labels)

    def volume_remove(self, name: str) -> None:
        self.api.remove_volume(name, force=True)
