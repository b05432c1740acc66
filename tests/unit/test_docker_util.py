"""
Unit tests for the Docker API helpers.
"""
import pytest

from kiln.UTILS.docker_util import DockerUtil, cleanup_docker_id


def test_cleanup_docker_id():
    assert cleanup_docker_id("my-run_id.1") == "myrunid1"
    assert len(cleanup_docker_id("a" * 40)) == 24


class TestEnvironment:
    """Tests for in-docker and remote daemon detection."""

    def test_not_in_docker(self, api):
        util = DockerUtil(api, cgroup_content="0::/init.scope\n", docker_host="")
        assert not util.is_running_in_docker()
        with pytest.raises(RuntimeError, match="failed to detect current container's ID"):
            util.current_container_id()

    def test_in_docker(self, api):
        util = DockerUtil(api, cgroup_content="12:memory:/docker/abcdef1234567890fedcba\n", docker_host="")
        assert util.is_running_in_docker()
        assert util.current_container_id() == "abcdef123456"

    def test_kubepods(self, api):
        util = DockerUtil(api, cgroup_content="11:cpu:/kubepods/besteffort/pod1/0123456789abcdef\n", docker_host="")
        assert util.is_running_in_docker()
        assert util.current_container_id() == "0123456789ab"

    @pytest.mark.parametrize("host, remote", [
        ("", False),
        ("unix:///var/run/docker.sock", False),
        ("tcp://10.0.0.5:2376", True),
        ("ssh://ci@build-host", True),
    ])
    def test_remote_host(self, api, host, remote):
        assert DockerUtil(api, cgroup_content="", docker_host=host).is_docker_host_remote() is remote


class TestContainers:
    """Tests for container, file and image helpers."""

    @pytest.fixture
    def container(self, api):
        container_id = api.create_container("alpine:latest", name="box")["Id"]
        api.start(container_id)
        return container_id

    def test_image_exists(self, util):
        assert util.image_exists("alpine")
        assert util.image_exists("alpine:latest")
        assert not util.image_exists("ubuntu:22.04")

    def test_detect_os_from_image_removes_container(self, api, util):
        """Test that the temporary detection container is gone afterwards."""
        assert util.detect_os_distribution_from_image("alpine:latest").name == "alpine"
        assert api.containers_store == {}

    def test_detect_os_without_os_release(self, api, util):
        api.add_image("scratch-app:1", files={"/app": b"bin"})
        assert not util.detect_os_distribution_from_image("scratch-app:1").is_linux_based()

    def test_create_and_check_file_exists(self, util):
        assert util.create_and_check_file_exists("alpine:latest", "/bin/sh")
        assert not util.create_and_check_file_exists("alpine:latest", "/missing")

    def test_read_file_follows_symlink(self, api, util, container):
        api.containers_store[container].symlinks["/etc/link"] = "/etc/os-release"
        assert "ID=alpine" in util.read_file_from_container(container, "/etc/link")

    def test_exec_in_container(self, util, container):
        assert util.exec_in_container(container, "echo hi") == "hi\n"

    def test_exec_in_container_failure(self, util, container):
        with pytest.raises(RuntimeError, match="non-zero exit code"):
            util.exec_in_container(container, "exit 1")

    def test_container_status(self, api, util, container):
        status = util.get_container_status(container)
        assert status.exists and status.running
        assert not util.get_container_status("gone").exists

    def test_force_remove_stopped_container(self, api, util, container):
        """Test that a failing kill does not prevent removal."""
        api.stop(container)
        util.force_remove_container(container)
        assert api.containers_store == {}

    def test_find_docker_networks_of(self, api, util, container):
        network_id = api.create_network("net")["Id"]
        api.connect_container_to_network(container, network_id)
        assert [n["Id"] for n in util.find_docker_networks_of(container)] == [network_id]

    def test_no_networks(self, util, container):
        with pytest.raises(RuntimeError, match="no networks found"):
            util.find_docker_networks_of(container)

    def test_volumes(self, util):
        assert not util.volume_exists("cache")
        util.create_volume("cache", labels={"kiln.run-id": "t1"})
        assert util.volume_exists("cache")
        util.volume_remove("cache")
        assert not util.volume_exists("cache")
