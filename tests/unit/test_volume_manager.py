# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for volume approach resolution, strategies and the volume copier.
"""
import os

import pytest

from kiln.errors import KilnError, MissingVolumeError
from kiln.MANAGERS.volume_manager import (
    STRATEGIES,
    AddStrategy,
    BindStrategy,
    CopyStrategy,
    ExternalStrategy,
    NamedVolumeStrategy,
    VolumeCopier,
    is_socket_path,
    resolve_volume_approach,
    resolve_volume_host_path,
    strategy_for,
)
from kiln.MODELS.volume import Volume, VolumeApproach, VolumeMode
from kiln.RUNNERS.exec_runner import ExecRunner
from kiln.UTILS.os_distribution import UNKNOWN_DISTRIBUTION, OSDistribution


class TestResolveVolumeApproach:
    """Tests for resolve_volume_approach."""

    def test_bind_kept_locally(self):
        """Test that bind stays bind against a local daemon."""
        assert resolve_volume_approach(VolumeApproach.BIND, VolumeApproach.COPY, False, False) is VolumeApproach.BIND

    def test_bind_in_container_falls_back(self):
        """Test that bind inside a container yields the fallback."""
        assert resolve_volume_approach(VolumeApproach.BIND, VolumeApproach.COPY, True, False) is VolumeApproach.COPY

    def test_bind_remote_daemon_falls_back(self):
        """Test that bind against a remote daemon yields the fallback."""
        assert resolve_volume_approach(VolumeApproach.BIND, VolumeApproach.ADD, False, True) is VolumeApproach.ADD

    @pytest.mark.parametrize("approach", [VolumeApproach.ADD, VolumeApproach.COPY])
    def test_non_linux_image_gets_bind(self, approach):
        """Test that add/copy downgrade to bind for images that are not Linux based."""
        result = resolve_volume_approach(approach, VolumeApproach.COPY, False, False, UNKNOWN_DISTRIBUTION)
        assert result is VolumeApproach.BIND

    def test_linux_image_keeps_copy(self):
        """Test that Linux images keep the copy approach."""
        result = resolve_volume_approach(VolumeApproach.COPY, VolumeApproach.COPY, False, False,
                                         OSDistribution("alpine"))
        assert result is VolumeApproach.COPY

    def test_external_untouched(self):
        """Test that external is never downgraded."""
        result = resolve_volume_approach(VolumeApproach.EXTERNAL, VolumeApproach.COPY, True, True,
                                         UNKNOWN_DISTRIBUTION)
        assert result is VolumeApproach.EXTERNAL


class TestStrategies:
    """Tests for the per-approach handlers."""

    def test_table_is_exhaustive(self):
        """Test that every approach has exactly one handler."""
        assert set(STRATEGIES) == set(VolumeApproach)
        assert isinstance(strategy_for(VolumeApproach.ADD), AddStrategy)
        assert isinstance(strategy_for(VolumeApproach.EXTERNAL), ExternalStrategy)

    def test_bind_mounts(self):
        """Test bind mounts carry read-only and consistency."""
        mounts = BindStrategy().mounts([Volume.parse("/src:/app:ro"), Volume.parse("/cache:/c:delegated")])
        assert mounts[0]["Type"] == "bind"
        assert mounts[0]["Source"] == "/src"
        assert mounts[0]["Target"] == "/app"
        assert mounts[0]["ReadOnly"] is True
        assert mounts[1]["Consistency"] == "delegated"

    def test_copy_has_no_mounts(self):
        """Test that copy relies on archives rather than mounts."""
        assert CopyStrategy().mounts([Volume.parse("/src:/app")]) == []

    def test_external_parent_dir_for_files(self, tmp_path):
        """Test that file binds get their parent directory created in the image."""
        host_file = tmp_path / "settings.xml"
        host_file.write_text("<settings/>")
        strategy = ExternalStrategy()
        assert strategy.bind_parent_dir(Volume(host_path=str(host_file), cont_path="/root/.m2/settings.xml")) == "/root/.m2"
        assert strategy.bind_parent_dir(Volume(host_path=str(tmp_path), cont_path="/src")) == ""

    def test_named_volume_must_exist(self, util):
        """Test that a missing named volume fails fast."""
        with pytest.raises(MissingVolumeError):
            NamedVolumeStrategy().prepare(util, [Volume(name="absent", cont_path="/data")])

    def test_named_volume_exists(self, util):
        """Test that an existing named volume passes preparation."""
        util.create_volume("present")
        NamedVolumeStrategy().prepare(util, [Volume(name="present", cont_path="/data")])


class TestVolumeHelpers:
    """Tests for host path helpers."""

    def test_relative_path_made_absolute(self, run_ctx, tmp_path, monkeypatch):
        """Test relative host paths are resolved against the current directory."""
        monkeypatch.chdir(tmp_path)
        volume = resolve_volume_host_path(run_ctx, Volume(host_path="src", cont_path="/src"))
        assert volume.host_path == os.path.realpath(str(tmp_path / "src"))

    def test_socket_paths(self):
        """Test socket detection."""
        assert is_socket_path("/var/run/docker.sock")
        assert is_socket_path("/tmp/ssh-agent.sock")
        assert not is_socket_path("/tmp/project")


@pytest.fixture
def container(api, util):
    container_id = api.create_container("alpine:latest", name="copier")["Id"]
    api.start(container_id)
    return container_id


@pytest.fixture
def copier(util):
    runner = ExecRunner(util, os_distribution=OSDistribution("alpine"))
    return VolumeCopier(util, runner.exec_single)


class TestVolumeCopier:
    """Tests for VolumeCopier."""

    def test_copy_directory_to_container(self, api, copier, container, run_ctx, tmp_path):
        """Test that directory contents land under the container path."""
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("print('hi')")
        copier.copy_to_container(run_ctx, container, str(tmp_path / "src"), "/app")
        assert api.containers_store[container].files["/app/main.py"] == b"print('hi')"

    def test_copy_file_with_rename(self, api, copier, container, run_ctx, tmp_path):
        """Test that a file copied under another name is moved into place."""
        host_file = tmp_path / "local.cfg"
        host_file.write_text("x=1")
        copier.copy_to_container(run_ctx, container, str(host_file), "/etc/app.cfg")
        scripts = [args[1][-1] for args, _ in api.calls_of("exec_create")]
        assert any("mv /etc/local.cfg /etc/app.cfg" in script for script in scripts)

    def test_copy_retries_missing_path(self, api, copier, container, run_ctx, tmp_path):
        """Test one transparent retry on 'No such container:path'."""
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.txt").write_text("a")
        api.put_archive_failures = 1
        copier.copy_to_container(run_ctx, container, str(tmp_path / "src"), "/app")
        assert len(api.calls_of("put_archive")) == 2
        assert api.containers_store[container].files["/app/a.txt"] == b"a"

    def test_copy_gives_up_after_retry(self, api, copier, container, run_ctx, tmp_path):
        """Test that a second failure is reported."""
        (tmp_path / "src").mkdir()
        api.put_archive_failures = 2
        with pytest.raises(KilnError):
            copier.copy_to_container(run_ctx, container, str(tmp_path / "src"), "/app")

    def test_copy_missing_host_path(self, copier, container, run_ctx, tmp_path):
        """Test that a missing host path is an error."""
        with pytest.raises(KilnError):
            copier.copy_to_container(run_ctx, container, str(tmp_path / "nope"), "/app")

    def test_chown_for_non_root_user(self, api, copier, container, run_ctx, tmp_path):
        """Test that non-root users get ownership of copied content."""
        (tmp_path / "src").mkdir()
        run_ctx.user = "builder"
        copier.copy_to_container(run_ctx, container, str(tmp_path / "src"), "/app")
        scripts = [args[1][-1] for args, _ in api.calls_of("exec_create")]
        assert any("chown -R" in script and "builder:builder /app" in script for script in scripts)

    def test_copy_back_changed_children(self, api, copier, container, run_ctx, tmp_path):
        """Test that only direct children of RW volumes are copied back."""
        found = api.containers_store[container]
        found.write("/data/out", b"hi\n")
        found.write("/data/sub/deep.txt", b"deep\n")
        found.write("/readonly/x", b"x\n")
        (tmp_path / "data").mkdir()
        (tmp_path / "ro").mkdir()
        volumes = [
            Volume(host_path=str(tmp_path / "data"), cont_path="/data", mode=VolumeMode.RW),
            Volume(host_path=str(tmp_path / "ro"), cont_path="/readonly", mode=VolumeMode.RO),
        ]
        copier.copy_volumes_from_container(run_ctx, container, volumes)
        assert (tmp_path / "data" / "out").read_text() == "hi\n"
        assert (tmp_path / "data" / "sub" / "deep.txt").read_text() == "deep\n"
        assert not (tmp_path / "ro" / "x").exists()

    def test_copy_from_symlink_keeps_name(self, api, copier, container, run_ctx, tmp_path):
        """Test that a symlinked path is copied from its target under the link's name."""
        found = api.containers_store[container]
        found.write("/opt/real/file.txt", b"content")
        found.symlinks["/data/link"] = "/opt/real"
        copier.copy_from_container(run_ctx, container, "/data/link", str(tmp_path))
        assert (tmp_path / "link" / "file.txt").read_bytes() == b"content"

    def test_sockets_are_not_copied(self, api, copier, container, run_ctx):
        """Test that socket volumes are skipped."""
        copier.copy_volumes_to_container(run_ctx, container, [Volume(host_path="/var/run/docker.sock",
                                                                     cont_path="/var/run/docker.sock")])
        assert api.calls_of("put_archive") == []
