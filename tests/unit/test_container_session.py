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
Unit tests for container sessions, run against the in-memory Docker API.
"""
import pytest

from docker.errors import APIError

from fakes import UBUNTU_FILES
from kiln.errors import CommandFailedError, ExitCodeError, ImagePullError, KilnError
from kiln.MANAGERS.container_session import ContainerSession, cleanup_container_command
from kiln.MANAGERS.tweaks import TweakBuilder
from kiln.MODELS.labels import LABEL_CONFIG_HASH, LABEL_RUN_ID
from kiln.MODELS.run_context import ExecContext
from kiln.MODELS.volume import Volume, VolumeApproach
from kiln.UTILS.docker_util import DockerUtil


@pytest.fixture
def make_session(util, settings, workspace, docker_config, registry):
    def make(run_id="t1", reference="alpine:latest", **overrides):
        return ContainerSession(
            run_id, reference, util=overrides.get("util", util), settings=overrides.get("settings", settings),
            workspace=workspace, tweak_builder_factory=overrides.get("tweak_builder_factory"),
            docker_config=docker_config, registry=registry,
        )
    return make


def _run_containers(api, run_id="t1"):
    return [c for c in api.containers_store.values() if c.labels.get(LABEL_RUN_ID) == run_id]


def _created_for_run(api, run_id="t1"):
    return [
        dict(kwargs, image=args[0]) for args, kwargs in api.calls_of("create_container")
        if (kwargs.get("name") or "").startswith(run_id + "-")
    ]


class TestCleanupContainerCommand:
    """Tests for cleanup_container_command."""

    def test_bash_login_flag_dropped(self):
        assert cleanup_container_command(["bash", "-l"]) == ["bash"]
        assert cleanup_container_command(["/bin/bash", "-li"]) == ["/bin/bash"]

    def test_lone_interactive_flag(self):
        assert cleanup_container_command(["-i"]) == []

    def test_other_commands_untouched(self):
        assert cleanup_container_command(["sh", "-l"]) == ["sh", "-l"]
        assert cleanup_container_command(["nginx", "-g", "daemon off;"]) == ["nginx", "-g", "daemon off;"]
        assert cleanup_container_command(None) == []


class TestConfigHash:
    """Tests for the session config hash."""

    def test_equal_configurations(self, make_session, run_ctx):
        first = make_session().add_volume_binds(Volume.parse("/src:/app")).add_env("A=1")
        second = make_session().add_volume_binds(Volume.parse("/src:/app")).add_env("A=1")
        assert first.calc_config_hash(run_ctx) == second.calc_config_hash(run_ctx)

    @pytest.mark.parametrize("change", [
        lambda s: s.add_env("B=2"),
        lambda s: s.add_volume_binds(Volume.parse("/other:/other")),
        lambda s: s.set_privileged(),
        lambda s: s.add_ports("8080:80"),
        lambda s: s.set_entrypoint(["/bin/bash"]),
    ])
    def test_changed_configuration(self, make_session, run_ctx, change):
        """Test that each identity-relevant setting changes the hash."""
        base = make_session()
        changed = make_session()
        change(changed)
        assert base.calc_config_hash(run_ctx) != changed.calc_config_hash(run_ctx)

    def test_run_user_changes_hash(self, make_session, run_ctx):
        session = make_session()
        before = session.calc_config_hash(run_ctx)
        run_ctx.user = "builder"
        assert session.calc_config_hash(run_ctx) != before


class TestImagePull:
    """Tests for pulling with the architecture fallback."""

    def test_present_image_not_pulled(self, api, make_session, run_ctx):
        make_session().make_sure_image_pulled(run_ctx)
        assert api.calls_of("pull") == []

    def test_native_pull(self, api, make_session, run_ctx):
        api.registry["ubuntu:22.04"] = {"files": UBUNTU_FILES}
        make_session(reference="ubuntu:22.04").make_sure_image_pulled(run_ctx)
        (args, kwargs), = api.calls_of("pull")
        assert args == ("ubuntu",)
        assert kwargs["tag"] == "22.04"
        assert kwargs["platform"] == "linux/amd64"
        assert "Downloading 5 of 10" in run_ctx.stdout.getvalue()

    def test_arm64_falls_back_to_amd64(self, api, make_session, run_ctx, settings):
        """Test that a failing arm64 pull is retried for amd64."""
        api.registry["ubuntu:22.04"] = {"files": UBUNTU_FILES}
        api.failing_platforms.add("linux/arm64")
        arm_settings = settings.model_copy(update={"host_arch": "arm64"})
        make_session(reference="ubuntu:22.04", settings=arm_settings).make_sure_image_pulled(run_ctx)
        platforms = [kwargs["platform"] for _, kwargs in api.calls_of("pull")]
        assert platforms == ["linux/arm64", "linux/amd64"]
        assert api.tags["ubuntu:22.04"]

    def test_arm64_fallback_also_fails(self, api, make_session, run_ctx, settings):
        api.failing_platforms.update({"linux/arm64", "linux/amd64"})
        arm_settings = settings.model_copy(update={"host_arch": "arm64"})
        with pytest.raises(ImagePullError, match="no matching manifest for linux/amd64"):
            make_session(reference="ubuntu:22.04", settings=arm_settings).make_sure_image_pulled(run_ctx)
        assert len(api.calls_of("pull")) == 2

    def test_amd64_has_no_fallback(self, api, make_session, run_ctx):
        """Test that only arm64 hosts retry with another platform."""
        with pytest.raises(ImagePullError):
            make_session(reference="ubuntu:22.04").make_sure_image_pulled(run_ctx)
        assert len(api.calls_of("pull")) == 1


class TestRun:
    """Tests for ContainerSession.run."""

    def test_copy_approach_round_trip(self, api, make_session, run_ctx, tmp_path):
        """Test that output written to a copied volume comes back to the host."""
        (tmp_path / "x").mkdir()
        session = make_session().add_volume_binds(Volume.parse(f"{tmp_path / 'x'}:/data:rw"))
        session.set_volume_approach(VolumeApproach.COPY)
        session.run(run_ctx, "echo hi > /data/out")
        assert (tmp_path / "x" / "out").read_text() == "hi\n"
        assert session.volume_approach is VolumeApproach.COPY
        assert _run_containers(api) == []
        assert api.networks_store == {}

    def test_container_labels_and_defaults(self, api, make_session, run_ctx):
        """Test labels, default entrypoint and command of a new container."""
        session = make_session().set_reuse()
        session.run(run_ctx, "echo ok")
        created, = _created_for_run(api)
        assert created["entrypoint"] == ["/bin/sh"]
        assert created["command"] == ["-c", "sleep 100000"]
        assert created["user"] == "root"
        assert created["labels"][LABEL_RUN_ID] == "t1"
        assert created["labels"][LABEL_CONFIG_HASH] == session.initial_config_hash
        assert created["image"] == session.build_image_id

    def test_gateway_host_entry(self, api, make_session, run_ctx):
        """Test that the run network gateway is reachable as 'gateway'."""
        session = make_session().set_reuse()
        session.run(run_ctx, "echo ok")
        container, = _run_containers(api)
        assert b" gateway\n" in container.files["/etc/hosts"]
        assert session.network_id in api.networks_store

    def test_ports_exposed(self, api, make_session, run_ctx):
        make_session().set_reuse().add_ports("8080:80").run(run_ctx)
        created, = _created_for_run(api)
        assert created["ports"] == [(80, "tcp")]

    def test_reuse_keeps_single_container(self, api, make_session, run_ctx):
        """Test that a second run with the same config adopts the first container."""
        make_session().set_reuse().run(run_ctx, "echo one")
        second = make_session().set_reuse()
        second.run(run_ctx, "echo two")
        assert len(_run_containers(api)) == 1
        assert len(_created_for_run(api)) == 1
        assert second.container_id == _run_containers(api)[0].id
        assert second.os_distribution.name == "alpine"

    def test_without_reuse_recreates(self, api, make_session, run_ctx):
        make_session().run(run_ctx, "echo one")
        make_session().run(run_ctx, "echo two")
        assert len(_created_for_run(api)) == 2
        assert _run_containers(api) == []

    def test_cleanup_orphans(self, api, make_session, run_ctx):
        """Test that orphans are removed even when reuse is on."""
        make_session().set_reuse().run(run_ctx, "echo one")
        make_session().set_reuse().set_cleanup_orphans().run(run_ctx, "echo two")
        assert len(_created_for_run(api)) == 2
        assert len(_run_containers(api)) == 1

    def test_derived_image_cached_across_runs(self, api, make_session, run_ctx):
        make_session().run(run_ctx, "echo one")
        make_session().run(run_ctx, "echo two")
        assert len(api.calls_of("build")) == 1

    def test_failing_command(self, api, make_session, run_ctx):
        """Test that a nonzero exit fails the run and still destroys the container."""
        with pytest.raises(CommandFailedError) as exc_info:
            make_session().run(run_ctx, "exit 4")
        assert exc_info.value.exit_code == 4
        assert exc_info.value.run_id == "t1"
        assert _run_containers(api) == []

    def test_exit_code_tolerated(self, api, make_session, run_ctx):
        run_ctx.error_on_exit_code = False
        make_session().run(run_ctx, "exit 4")

    def test_keep_env(self, api, make_session, run_ctx):
        """Test that exported variables reach later commands."""
        session = make_session().set_keep_env()
        session.run(run_ctx, "export FOO=bar", "echo next")
        assert "FOO=bar" in run_ctx.env
        next_exec, = [kwargs for args, kwargs in api.calls_of("exec_create") if args[1][-1].endswith("echo next")]
        assert "FOO=bar" in next_exec["environment"]

    def test_hooks(self, make_session, run_ctx):
        """Test that before and after hooks see the container id."""
        seen = []
        run_ctx.run_before_exec = lambda cid: seen.append(("before", cid))
        run_ctx.run_after_exec = lambda cid: seen.append(("after", cid))
        session = make_session().set_reuse()
        session.run(run_ctx, "echo ok")
        assert seen == [("before", session.container_id), ("after", session.container_id)]

    def test_registered_for_cleanup_until_destroyed(self, api, make_session, run_ctx, registry):
        """Test that a detached run stays registered and keeps its container."""
        run_ctx.detached = True
        session = make_session()
        session.run(run_ctx, "echo bg")
        session.background().join(5)
        assert len(_run_containers(api)) == 1
        assert session.cleanup_key in registry.registered()
        session.destroy()
        assert _run_containers(api) == []
        assert registry.registered() == []


class TestReuse:
    """Tests for adopting and discarding reusable containers."""

    def test_reused_container_in_docker_copies_back(self, api, make_session, run_ctx, tmp_path):
        """Test that an adopted container still copies read-write volumes back when binds are unusable."""
        in_docker = DockerUtil(api, cgroup_content="12:cpu:/docker/abcdef1234567890\n", docker_host="")
        (tmp_path / "x").mkdir()

        def make():
            return make_session(util=in_docker).set_reuse().add_volume_binds(
                Volume.parse(f"{tmp_path / 'x'}:/data:rw"))

        make().run(run_ctx, "echo one > /data/a")
        second = make()
        second.run(run_ctx, "echo two > /data/b")
        assert len(_created_for_run(api)) == 1
        assert second.volume_approach is VolumeApproach.COPY
        assert (tmp_path / "x" / "a").read_text() == "one\n"
        assert (tmp_path / "x" / "b").read_text() == "two\n"

    def test_failed_create_leaves_no_container(self, api, make_session, run_ctx, tmp_path):
        """Test that a container failing preparation is not left for later runs to adopt."""
        volume = Volume.parse(f"{tmp_path / 'x'}:/data:rw")
        first = make_session().set_reuse().add_volume_binds(volume).set_volume_approach(VolumeApproach.COPY)
        with pytest.raises(KilnError):
            first.run(run_ctx, "echo hi > /data/out")
        assert _run_containers(api) == []

        (tmp_path / "x").mkdir()
        second = make_session().set_reuse().add_volume_binds(volume).set_volume_approach(VolumeApproach.COPY)
        second.run(run_ctx, "echo hi > /data/out")
        assert len(_created_for_run(api)) == 2
        assert (tmp_path / "x" / "out").read_text() == "hi\n"

    def test_failing_init_command_tolerated(self, api, make_session, run_ctx, monkeypatch):
        """Test that an init command the daemon rejects does not fail the run."""
        class BridgeTweaks(TweakBuilder):
            def build(self):
                bundle = super().build()
                bundle.init_commands.append(ExecContext.svc_command_detached(self.root_ctx, "start-bridge"))
                return bundle

        exec_create = api.exec_create

        def rejecting_exec_create(container, cmd, **kwargs):
            if "start-bridge" in cmd[-1]:
                raise APIError("exec failed")
            return exec_create(container, cmd, **kwargs)

        monkeypatch.setattr(api, "exec_create", rejecting_exec_create)
        make_session(tweak_builder_factory=BridgeTweaks).run(run_ctx, "echo ok")
        assert "ok" in run_ctx.stdout.getvalue()
        assert _run_containers(api) == []


class TestNonLinuxImage:
    """Tests for images without a detectable Linux distribution."""

    @pytest.fixture
    def foreign_image(self, api):
        api.add_image("foreign:1", files={"/app/run": b"MZ"},
                      config={"Entrypoint": ["/app/run"], "Cmd": ["bash", "-l"], "User": "app"})
        return "foreign:1"

    def test_image_defaults_used(self, api, make_session, run_ctx, foreign_image):
        """Test that the image's entrypoint, command and user are kept."""
        session = make_session(reference=foreign_image).set_reuse()
        session.run(run_ctx)
        created, = _created_for_run(api)
        assert created["image"] == foreign_image
        assert created["entrypoint"] == ["/app/run"]
        assert created["command"] == ["bash"]
        assert created["user"] == "app"
        assert api.calls_of("build") == []

    def test_copy_downgraded_to_bind(self, make_session, run_ctx, foreign_image, tmp_path):
        session = make_session(reference=foreign_image).set_reuse()
        session.add_volume_binds(Volume(host_path=str(tmp_path), cont_path="/work"))
        session.set_volume_approach(VolumeApproach.COPY)
        session.run(run_ctx)
        assert session.volume_approach is VolumeApproach.BIND

    def test_default_command_exit_code(self, api, make_session, run_ctx, foreign_image):
        """Test that a failing default command raises ExitCodeError."""
        api.wait_exit_code = 3
        with pytest.raises(ExitCodeError) as exc_info:
            make_session(reference=foreign_image).run(run_ctx)
        assert exc_info.value.exit_code == 3
        assert _run_containers(api) == []


class TestSessionOperations:
    """Tests for operations on a prepared container."""

    @pytest.fixture
    def session(self, make_session, run_ctx):
        found = make_session().set_reuse()
        found.run(run_ctx)
        return found

    def test_exec_with_output(self, session):
        assert session.exec_with_output("echo hello") == "hello\n"

    def test_copy_in_and_out(self, api, session, run_ctx, tmp_path):
        """Test that a copied file lands in the container and comes back out."""
        source = tmp_path / "in.txt"
        source.write_text("payload")
        session.copy_to_container(run_ctx, str(source), "/opt/in.txt")
        assert api.containers_store[session.container_id].files["/opt/in.txt"] == b"payload"
        target = tmp_path / "out"
        target.mkdir()
        session.copy_from_container(run_ctx, "/opt/in.txt", str(target))
        assert (target / "in.txt").read_text() == "payload"

    def test_exec_command_result(self, session, run_ctx):
        result = session.exec_command(run_ctx, "export STAGE=ci")
        assert result.exit_code == 0
        assert "STAGE=ci" in result.env

    def test_wait_for_exit(self, api, session):
        api.wait_exit_code = 2
        assert session.wait_for_exit() == 2
