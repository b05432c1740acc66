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
Container sessions: the lifecycle of the container a run executes its commands in.

A session computes a hash of its configuration, adopts a container labeled with the
same hash when reuse is enabled, and otherwise pulls the image, builds the derived
image, creates and prepares a new container. Containers, images and networks of a
session carry the run id label so they can be found and removed later.
"""
import hashlib
import json
import threading
from typing import Callable, Dict, List, Optional

from docker.errors import APIError

from ..BUILDERS.build_image import DerivedImageBuilder
from ..config import Settings, detect_host_arch
from ..errors import DaemonError, ExitCodeError, ImagePullError, KilnError
from ..logger import logger
from ..MODELS.labels import LABEL_CONFIG_HASH, LABEL_RUN_ID
from ..MODELS.run_context import ExecContext, ExecResult, RunContext
from ..MODELS.volume import Volume, VolumeApproach
from ..PARSERS.env_parser import EnvParser
from ..PROTOCOL.message_reader import MessageReader
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.registry_auth import DockerConfig
from ..RUNNERS.exec_runner import ExecRunner
from ..UTILS.concurrency import ErrGroup
from ..UTILS.docker_util import DockerUtil, short_id
from ..UTILS.os_distribution import UNKNOWN_DISTRIBUTION, OSDistribution
from ..UTILS.port_finder import parse_port_specs
from ..UTILS.socket_proxy import SocketProxy
from ..UTILS.streams import PrefixWriter
from ..UTILS.temp_dir import TempWorkspace
from .cleanup_registry import CleanupRegistry, cleanup_registry
from .network_manager import NetworkManager
from .tweaks import TweakBuilder, TweakBundle, reapply_ssh_proxy
from .volume_manager import (
    VolumeCopier, VolumeStrategy, resolve_volume_approach, resolve_volume_host_path, strategy_for,
)

DEFAULT_ENTRYPOINT = ["/bin/sh"]
DEFAULT_COMMAND = ["-c", "sleep 100000"]
DEFAULT_USER = "root"
DEFAULT_RUN_ID = "run"
FALLBACK_ARCH = "amd64"
INTERACTIVE_SHELL_FLAGS = ("-l", "-i", "-li", "-il")


def cleanup_container_command(cmd: Optional[List[str]]) -> List[str]:
    """
    Drops interactive shell flags, which need a TTY: ``["bash", "-l"]`` -> ``["bash"]``,
    ``["-i"]`` -> ``[]``.
    """
    cmd = list(cmd or [])
    if len(cmd) > 1 and cmd[0].endswith("bash") and cmd[1] in INTERACTIVE_SHELL_FLAGS:
        return cmd[:1]
    if len(cmd) == 1 and cmd[0] in INTERACTIVE_SHELL_FLAGS:
        return []
    return cmd


class ContainerSession:
    """
    Creates, reuses and destroys the container of a run.

    Args:
        run_id: Identifier put on every daemon object of the run.
        reference: Base image reference.
        util: Docker helpers; a client from the environment when omitted.
        settings: Engine settings; read from the environment when omitted.
        workspace: Process temp workspace.
        docker_config: Registry credentials of the user.
        registry: Cleanup registry the session registers its destroy callback with.
        tweak_builder_factory: Builds the tweak builder for a run context.
    """
    def __init__(self, run_id: str, reference: str, util: Optional[DockerUtil] = None,
                 settings: Optional[Settings] = None, workspace: Optional[TempWorkspace] = None,
                 docker_config: Optional[DockerConfig] = None, registry: Optional[CleanupRegistry] = None,
                 tweak_builder_factory: Optional[Callable[["ContainerSession", RunContext], TweakBuilder]] = None):
        self.run_id = run_id or DEFAULT_RUN_ID
        self.reference = reference
        self.settings = settings or Settings.from_env()
        self.util = util or DockerUtil(docker_host=self.settings.docker_host or None)
        self.workspace = workspace or TempWorkspace.from_env(base_dir=self.settings.temp_dir)
        self.docker_config = docker_config or DockerConfig()
        self.registry = registry or cleanup_registry
        self.tweak_builder_factory = tweak_builder_factory or TweakBuilder
        self.network_manager = NetworkManager(self.util)
        self.exec_runner = ExecRunner(self.util)
        self.copier = VolumeCopier(self.util, self.exec_single)

        self.volume_binds: List[Volume] = []
        self.volume_mounts: List[Volume] = []
        self.ports: List[str] = []
        self.env: List[str] = []
        self.privileged = False
        self.mount_docker_socket = False
        self.reuse = False
        self.cleanup_orphans = False
        self.disable_cache = False
        self.keep_env = False
        self.entrypoint: Optional[List[str]] = None
        self.command: Optional[List[str]] = None
        self.use_default_command = False
        self.use_default_user = False
        self.stop_timeout = self.settings.stop_timeout
        self.volume_approach = VolumeApproach.BIND
        self.fallback_approach = VolumeApproach.COPY

        self._container_id = ""
        self._os_distribution = UNKNOWN_DISTRIBUTION
        self.network_id = ""
        self.build_image_id = ""
        self.initial_config_hash = ""
        self.proxies: List[SocketProxy] = []
        self._background: Optional[threading.Thread] = None

    # configuration

    def add_volume_binds(self, *volumes: Volume) -> "ContainerSession":
        self.volume_binds.extend(volumes)
        return self

    def add_volume_mounts(self, *volumes: Volume) -> "ContainerSession":
        self.volume_mounts.extend(volumes)
        return self

    def add_env(self, *entries: str) -> "ContainerSession":
        self.env.extend(entries)
        return self

    def add_ports(self, *specs: str) -> "ContainerSession":
        self.ports.extend(specs)
        return self

    def set_volume_approach(self, approach: VolumeApproach,
                            fallback: VolumeApproach = VolumeApproach.COPY) -> "ContainerSession":
        self.volume_approach = approach
        self.fallback_approach = fallback
        return self

    def set_privileged(self, value: bool = True) -> "ContainerSession":
        self.privileged = value
        self.exec_runner.privileged = value
        return self

    def set_mount_docker_socket(self, value: bool = True) -> "ContainerSession":
        self.mount_docker_socket = value
        return self

    def set_reuse(self, value: bool = True) -> "ContainerSession":
        self.reuse = value
        return self

    def set_cleanup_orphans(self, value: bool = True) -> "ContainerSession":
        self.cleanup_orphans = value
        return self

    def set_disable_cache(self, value: bool = True) -> "ContainerSession":
        self.disable_cache = value
        return self

    def set_keep_env(self, value: bool = True) -> "ContainerSession":
        self.keep_env = value
        return self

    def set_entrypoint(self, entrypoint: Optional[List[str]]) -> "ContainerSession":
        self.entrypoint = entrypoint
        return self

    def set_command(self, command: Optional[List[str]]) -> "ContainerSession":
        self.command = command
        return self

    def set_use_default_command(self, value: bool = True) -> "ContainerSession":
        self.use_default_command = value
        return self

    def set_use_default_user(self, value: bool = True) -> "ContainerSession":
        self.use_default_user = value
        return self

    def set_stop_timeout(self, seconds: int) -> "ContainerSession":
        self.stop_timeout = seconds
        return self

    # state

    @property
    def container_id(self) -> str:
        return self._container_id

    @property
    def os_distribution(self) -> OSDistribution:
        return self._os_distribution

    @os_distribution.setter
    def os_distribution(self, value: OSDistribution) -> None:
        self._os_distribution = value
        self.exec_runner.os_distribution = value

    @property
    def cleanup_key(self) -> str:
        return f"session:{self.run_id}:{id(self)}"

    def calc_config_hash(self, run_ctx: RunContext) -> str:
        """md5 over every setting that influences the identity of the container."""
        payload = [
            self.reference,
            self.privileged,
            self.mount_docker_socket,
            self.env,
            self.entrypoint,
            self.command,
            [volume.model_dump(mode="json") for volume in self.volume_binds],
            [volume.model_dump(mode="json") for volume in self.volume_mounts],
            self.ports,
            run_ctx.user,
            run_ctx.current_os,
            run_ctx.current_ci,
            run_ctx.env,
        ]
        encoded = json.dumps(payload, sort_keys=True)
        return hashlib.md5(encoded.encode("utf-8")).hexdigest()

    # lifecycle

    def run(self, run_ctx: RunContext, *commands: str) -> None:
        """
        Prepares the container and executes ``commands`` in it.

        Detached runs execute on a background thread and keep the container. Otherwise
        the container is destroyed afterwards unless reuse is enabled.
        """
        backgrounded = False
        try:
            container_id = self.prepare_container(run_ctx)
            if run_ctx.run_before_exec is not None:
                run_ctx.debug_log("running before exec hook", container=container_id)
                run_ctx.run_before_exec(container_id)
            if run_ctx.detached:
                run_ctx.debug_log("running in detached mode, commands run in background")
                self._background = threading.Thread(
                    target=self._execute_in_background, args=(run_ctx, container_id, commands), daemon=True)
                self._background.start()
                backgrounded = True
                return
            self._execute(run_ctx, container_id, commands)
        finally:
            if not self.reuse and not backgrounded:
                self._destroy_quietly()

    def _execute_in_background(self, run_ctx: RunContext, container_id: str, commands) -> None:
        try:
            self._execute(run_ctx, container_id, commands)
        except Exception as e:
            logger.error("Detached commands failed", run_id=self.run_id, container=container_id, error=str(e))

    def _execute(self, run_ctx: RunContext, container_id: str, commands) -> None:
        if self.use_default_command and not commands and not run_ctx.detached:
            exit_code = self.wait_for_exit()
            self.copy_volumes_back(run_ctx)
            if exit_code != 0 and run_ctx.error_on_exit_code:
                raise ExitCodeError("<default command>", exit_code, container_id=container_id, run_id=self.run_id)
        for command in commands:
            self.exec_command(run_ctx, command)
        if run_ctx.run_after_exec is not None:
            run_ctx.debug_log("running after exec hook", container=container_id)
            run_ctx.run_after_exec(container_id)

    def background(self) -> Optional[threading.Thread]:
        """Thread executing the commands of a detached run."""
        return self._background

    def prepare_container(self, run_ctx: RunContext) -> str:
        """
        Finds a reusable container or creates a new one and returns its id.
        """
        approach = resolve_volume_approach(
            self.volume_approach,
            self.fallback_approach,
            self.util.is_running_in_docker(),
            self.util.is_docker_host_remote(),
        )
        if approach is not self.volume_approach:
            run_ctx.debug_log("volume approach changed", requested=self.volume_approach.value, used=approach.value)
        self.volume_approach = approach

        self.initial_config_hash = self.calc_config_hash(run_ctx)
        existing = self.util.find_containers_by_label(LABEL_CONFIG_HASH, self.initial_config_hash)
        container_id = existing[0]["Id"] if existing else ""

        if self.cleanup_orphans or not self.reuse:
            run_ctx.debug_log("removing orphans of previous runs")
            self.destroy()
            container_id = ""

        try:
            if not container_id:
                run_ctx.debug_log("creating new container, existing was not found or reuse is disabled")
                container_id = self.create(run_ctx)
            else:
                run_ctx.debug_log("re-using existing container", container=container_id)
                self.os_distribution = self.util.detect_os_distribution_from_container(container_id)
                self.volume_approach = resolve_volume_approach(
                    self.volume_approach, self.fallback_approach, False, False, self.os_distribution)
                self.volume_binds = [resolve_volume_host_path(run_ctx, volume) for volume in self.volume_binds]
                if self.settings.ssh_auth_sock:
                    self._reapply_proxies(run_ctx, container_id)
        except APIError as e:
            raise DaemonError(f"failed to prepare container: {e}", self.run_id) from e

        if not self.reuse:
            self.registry.register(self.cleanup_key, self._destroy_quietly)
        self._container_id = container_id
        return container_id

    def _reapply_proxies(self, run_ctx: RunContext, container_id: str) -> None:
        labels = (self.util.api.inspect_container(container_id).get("Config") or {}).get("Labels") or {}
        try:
            proxy = reapply_ssh_proxy(labels, self.settings.ssh_auth_sock)
        except OSError as e:
            run_ctx.warn("failed to re-apply ssh agent proxy", container=container_id, error=str(e))
            return
        if proxy is not None:
            self.proxies.append(proxy)

    def make_sure_image_pulled(self, run_ctx: RunContext) -> None:
        """Pulls the image when absent: native architecture first, amd64 when native is arm64."""
        if self.util.image_exists(self.reference):
            return
        native = self.settings.host_arch or detect_host_arch()
        try:
            self._pull_for_platform(run_ctx, native)
        except (APIError, KilnError) as e:
            if native != "arm64":
                raise ImagePullError(f"failed to pull image {self.reference}: {e}", self.run_id) from e
            run_ctx.debug_log("pull for arm64 failed, falling back", platform=FALLBACK_ARCH, error=str(e))
            try:
                self._pull_for_platform(run_ctx, FALLBACK_ARCH)
            except (APIError, KilnError) as fallback_error:
                raise ImagePullError(
                    f"failed to pull image {self.reference}: {fallback_error}", self.run_id) from fallback_error

    def _pull_for_platform(self, run_ctx: RunContext, arch: str) -> None:
        reference = ImageReference.parse(self.reference)
        logger.info("Pulling image", image=self.reference, platform=arch)
        chunks = self.util.api.pull(
            reference.repository_name,
            tag=reference.digest or reference.tag,
            stream=True,
            decode=False,
            platform=f"linux/{arch}",
            auth_config=self.docker_config.resolve_auth(self.reference),
        )
        reader = MessageReader(expected_eofs=1)
        reader.feed_in_background(chunks)
        output = PrefixWriter(run_ctx.stdout, run_ctx.prefix) if run_ctx.stdout is not None else None
        reader.listen(output=output)

    def create(self, run_ctx: RunContext) -> str:
        """
        Creates and starts a new container, then prepares its volumes and runs the
        post-create actions and init commands of the tweaks.
        """
        self.make_sure_image_pulled(run_ctx)
        self.os_distribution = self.util.detect_os_distribution_from_image(self.reference)
        run_ctx.debug_log("Detected OS distribution from the image", distribution=self.os_distribution.name)

        # the in-container and remote daemon fallback was applied in prepare_container
        approach = resolve_volume_approach(
            self.volume_approach, self.fallback_approach, False, False, self.os_distribution)
        if approach is not self.volume_approach:
            run_ctx.debug_log("volume approach changed", requested=self.volume_approach.value, used=approach.value)
        self.volume_approach = approach
        strategy = strategy_for(approach)
        strategy.prepare(self.util, self.volume_mounts)

        tweak_builder = self.tweak_builder_factory(self, run_ctx)
        tweaks: TweakBundle = tweak_builder.build()
        self.proxies.extend(tweaks.proxies)

        linux = self.os_distribution.is_linux_based()
        image_id = self.reference
        if linux:
            builder = DerivedImageBuilder(
                self.util, self.workspace, self.run_id, self.reference, self.initial_config_hash,
                strategy=strategy, disable_cache=self.disable_cache,
            )
            image_id = builder.build(
                run_ctx, self.volume_binds, self.volume_mounts, tweaks.build_commands, tweaks.container_labels)
            self.build_image_id = image_id

        binds = [f"{volume.name}:{volume.cont_path}:z" for volume in self.volume_mounts]
        self.volume_binds.extend(tweaks.extra_volumes)
        self.volume_binds = [resolve_volume_host_path(run_ctx, volume) for volume in self.volume_binds]
        mounts = strategy.mounts(self.volume_binds)
        binds.extend(tweaks.extra_binds)

        exposed, port_bindings = parse_port_specs(self.ports)
        env = list(self.env) + list(tweaks.extra_env) + list(run_ctx.env)
        labels: Dict[str, str] = {LABEL_RUN_ID: self.run_id, LABEL_CONFIG_HASH: self.initial_config_hash}
        labels.update(tweaks.container_labels)

        user = run_ctx.user or DEFAULT_USER
        image_info = self.util.inspect_image(image_id)
        image_config = image_info.get("Config") or {}
        container_config = image_info.get("ContainerConfig") or {}
        entrypoint = self.entrypoint if self.entrypoint is not None else list(DEFAULT_ENTRYPOINT)
        command = self.command if self.command else list(DEFAULT_COMMAND)
        if not linux or self.use_default_command:
            if self.entrypoint is None:
                entrypoint = cleanup_container_command(
                    image_config.get("Entrypoint") or container_config.get("Entrypoint"))
            if not self.command:
                command = cleanup_container_command(image_config.get("Cmd") or container_config.get("Cmd"))
                self.use_default_command = True
        if not linux or self.use_default_user:
            run_ctx.debug_log("Using the image's user", distribution=self.os_distribution.name)
            user = image_config.get("User") or container_config.get("User") or ""

        host_config = self.util.api.create_host_config(
            binds=binds or None,
            mounts=mounts or None,
            port_bindings=port_bindings or None,
            privileged=self.privileged,
            network_mode="default",
        )
        create_kwargs = {
            "image": image_id,
            "name": f"{self.run_id}-{short_id(5)}",
            "entrypoint": entrypoint,
            "command": command,
            "environment": env,
            "labels": labels,
            "ports": exposed or None,
            "working_dir": run_ctx.work_dir or None,
            "user": user,
            "host_config": host_config,
            "networking_config": None,
        }
        tweaks.apply_create_tweaks(create_kwargs)

        run_ctx.debug_log("creating container", name=create_kwargs["name"], user=user, command=command)
        container_id = self.util.api.create_container(**create_kwargs)["Id"]
        self._container_id = container_id
        try:
            self._start_and_populate(run_ctx, container_id, strategy, tweak_builder, tweaks)
        except Exception:
            # a half-prepared container already carries the config hash label
            self._remove_container_quietly(container_id)
            self._container_id = ""
            raise
        return container_id

    def _start_and_populate(self, run_ctx: RunContext, container_id: str, strategy: VolumeStrategy,
                            tweak_builder: TweakBuilder, tweaks: TweakBundle) -> None:
        run_ctx.debug_log("starting container", container=container_id)
        self.util.api.start(container_id)

        if (run_ctx.detached or self.use_default_command) and run_ctx.stdout is not None and run_ctx.stderr is not None:
            threading.Thread(
                target=self._stream_logs, args=(container_id, run_ctx), daemon=True).start()

        if strategy.prepares_mount_targets:
            strategy.populate(self.copier, run_ctx, container_id, self.volume_binds)
            self._prepare_mount_targets(run_ctx, container_id)

        for action in tweaks.actions:
            action(container_id)
        tweak_builder.run_init_commands(container_id, tweaks)

    def _remove_container_quietly(self, container_id: str) -> None:
        try:
            self.util.force_remove_container(container_id, self.stop_timeout or 1)
        except APIError as e:
            logger.debug("Failed to remove container", container=container_id, run_id=self.run_id, error=str(e))

    def _stream_logs(self, container_id: str, run_ctx: RunContext) -> None:
        try:
            self.util.stream_container_logs_to(container_id, run_ctx.stdout, run_ctx.stderr)
        except (APIError, OSError) as e:
            logger.debug("Log streaming stopped", container=container_id, error=str(e))

    def _prepare_mount_targets(self, run_ctx: RunContext, container_id: str) -> None:
        root_ctx = run_ctx.clone_as("root", "/")
        for volume in self.volume_mounts:
            command = f"mkdir -p {volume.cont_path}"
            if run_ctx.user not in ("", "root"):
                command += f" && chown -R {run_ctx.verbose_flag('-v')} {run_ctx.user}:{run_ctx.user} {volume.cont_path}"
            self.exec_single(container_id, ExecContext.svc_command(root_ctx, command))

    def destroy(self) -> None:
        """
        Removes the networks and containers labeled with the run id. Errors propagate.
        """
        self.network_manager.cleanup_run_networks(self.run_id)
        containers = self.util.find_containers_by_label(LABEL_RUN_ID, self.run_id)
        with ErrGroup() as group:
            for container in containers:
                logger.debug("Removing container", container=container["Id"], run_id=self.run_id)
                group.go(self.util.force_remove_container, container["Id"], self.stop_timeout or 1)
        for proxy in self.proxies:
            proxy.stop()
        self.proxies = []
        self.registry.unregister(self.cleanup_key)

    def _destroy_quietly(self) -> None:
        try:
            self.destroy()
        except Exception as e:
            logger.debug("Failed to destroy run resources", run_id=self.run_id, error=str(e))

    # commands

    def exec_single(self, container_id: str, cmd: ExecContext) -> ExecResult:
        return self.exec_runner.exec_single(container_id, cmd, run_id=self.run_id)

    def exec_command(self, run_ctx: RunContext, command: str) -> ExecResult:
        """
        Executes a user command, keeps its environment when requested and copies
        read-write volumes back for the copy and add approaches.
        """
        exec_error: Optional[Exception] = None
        result = ExecResult()
        try:
            result = self.exec_single(self._container_id, ExecContext(run_ctx=run_ctx, command=command))
        except KilnError as e:
            exec_error = e
        if self.keep_env and exec_error is None:
            run_ctx.env[:] = EnvParser.merge(result.env, run_ctx.env)
        try:
            self.copy_volumes_back(run_ctx)
        except KilnError as copy_error:
            if exec_error is None:
                raise
            logger.debug("Failed to copy volumes back after a failed command", error=str(copy_error))
        if exec_error is not None:
            raise exec_error
        return result

    def exec_with_output(self, command: str) -> str:
        """Runs a command and returns its output."""
        return self.util.exec_in_container(self._container_id, command)

    def copy_volumes_back(self, run_ctx: RunContext) -> None:
        strategy_for(self.volume_approach).copy_back(self.copier, run_ctx, self._container_id, self.volume_binds)

    def copy_to_container(self, run_ctx: RunContext, host_path: str, cont_path: str) -> None:
        self.copier.copy_to_container(run_ctx, self._container_id, host_path, cont_path)

    def copy_from_container(self, run_ctx: RunContext, cont_path: str, host_path: str) -> None:
        self.copier.copy_from_container(run_ctx, self._container_id, cont_path, host_path)

    def wait_for_exit(self) -> int:
        return self.util.wait_until_container_exits(self._container_id)
