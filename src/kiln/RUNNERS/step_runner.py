"""
Entry points used by build steps: run a step's scripts inside a container session or
on the host.
"""
import os
import posixpath
import stat
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

import yaml
from pydantic import BaseModel, Field

from ..BUILDERS.dockerfile import Dockerfile
from ..config import Settings
from ..errors import KilnError, MissingVolumeError
from ..logger import logger
from ..MANAGERS.container_session import ContainerSession
from ..MODELS.run_context import RunContext
from ..MODELS.volume import Volume, VolumeApproach, VolumeMode
from ..PARSERS.env_parser import EnvParser
from ..REGISTRY.registry_auth import DockerConfig
from ..UTILS.concurrency import ErrGroup
from ..UTILS.docker_util import DockerUtil
from ..UTILS.streams import OutputPump, TeeWriter
from ..UTILS.temp_dir import TempWorkspace
from .host_runner import HostCommandRunner


class SyncMode(str, Enum):
    BIND = "bind"
    ADD = "add"
    COPY = "copy"
    EXTERNAL = "external"
    VOLUME = "volume"


class SyncOpts(BaseModel):
    recreate: bool = False
    watch: bool = False
    extra_options: str = ""


class ExternalSyncer(Protocol):
    """
    File-sync tool owning volume contents in ``external`` mode, driven through sessions.
    """
    def start_sync(self, name: str, source_path: str, target_url: str, sync_mode: str,
                   opts: SyncOpts) -> str: ...

    def wait_for_sync(self, session_id: str) -> None: ...

    def list_sessions(self) -> Dict[str, str]: ...

    def terminate(self, session_id: str) -> None: ...


class CustomImage(BaseModel):
    """Image built from a Dockerfile before the step runs."""
    dockerfile: str
    context: str = ""
    args: Dict[str, str] = {}
    tags: List[str] = []


class RunSpec(BaseModel):
    """
    A step definition as read from YAML.
    """
    project: str = ""
    image: str = ""
    scripts: List[str] = []
    env: Dict[str, str] = {}
    work_dir: str = ""
    container_work_dir: str = ""
    volumes: List[str] = []
    custom_image: Optional[CustomImage] = None

    @classmethod
    def from_yaml(cls, path: str) -> "RunSpec":
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise KilnError(f"step file {path} must contain a mapping")
        spec = cls(**data)
        if spec.custom_image is not None and not os.path.isabs(spec.custom_image.dockerfile):
            base = os.path.dirname(os.path.abspath(path))
            custom = spec.custom_image
            spec.custom_image = custom.model_copy(update={
                "dockerfile": os.path.join(base, custom.dockerfile),
                "context": os.path.join(base, custom.context) if custom.context else "",
            })
        return spec


class RunParams(BaseModel):
    project_name: str = ""
    volumes: List[Volume] = Field(default_factory=list)
    work_dir: str = ""

    @classmethod
    def for_project(cls, project_name: str, project_root: str, spec: RunSpec, os_name: str,
                    main_volume_mode: Optional[VolumeMode] = None) -> "RunParams":
        """
        Volumes and work dir of a step: the spec's volumes plus the project root mounted
        read-write at the container work dir.

        Args:
            project_name: Prefix of derived volume names.
            project_root: Absolute host path of the project.
            spec: The step definition.
            os_name: Host OS name; non-Linux hosts get a delegated main volume.
            main_volume_mode: Explicit mode of the main volume.
        """
        if not os.path.isabs(project_root):
            raise KilnError(f"project root must be an absolute path, got {project_root!r}")
        volumes = []
        for definition in spec.volumes:
            volume = Volume.parse(definition)
            if not os.path.isabs(volume.host_path):
                volume = volume.model_copy(update={"host_path": os.path.join(project_root, volume.host_path)})
            volumes.append(volume)

        container_wd = spec.container_work_dir or project_root
        work_dir = container_wd
        if spec.work_dir:
            work_dir = spec.work_dir if posixpath.isabs(spec.work_dir) else posixpath.join(container_wd, spec.work_dir)

        mode = VolumeMode.RW
        if main_volume_mode is not None and main_volume_mode is not VolumeMode.DEFAULT:
            mode = main_volume_mode
        elif os_name != "linux":
            mode = VolumeMode.DELEGATED
        volumes.append(Volume(host_path=project_root, cont_path=container_wd, mode=mode))
        return cls(project_name=project_name, volumes=volumes, work_dir=work_dir)


def sync_session_name(run_id: str, volume: Volume) -> str:
    return volume.name_or_path_to_name(run_id)


class StepRunner:
    """
    Runs step scripts in containers or on the host.

    :param sync_mode: How project files reach the container.
    :param syncer: Required for the ``external`` sync mode.
    :param session_factory: Creates the container session of a run.
    """
    def __init__(self, settings: Optional[Settings] = None, util: Optional[DockerUtil] = None,
                 workspace: Optional[TempWorkspace] = None, docker_config: Optional[DockerConfig] = None,
                 sync_mode: SyncMode = SyncMode.BIND, user: str = "", reuse: bool = False,
                 no_cache: bool = False, remove_orphans: bool = False, verbose: bool = False,
                 syncer: Optional[ExternalSyncer] = None, sync_opts: Optional[SyncOpts] = None,
                 session_factory: Optional[Callable[..., ContainerSession]] = None):
        self.settings = settings or Settings.from_env()
        self._util = util
        self.workspace = workspace or TempWorkspace.from_env(base_dir=self.settings.temp_dir)
        self.docker_config = docker_config or DockerConfig()
        self.sync_mode = sync_mode
        self.user = user
        self.reuse = reuse
        self.no_cache = no_cache
        self.remove_orphans = remove_orphans
        self.verbose = verbose
        self.syncer = syncer
        self.sync_opts = sync_opts or SyncOpts()
        self.session_factory = session_factory or ContainerSession
        self.last_output = ""

    @property
    def util(self) -> DockerUtil:
        if self._util is None:
            self._util = DockerUtil(docker_host=self.settings.docker_host or None)
        return self._util

    def configure_volumes(self, session: ContainerSession, params: RunParams) -> None:
        """Maps the sync mode onto the session's volume approach and volumes."""
        mode = self.sync_mode
        if mode is SyncMode.BIND:
            session.set_volume_approach(VolumeApproach.BIND, fallback=VolumeApproach.COPY)
            session.add_volume_binds(*params.volumes)
        elif mode is SyncMode.ADD:
            session.set_volume_approach(VolumeApproach.ADD)
            session.add_volume_binds(*params.volumes)
        elif mode is SyncMode.COPY:
            session.set_volume_approach(VolumeApproach.COPY)
            session.add_volume_binds(*params.volumes)
        elif mode is SyncMode.EXTERNAL:
            if self.syncer is None:
                raise KilnError("external sync mode requires a syncer")
            session.set_volume_approach(VolumeApproach.EXTERNAL)
            session.add_volume_binds(*params.volumes)
        elif mode is SyncMode.VOLUME:
            session.set_volume_approach(VolumeApproach.VOLUME)
            mounts = []
            for volume in params.volumes:
                try:
                    is_dir = stat.S_ISDIR(os.stat(volume.host_path).st_mode)
                except OSError as e:
                    raise KilnError(f"failed to stat volume {volume.host_path!r}: {e}") from e
                if not is_dir:
                    session.add_volume_binds(volume)
                    continue
                name = volume.name_or_path_to_name(f"{params.project_name}-")
                if not session.util.volume_exists(name):
                    raise MissingVolumeError(name)
                mounts.append(Volume(name=name, cont_path=volume.cont_path, mode=volume.mode))
            session.add_volume_mounts(*mounts)
        else:
            raise KilnError(f"unknown sync mode specified: {mode}")

    def _build_custom_image(self, run_id: str, params: RunParams, spec: RunSpec) -> str:
        custom = spec.custom_image
        tags = list(custom.tags) or [f"{params.project_name or 'kiln'}-{run_id}:latest".lower()]
        dockerfile = Dockerfile(
            custom.dockerfile, tags=tags, context_path=custom.context, args=custom.args,
            util=self.util, docker_config=self.docker_config,
        )
        dockerfile.reuse_images_with_same_cfg = not self.no_cache
        dockerfile.disable_no_cache = not self.no_cache
        image_id = dockerfile.build_and_wait()
        logger.info("Built custom image", image=tags[0], id=image_id)
        return tags[0]

    def run_in_container(self, run_id: str, params: RunParams, spec: RunSpec, action: str = "run") -> str:
        """
        Runs the spec's scripts in a container session.

        Returns:
            Captured stdout and stderr of the scripts.
        """
        image = spec.image
        if spec.custom_image is not None:
            image = self._build_custom_image(run_id, params, spec)
        if not image:
            raise KilnError(f"no image configured for {action}")
        logger.info("Running scripts in container", count=len(spec.scripts), image=image)

        session = self.session_factory(
            run_id, image, util=self.util, settings=self.settings,
            workspace=self.workspace, docker_config=self.docker_config,
        )
        self.configure_volumes(session, params)
        session.set_reuse(self.reuse) \
            .set_disable_cache(self.no_cache) \
            .set_cleanup_orphans(self.remove_orphans) \
            .set_mount_docker_socket() \
            .set_keep_env()
        if not spec.scripts:
            session.set_use_default_command()

        subject = f"{action} with image {image}"
        capture = OutputPump().start()
        stdout_pump = OutputPump(lambda line: logger.info(line, subject=subject)).start()
        stderr_pump = OutputPump(lambda line: logger.warning(f"ERR: {line}", subject=subject)).start()
        run_ctx = RunContext(
            user=self.user,
            work_dir=params.work_dir,
            stdout=TeeWriter(stdout_pump.writer, capture.writer),
            stderr=TeeWriter(stderr_pump.writer, capture.writer),
            env=EnvParser.to_list(spec.env),
            debug=self.verbose,
            error_on_exit_code=True,
            current_ci=self.settings.ci_name,
        )
        if self.sync_mode is SyncMode.EXTERNAL:
            run_ctx.run_before_exec = lambda container_id: self.sync_volumes_via_external_tool(
                f"docker://{self.user}@{container_id}", run_id, params)
            run_ctx.run_after_exec = lambda container_id: self.terminate_external_sync_sessions(run_id, params)
        try:
            session.run(run_ctx, *spec.scripts)
        finally:
            stdout_pump.close()
            stderr_pump.close()
            self.last_output = capture.close()
        return self.last_output

    def run_on_host(self, params: RunParams, spec: RunSpec, action: str = "run") -> List[str]:
        """
        Runs the spec's scripts on the host one after another; each script sees the
        environment the previous one left.

        Returns:
            The environment after the last script.
        """
        logger.info("Running scripts on host", count=len(spec.scripts))
        runner = HostCommandRunner(temp_dir=self.workspace.path)
        env = EnvParser.to_list(spec.env)
        output = []
        try:
            for script in spec.scripts:
                logger.info("Executing script", script=script)
                result = runner.exec_command_and_log(action, script, work_dir=params.work_dir or None, env=env)
                output.append(result.output)
                env = result.env
        finally:
            self.last_output = "".join(output)
        return env

    # external sync

    def sync_volumes_via_external_tool(self, target_prefix: str, run_id: str, params: RunParams) -> None:
        session_ids = []
        for volume in params.volumes:
            sync_mode = "two-way-safe" if volume.is_rw() else "one-way-safe"
            session_ids.append(self.syncer.start_sync(
                sync_session_name(run_id, volume),
                volume.host_path,
                f"{target_prefix}{volume.cont_path}",
                sync_mode,
                self.sync_opts,
            ))
        logger.debug("Waiting for sync sessions to complete", sessions=session_ids)
        self._wait_for_sessions(session_ids)

    def terminate_external_sync_sessions(self, run_id: str, params: RunParams) -> None:
        names = {sync_session_name(run_id, volume) for volume in params.volumes}
        session_ids = [sid for name, sid in self.syncer.list_sessions().items() if name in names]
        self._wait_for_sessions(session_ids)
        for session_id in session_ids:
            self.syncer.terminate(session_id)

    def _wait_for_sessions(self, session_ids: List[str]) -> None:
        with ErrGroup() as group:
            for session_id in session_ids:
                group.go(self.syncer.wait_for_sync, session_id)
