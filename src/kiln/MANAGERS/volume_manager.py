"""
Volume management for run containers: selecting how host content reaches a container
and the handler implementing each approach.
"""
import os
import posixpath
from typing import Callable, Dict, List, Optional, Tuple

from docker.errors import APIError, NotFound
from docker.types import Mount
from tenacity import retry, retry_if_exception, stop_after_attempt

from ..errors import KilnError, MissingVolumeError
from ..logger import logger
from ..MODELS.run_context import ExecContext, ExecResult, RunContext
from ..MODELS.volume import Volume, VolumeApproach
from ..UTILS.archive import extract_archive
from ..UTILS.docker_util import SYMLINK_MODE_BIT, DockerUtil
from ..UTILS.os_distribution import OSDistribution

DOCKER_SOCK_PATH = "/var/run/docker.sock"

ExecFn = Callable[[str, ExecContext], ExecResult]


def resolve_volume_approach(requested: VolumeApproach, fallback: VolumeApproach, running_in_container: bool,
                            daemon_remote: bool, os_distribution: Optional[OSDistribution] = None) -> VolumeApproach:
    """
    Effective approach for a session.

    Binds only work when the daemon sees the host file system, so inside a container
    or against a remote daemon the fallback is used. Images of non-Linux systems cannot
    be prepared with shell commands and always get binds.
    """
    approach = requested
    if approach is VolumeApproach.BIND and (running_in_container or daemon_remote):
        approach = fallback
    if os_distribution is not None and not os_distribution.is_linux_based():
        if approach in (VolumeApproach.ADD, VolumeApproach.COPY):
            approach = VolumeApproach.BIND
    return approach


def resolve_volume_host_path(run_ctx: RunContext, volume: Volume) -> Volume:
    """Makes the host path absolute and resolves symlinks in it."""
    host_path = volume.host_path
    if not os.path.isabs(host_path):
        run_ctx.debug_log("Volume path is relative, joining with current dir", path=host_path)
        host_path = os.path.abspath(host_path)
    host_path = os.path.realpath(host_path)
    if host_path == volume.host_path:
        return volume
    return volume.model_copy(update={"host_path": host_path})


def is_socket_path(host_path: str) -> bool:
    return host_path == DOCKER_SOCK_PATH or host_path.endswith(".sock")


def _is_missing_container_path(error: BaseException) -> bool:
    return isinstance(error, APIError) and "No such container:path" in str(error)


class VolumeCopier:
    """
    Copies volume contents between the host and a container through tar archives.

    :param util: Docker helpers.
    :param exec_fn: Runs a command in the container, used for directory preparation.
    """
    def __init__(self, util: DockerUtil, exec_fn: ExecFn):
        self.util = util
        self.exec_fn = exec_fn

    def copy_to_container(self, run_ctx: RunContext, container_id: str, host_path: str, cont_path: str) -> None:
        """
        Copies a host file or directory to ``cont_path``, creating the target directory
        first and handing it over to the run user.
        """
        run_ctx.debug_log("COPY", source=host_path, container=container_id, target=cont_path)
        if not os.path.lexists(host_path):
            raise KilnError(f"path {host_path} does not exist on the host")
        is_dir = os.path.isdir(host_path)
        host_path = os.path.realpath(host_path)
        src_name = os.path.basename(host_path)
        dst_name = posixpath.basename(cont_path)
        dst_dir = cont_path if is_dir else posixpath.dirname(cont_path)
        root_ctx = run_ctx.clone_as("root", "/")
        owned_by_user = run_ctx.user not in ("", "root")

        def pre_create_target_dir() -> None:
            command = f"mkdir -p {dst_dir}"
            if owned_by_user:
                command += f" && chown {run_ctx.verbose_flag('-v')} {run_ctx.user}:{run_ctx.user} {dst_dir}"
            self.exec_fn(container_id, ExecContext.svc_command(root_ctx, command))

        @retry(stop=stop_after_attempt(2), retry=retry_if_exception(_is_missing_container_path), reraise=True)
        def attempt() -> None:
            pre_create_target_dir()
            self.util.copy_to_container(host_path, container_id, dst_dir)

        status = self.util.get_container_status(container_id)
        run_ctx.debug_log("Container status", exists=status.exists, running=status.running)
        try:
            attempt()
        except APIError as e:
            raise KilnError(
                f"failed to copy {host_path} -> {container_id}:{dst_dir} "
                f"(exists:{status.exists},running:{status.running}): {e}"
            ) from e

        if not is_dir and dst_name != src_name:
            self.exec_fn(container_id, ExecContext.svc_command(
                root_ctx, f"mv {dst_dir}/{src_name} {dst_dir}/{dst_name}"))

        if owned_by_user:
            self.exec_fn(container_id, ExecContext.svc_command(
                root_ctx,
                f"chown -R {run_ctx.verbose_flag('-v')} {run_ctx.user}:{run_ctx.user} {cont_path} || true",
            ))

    def copy_from_container(self, run_ctx: RunContext, container_id: str, cont_path: str, host_path: str) -> None:
        """
        Extracts ``cont_path`` into the host directory ``host_path``, following a symlink
        at ``cont_path`` while keeping its name.
        """
        run_ctx.debug_log("COPY", container=container_id, source=cont_path, target=host_path)
        rebase: Optional[Tuple[str, str]] = None
        try:
            stat = self.util.stat_path(container_id, cont_path)
        except NotFound:
            stat = {}
        if int(stat.get("mode") or 0) & SYMLINK_MODE_BIT:
            link_target = stat.get("linkTarget", "")
            if not posixpath.isabs(link_target):
                link_target = posixpath.join(posixpath.dirname(cont_path), link_target)
            rebase = (posixpath.basename(link_target), posixpath.basename(cont_path))
            cont_path = link_target
        stream, _ = self.util.api.get_archive(container_id, cont_path)
        extract_archive(stream, host_path, rebase=rebase)

    def copy_volumes_to_container(self, run_ctx: RunContext, container_id: str, volumes: List[Volume]) -> None:
        for volume in volumes:
            if is_socket_path(volume.host_path):
                continue
            self.copy_to_container(run_ctx, container_id, volume.host_path, volume.cont_path)

    def copy_volumes_from_container(self, run_ctx: RunContext, container_id: str, volumes: List[Volume]) -> None:
        """
        Copies back the direct children of read-write volumes that changed in the container.
        """
        changes = self.util.api.diff(container_id) or []
        for change in changes:
            run_ctx.debug_log("Container diff path", path=change.get("Path"))
        for volume in volumes:
            if not volume.is_rw():
                continue
            root = posixpath.normpath(volume.cont_path)
            for change in changes:
                changed_path = change.get("Path", "")
                if not changed_path.startswith(root + "/"):
                    continue
                relative = posixpath.relpath(changed_path, root)
                if "/" in relative:
                    continue
                try:
                    self.copy_from_container(run_ctx, container_id, changed_path, volume.host_path)
                except (APIError, OSError) as e:
                    raise KilnError(
                        f"could not copy file {relative} of volume {volume.host_path}:{volume.cont_path} "
                        f"back from container: {e}"
                    ) from e


class VolumeStrategy:
    """
    Handler of one volume approach. The defaults do nothing.
    """
    approach: VolumeApproach
    prepares_mount_targets = True

    def mounts(self, binds: List[Volume]) -> List[Mount]:
        return []

    def bind_parent_dir(self, volume: Volume) -> str:
        """Directory to create in the image for a bind volume, if any."""
        return ""

    def image_additions(self, builder, run_ctx: RunContext, context_dir: str, binds: List[Volume]) -> List[Dict[str, str]]:
        return []

    def prepare(self, util: DockerUtil, mounts: List[Volume]) -> None:
        pass

    def populate(self, copier: VolumeCopier, run_ctx: RunContext, container_id: str, binds: List[Volume]) -> None:
        pass

    def copy_back(self, copier: VolumeCopier, run_ctx: RunContext, container_id: str, binds: List[Volume]) -> None:
        pass


class BindStrategy(VolumeStrategy):
    approach = VolumeApproach.BIND

    def mounts(self, binds: List[Volume]) -> List[Mount]:
        return [
            Mount(
                target=volume.cont_path,
                source=volume.host_path,
                type="bind",
                read_only=not volume.is_rw(),
                consistency=volume.consistency,
            )
            for volume in binds
        ]


class CopyStrategy(VolumeStrategy):
    approach = VolumeApproach.COPY

    def populate(self, copier: VolumeCopier, run_ctx: RunContext, container_id: str, binds: List[Volume]) -> None:
        run_ctx.debug_log("Copying volumes into container", container=container_id)
        copier.copy_volumes_to_container(run_ctx, container_id, binds)

    def copy_back(self, copier: VolumeCopier, run_ctx: RunContext, container_id: str, binds: List[Volume]) -> None:
        run_ctx.debug_log("Copying volumes from container", container=container_id)
        copier.copy_volumes_from_container(run_ctx, container_id, binds)


class AddStrategy(VolumeStrategy):
    approach = VolumeApproach.ADD
    prepares_mount_targets = False

    def image_additions(self, builder, run_ctx: RunContext, context_dir: str, binds: List[Volume]) -> List[Dict[str, str]]:
        return builder.stage_volumes(run_ctx, context_dir, binds)

    def copy_back(self, copier: VolumeCopier, run_ctx: RunContext, container_id: str, binds: List[Volume]) -> None:
        copier.copy_volumes_from_container(run_ctx, container_id, binds)


class ExternalStrategy(VolumeStrategy):
    approach = VolumeApproach.EXTERNAL
    prepares_mount_targets = False

    def bind_parent_dir(self, volume: Volume) -> str:
        if os.path.isfile(volume.host_path):
            return posixpath.dirname(volume.cont_path)
        return ""


class NamedVolumeStrategy(BindStrategy):
    """Named volumes for directories; file volumes stay binds."""
    approach = VolumeApproach.VOLUME

    def prepare(self, util: DockerUtil, mounts: List[Volume]) -> None:
        for volume in mounts:
            if not util.volume_exists(volume.name):
                raise MissingVolumeError(volume.name)
            logger.debug("Using named volume", volume=volume.name, target=volume.cont_path)


STRATEGIES: Dict[VolumeApproach, VolumeStrategy] = {
    strategy.approach: strategy
    for strategy in (BindStrategy(), CopyStrategy(), AddStrategy(), ExternalStrategy(), NamedVolumeStrategy())
}

_unhandled = set(VolumeApproach) - set(STRATEGIES)
if _unhandled:
    raise RuntimeError(f"no volume strategy for: {sorted(a.value for a in _unhandled)}")


def strategy_for(approach: VolumeApproach) -> VolumeStrategy:
    return STRATEGIES[approach]
