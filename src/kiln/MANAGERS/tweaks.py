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
Host integration tweaks applied to run containers.

Every tweak is best effort: a failing family is logged and skipped, the build goes on.
"""
import getpass
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from ..logger import logger
from ..MODELS.labels import LABEL_SSH_AUTH_PORT
from ..MODELS.run_context import GATEWAY_HOSTNAME, HOST_SYSTEM_HOSTNAME, ExecContext, RunContext
from ..MODELS.volume import Volume, VolumeMode
from ..RUNNERS.exec_runner import is_valid_username
from ..UTILS.socket_proxy import SocketProxy, get_external_ips
from .volume_manager import DOCKER_SOCK_PATH

BITBUCKET_PIPELINES_CI = "bitbucket"
BITBUCKET_PIPELINES_SSH_KEY_PATH = "/opt/atlassian/pipelines/agent/ssh/id_rsa"
HOST_SSH_DIR_NAME = ".kiln_host_ssh"
_WORKTREE_GITDIR = re.compile(r"gitdir: (?P<root>.+)/\.git/worktrees/(?P<name>.+)")

Action = Callable[[str], None]
CreateTweak = Callable[[Dict[str, Any]], None]


@dataclass
class TweakBundle:
    """
    Everything the tweaks contribute to a container: extra volumes and env, commands
    run while building the image, after-create actions and create config edits.
    """
    extra_binds: List[str] = field(default_factory=list)
    extra_volumes: List[Volume] = field(default_factory=list)
    build_commands: List[str] = field(default_factory=list)
    init_commands: List[ExecContext] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)
    create_tweaks: List[CreateTweak] = field(default_factory=list)
    extra_env: List[str] = field(default_factory=list)
    container_labels: Dict[str, str] = field(default_factory=dict)
    proxies: List[SocketProxy] = field(default_factory=list)

    def apply_create_tweaks(self, create_kwargs: Dict[str, Any]) -> None:
        for tweak in self.create_tweaks:
            tweak(create_kwargs)


def read_git_alternates(git_dir: str, seen: Optional[set] = None) -> List[str]:
    """
    Git directories referenced through ``objects/info/alternates``, transitively.
    """
    seen = set() if seen is None else seen
    result = []
    alternates_file = os.path.join(git_dir, "objects", "info", "alternates")
    if not os.path.isfile(alternates_file):
        return result
    with open(alternates_file, "r") as f:
        for line in f:
            objects_dir = line.strip()
            if not objects_dir or objects_dir.startswith("#"):
                continue
            if not os.path.isabs(objects_dir):
                objects_dir = os.path.normpath(os.path.join(git_dir, "objects", objects_dir))
            alternate = os.path.dirname(objects_dir.rstrip("/"))
            if alternate in seen:
                continue
            seen.add(alternate)
            result.append(alternate)
            result.extend(read_git_alternates(alternate, seen))
    return result


def read_git_worktrees(root: str) -> List[str]:
    """
    Paths a checkout at ``root`` depends on through linked worktrees: the main tree
    when ``root`` is a worktree itself, the worktrees of a main tree, and their alternates.
    """
    result = []
    dot_git = os.path.join(root, ".git")
    if os.path.isfile(dot_git):
        with open(dot_git, "r") as f:
            for line in f:
                match = _WORKTREE_GITDIR.match(line.strip())
                if not match:
                    continue
                main_root = match.group("root").strip()
                result.append(main_root)
                result.extend(read_git_alternates(os.path.join(main_root, ".git")))
        return result

    worktrees_dir = os.path.join(dot_git, "worktrees")
    if not os.path.isdir(worktrees_dir):
        return result
    for name in sorted(os.listdir(worktrees_dir)):
        gitdir_file = os.path.join(worktrees_dir, name, "gitdir")
        if not os.path.isfile(gitdir_file):
            raise FileNotFoundError(f"gitdir file does not exist in {name}")
        with open(gitdir_file, "r") as f:
            worktree = f.read().strip()
        result.append(worktree)
        result.extend(read_git_alternates(os.path.join(os.path.dirname(worktree), ".git")))
    return result


def git_extra_mounts(root: str) -> List[Volume]:
    paths = read_git_alternates(os.path.join(root, ".git")) + read_git_worktrees(root)
    return [Volume(host_path=path, cont_path=path, mode=VolumeMode.RW) for path in paths]


def current_host_user() -> Tuple[str, int]:
    uid = os.getuid() if hasattr(os, "getuid") else 0
    return getpass.getuser(), uid


class TweakBuilder:
    """
    Computes the tweak bundle of a session.

    Args:
        session: The container session being created. Its ``volume_binds`` may be
            rewritten (the SSH directory is retargeted and made read-only).
        run_ctx: Run context of the session.
        host_user: ``(name, uid)`` of the host user; the current user when omitted.
        home_dir: Host home directory; the current user's when omitted.
    """
    def __init__(self, session, run_ctx: RunContext, host_user: Optional[Tuple[str, int]] = None,
                 home_dir: Optional[str] = None):
        self.session = session
        self.run_ctx = run_ctx
        self.host_user = host_user
        self.home_dir = home_dir or os.path.expanduser("~")
        self.root_ctx = run_ctx.clone_as("root", "/")

    @contextmanager
    def _guard(self, family: str):
        try:
            yield
        except Exception as e:
            self.run_ctx.warn("tweak failed", tweak=family, error=str(e))

    def _guarded_action(self, family: str, action: Action) -> Action:
        def run(container_id: str) -> None:
            with self._guard(family):
                action(container_id)
        return run

    def _exec(self, container_id: str, cmd: ExecContext, failure: str) -> None:
        try:
            self.session.exec_single(container_id, cmd)
        except Exception as e:
            self.run_ctx.warn(failure, command=cmd.command, error=str(e))

    def run_init_commands(self, container_id: str, bundle: TweakBundle) -> None:
        """Runs the init commands of ``bundle`` in order. Failures are logged, never raised."""
        for cmd in bundle.init_commands:
            self._exec(container_id, cmd, "failed to run init command")

    def build(self) -> TweakBundle:
        bundle = TweakBundle()
        with self._guard("network"):
            self.add_network_tweaks(bundle)
        with self._guard("git"):
            self.add_git_tweaks(bundle)
        if self.session.os_distribution.is_linux_based():
            with self._guard("user"):
                self.add_user_tweaks(bundle)
            with self._guard("ssh"):
                self.add_ssh_tweaks(bundle)
        with self._guard("docker"):
            self.add_docker_in_docker_tweaks(bundle)
        with self._guard("macos"):
            self.add_macos_volume_permissions_fix(bundle)
        return bundle

    # network

    def add_network_tweaks(self, bundle: TweakBundle) -> None:
        def create_network(container_id: str) -> None:
            session = self.session
            network = session.network_manager.create_for_container(
                session.run_id, session.initial_config_hash, container_id)
            session.network_id = network.id
            self._exec(container_id, ExecContext.svc_command(
                self.root_ctx, f"echo '{network.gateway} {GATEWAY_HOSTNAME}' >> /etc/hosts"),
                "failed to add /etc/hosts entry")

        bundle.actions.append(self._guarded_action("network", create_network))

    # git

    def add_git_tweaks(self, bundle: TweakBundle) -> None:
        known = {volume.host_path for volume in self.session.volume_binds}
        for volume in list(self.session.volume_binds):
            if not os.path.isdir(volume.host_path):
                continue
            for extra in git_extra_mounts(volume.host_path):
                if extra.host_path not in known:
                    known.add(extra.host_path)
                    bundle.extra_volumes.append(extra)

    # user provisioning

    def add_user_tweaks(self, bundle: TweakBundle) -> None:
        bundle.build_commands.extend(self.make_sure_user_exists_commands())
        bundle.build_commands.extend(self.precreate_volume_dirs_commands())
        chown_commands = self.home_permissions_commands()
        bundle.build_commands.extend(chown_commands)

        def chown_home(container_id: str) -> None:
            for command in chown_commands:
                self._exec(container_id, ExecContext.svc_command(self.root_ctx, command),
                           "failed to change owner of home directory")

        bundle.actions.append(self._guarded_action("user", chown_home))

    def _provisioned_user(self) -> str:
        user = self.run_ctx.user
        if user in ("", "root") or not is_valid_username(user):
            return ""
        return user

    def make_sure_user_exists_commands(self) -> List[str]:
        user = self._provisioned_user()
        if not user:
            return []
        host_name, host_uid = self.host_user or current_host_user()
        s = self.run_ctx.cmd_suffix()
        result = []
        if host_name != "root":
            result.append(
                f'DELUID=$(cat /etc/passwd | grep ":{host_uid}:" | awk -F: "{{print \\$1}}"); '
                f"deluser $DELUID {s} || true; deluser {host_name} {s} || true"
            )
            result.append(
                f"id -u {user} 2>/dev/null || adduser -D -u {host_uid} {user} {s} || "
                f"adduser -u {host_uid} {user} {s} || "
                f'adduser --disabled-password -u {host_uid} --gecos "" {user} {s} || true'
            )
        else:
            result.append(
                f"id -u {user} 2>/dev/null || adduser -D {user} {s} || "
                f'adduser --disabled-password --gecos "" {user} {s} || true'
            )
        if self.session.mount_docker_socket:
            result.append(
                f"groupadd docker {s} || addgroup docker {s} || true ; "
                f"usermod -a -G docker {user} {s} || adduser {user} docker {s} || true"
            )
        return result

    def home_permissions_commands(self) -> List[str]:
        user = self._provisioned_user()
        if not user:
            return []
        return [
            f"chown -R {self.run_ctx.verbose_flag('-v')} {user}:{user} /home/{user} {self.run_ctx.cmd_suffix()} || true"
        ]

    def precreate_directory_command(self, path: str) -> str:
        command = f"mkdir -p {path}"
        user = self._provisioned_user()
        if user:
            command += f" && chown -R {self.run_ctx.verbose_flag('-v')} {user}:{user} {path} "
        return command

    def precreate_volume_dirs_commands(self) -> List[str]:
        result = []
        for volume in list(self.session.volume_binds) + list(self.session.volume_mounts):
            host_path = volume.host_path
            if not host_path:
                continue
            host_path = os.path.realpath(os.path.abspath(host_path))
            if os.path.isdir(host_path):
                result.append(self.precreate_directory_command(volume.cont_path))
            elif not os.path.exists(host_path):
                self.run_ctx.debug_log("Host volume does not exist", host_path=host_path)
        return result

    # SSH

    def _process_ssh_dir_mount(self, override_cont_path: str) -> Tuple[bool, bool]:
        """
        Returns whether ``~/.ssh`` is among the volumes and whether the container's
        ``~/.ssh`` must be populated from the retargeted copy.
        """
        home_ssh_dir = os.path.join(self.home_dir, ".ssh")
        binds = self.session.volume_binds
        for idx, volume in enumerate(binds):
            if volume.host_path.startswith(home_ssh_dir):
                binds[idx] = volume.model_copy(update={"cont_path": override_cont_path, "mode": VolumeMode.RO})
                return True, True
        for volume in self.session.volume_mounts:
            if "/.ssh" in volume.cont_path:
                return True, False
        return False, False

    def add_ssh_tweaks(self, bundle: TweakBundle) -> None:
        run_ctx = self.run_ctx
        distribution = self.session.os_distribution
        ssh_dir = f"{run_ctx.home_dir()}/{HOST_SSH_DIR_NAME}"
        found, needs_override = self._process_ssh_dir_mount(ssh_dir)
        if not found:
            return

        if run_ctx.current_ci == BITBUCKET_PIPELINES_CI:
            already_bound = any(v.host_path == BITBUCKET_PIPELINES_SSH_KEY_PATH for v in self.session.volume_binds)
            if not already_bound and os.path.exists(BITBUCKET_PIPELINES_SSH_KEY_PATH):
                bundle.extra_volumes.append(Volume(
                    host_path=BITBUCKET_PIPELINES_SSH_KEY_PATH,
                    cont_path=BITBUCKET_PIPELINES_SSH_KEY_PATH,
                    mode=VolumeMode.RO,
                ))

        ssh_auth_sock = self.session.settings.ssh_auth_sock
        if ssh_auth_sock and run_ctx.is_linux():
            run_ctx.debug_log("host system is Linux, can integrate SSH via volume")
            bundle.extra_volumes.append(Volume(host_path=ssh_auth_sock, cont_path=ssh_auth_sock, mode=VolumeMode.RW))
            bundle.extra_env.append(f"SSH_AUTH_SOCK={ssh_auth_sock}")
            bundle.build_commands.append(distribution.install_package_commands("openssh-client", run_ctx.cmd_suffix()))
        elif ssh_auth_sock and run_ctx.is_macos():
            proxy = SocketProxy.unix(ssh_auth_sock)
            try:
                port = proxy.start(0)
            except OSError as e:
                run_ctx.debug_log("failed to start proxy to ssh agent socket", socket=ssh_auth_sock, error=str(e))
            else:
                bundle.proxies.append(proxy)
                bundle.build_commands.append(distribution.install_package_commands("socat", run_ctx.cmd_suffix()))
                bundle.build_commands.append(distribution.install_package_commands("openssh-client", run_ctx.cmd_suffix()))
                bundle.extra_env.append("SSH_AUTH_SOCK=/tmp/auth.sock")
                bundle.container_labels[LABEL_SSH_AUTH_PORT] = str(port)
                bundle.init_commands.append(ExecContext.svc_command_detached(
                    self.root_ctx,
                    "socat UNIX-LISTEN:${SSH_AUTH_SOCK},unlink-early,mode=777,fork "
                    f"TCP:{HOST_SYSTEM_HOSTNAME}:{port}",
                ))

        if needs_override:
            bundle.init_commands.append(ExecContext.svc_command_detached(
                run_ctx, f"rm -fR ~/.ssh && mkdir -p ~/.ssh && cp -fR {ssh_dir}/* ~/.ssh && ssh-add -l || true"))

        if run_ctx.is_macos():
            # UseKeychain is only understood by the macOS ssh client
            bundle.init_commands.append(ExecContext.svc_command_detached(
                run_ctx,
                "set -e; cat ~/.ssh/config | grep -v UseKeychain > /tmp/ssh_config; mv /tmp/ssh_config ~/.ssh/config",
            ))

    # Docker in Docker

    def add_docker_in_docker_tweaks(self, bundle: TweakBundle) -> None:
        run_ctx = self.run_ctx
        util = self.session.util
        if util.is_running_in_docker():
            run_ctx.debug_log("Activating tweaks for running in-Docker environment")

            def use_own_network(create_kwargs: Dict[str, Any]) -> None:
                try:
                    networks = util.find_self_docker_networks()
                except Exception as e:
                    run_ctx.warn("failed to find own networks", error=str(e))
                    return
                if not networks:
                    run_ctx.warn("No own Docker networks found, although it seems we're running in Docker")
                    return
                run_ctx.debug_log("First own network", network=networks[0]["Name"])
                create_kwargs["networking_config"] = util.api.create_networking_config(
                    {networks[0]["Name"]: util.api.create_endpoint_config()})

            bundle.create_tweaks.append(use_own_network)

        if not self.session.mount_docker_socket:
            return

        if util.is_docker_host_remote():
            self._proxy_remote_daemon(bundle)
        else:
            run_ctx.debug_log("adding bind mount for Docker", socket=DOCKER_SOCK_PATH)
            bundle.extra_binds.append(f"{DOCKER_SOCK_PATH}:{DOCKER_SOCK_PATH}")

            def fix_socket_permissions(container_id: str) -> None:
                self._exec(container_id, ExecContext.svc_command(
                    self.root_ctx, f"chmod {run_ctx.verbose_flag('-v')} +rwx {DOCKER_SOCK_PATH}"),
                    "failed to change permissions of docker.sock")
                if run_ctx.user not in ("", "root"):
                    self._exec(container_id, ExecContext.svc_command(
                        self.root_ctx, f"chgrp {run_ctx.user} {DOCKER_SOCK_PATH}"),
                        "failed to change group of docker.sock")

            bundle.actions.append(self._guarded_action("docker", fix_socket_permissions))

        bundle.actions.append(self._guarded_action("docker-credentials", self.copy_docker_credentials))

    def _proxy_remote_daemon(self, bundle: TweakBundle) -> None:
        run_ctx = self.run_ctx
        docker_host = self.session.util.docker_host
        address = urlparse(docker_host).netloc
        if not address:
            run_ctx.warn("Failed to parse Docker host", docker_host=docker_host)
            return
        proxy = SocketProxy.tcp(address)
        port = proxy.start(0)
        bundle.proxies.append(proxy)
        host = run_ctx.hostname_of_host()
        try:
            ips = get_external_ips()
        except OSError as e:
            run_ctx.warn("No external IPs for host found", error=str(e))
        else:
            if len(ips) > 1:
                run_ctx.warn("Could not determine single network interface, selecting the first one", ip=ips[0].ip)
            host = ips[0].ip
        bundle.extra_env.append(f"DOCKER_HOST=tcp://{host}:{port}")

    def copy_docker_credentials(self, container_id: str) -> None:
        """Writes the resolved registry credentials to the container user's ~/.docker/config.json."""
        session = self.session
        if not session.docker_config.exists():
            return
        credentials_dir = session.workspace.mkdtemp(prefix="docker-config")
        config_file = session.docker_config.dump_to_file(credentials_dir)
        docker_dir = f"{self.run_ctx.home_dir()}/.docker"
        session.exec_single(container_id, ExecContext.svc_command(
            self.run_ctx, self.precreate_directory_command(docker_dir)))
        session.copier.copy_to_container(self.run_ctx, container_id, config_file, f"{docker_dir}/config.json")

    # macOS

    def add_macos_volume_permissions_fix(self, bundle: TweakBundle) -> None:
        run_ctx = self.run_ctx
        if not run_ctx.is_macos():
            return
        for volume in list(self.session.volume_binds):
            def fix(container_id: str, cont_path: str = volume.cont_path) -> None:
                self._exec(container_id, ExecContext.svc_command(
                    self.root_ctx,
                    f"chown -R {run_ctx.verbose_flag('-v')} {run_ctx.user}:{run_ctx.user} {cont_path} "
                    f"{run_ctx.cmd_suffix()} || true"),
                    "failed to change owner of volume path")
                self._exec(container_id, ExecContext.svc_command(
                    self.root_ctx, f"chgrp -R {run_ctx.user} {cont_path}"),
                    "failed to change group permissions of volume path")

            bundle.actions.append(self._guarded_action("macos", fix))


def reapply_ssh_proxy(labels: Dict[str, str], ssh_auth_sock: str) -> Optional[SocketProxy]:
    """
    Restarts the SSH agent proxy of a reused container on the port recorded in its label.
    """
    value = (labels or {}).get(LABEL_SSH_AUTH_PORT)
    if not value:
        return None
    proxy = SocketProxy.unix(ssh_auth_sock)
    proxy.start(int(value))
    logger.debug("Re-applied SSH agent proxy", port=value)
    return proxy
