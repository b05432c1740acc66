"""
Executes commands inside running containers through the exec API.
"""
import re
import shutil
import sys
import tarfile
import threading
import uuid
from typing import Optional, TextIO

from docker.errors import APIError

from ..errors import CommandFailedError, DaemonError
from ..logger import logger
from ..MODELS.run_context import ExecContext, ExecResult
from ..PARSERS.env_parser import EnvParser
from ..UTILS.concurrency import ErrGroup
from ..UTILS.docker_util import DockerUtil
from ..UTILS.os_distribution import UNKNOWN_DISTRIBUTION, OSDistribution
from ..UTILS.streams import PrefixWriter, write_text

VALID_USERNAME = re.compile(r"^[a-z_]([a-z0-9_-]{0,31}|[a-z0-9_-]{0,30}\$)$")
RESIZE_POLL_INTERVAL = 0.5


def is_valid_username(user: str) -> bool:
    return bool(user) and VALID_USERNAME.match(user) is not None


class ExecRunner:
    """
    Runs single commands in a container and reports their exit code and the
    environment they left behind.

    :param util: Docker helpers.
    :param privileged: Run execs privileged.
    :param os_distribution: Distribution of the container; the environment is only
        captured from Linux containers.
    """
    def __init__(self, util: DockerUtil, privileged: bool = False,
                 os_distribution: OSDistribution = UNKNOWN_DISTRIBUTION):
        self.util = util
        self.privileged = privileged
        self.os_distribution = os_distribution

    def exec_single(self, container_id: str, cmd: ExecContext, run_id: str = "") -> ExecResult:
        """
        Executes one command.

        Args:
            container_id: Target container.
            cmd: Command with its run context.
            run_id: Reported in the error on a failing command.

        Returns:
            Exit code and captured environment (empty for detached commands).
        """
        run_ctx = cmd.run_ctx
        command_text = cmd.command.strip()
        env_file = f"/tmp/{uuid.uuid4()}.env"
        linux = self.os_distribution.is_linux_based()
        if linux:
            command = ["/bin/sh", "-c", f'trap "env > {env_file}" EXIT; {command_text}']
        else:
            command = [command_text]

        attach_output = not cmd.do_not_attach_stdout
        user = run_ctx.user if is_valid_username(run_ctx.user) else ""
        result = ExecResult()
        try:
            exec_id = self.util.api.exec_create(
                container_id,
                command,
                stdout=attach_output,
                stderr=attach_output,
                stdin=not cmd.do_not_attach_stdin,
                tty=run_ctx.tty,
                privileged=self.privileged,
                user=user,
                environment=list(run_ctx.env) or None,
                workdir=run_ctx.work_dir or None,
            )["Id"]
        except APIError as e:
            if cmd.ignore_errors:
                logger.debug("Ignoring failed exec create", container=container_id, error=str(e))
                return result
            raise DaemonError(f"failed to create exec in container {container_id}: {e}", run_id) from e

        if cmd.detach:
            run_ctx.debug_log("CMD [detached]", user=user, command=command_text)
            self.util.api.exec_start(exec_id, detach=True)
            return result

        run_ctx.debug_log("CMD", user=user, command=command_text)
        try:
            self._attach(exec_id, cmd)
        except (APIError, OSError) as e:
            if not cmd.ignore_errors:
                raise DaemonError(f"failed to run interactive exec in container {container_id}: {e}", run_id) from e

        inspected = self.util.api.exec_inspect(exec_id)
        result.exit_code = int(inspected.get("ExitCode") or 0)

        if linux:
            try:
                content = self.util.read_file_from_container(container_id, env_file)
                result.env = EnvParser.parse_env_output(content)
            except (APIError, tarfile.TarError) as e:
                run_ctx.warn("failed to read environment variables from container", error=str(e))
            self._remove_env_file(container_id, env_file)

        if not cmd.ignore_errors and run_ctx.error_on_exit_code and result.exit_code != 0:
            raise CommandFailedError(command_text, result.exit_code, container_id=container_id, run_id=run_id)
        return result

    def _remove_env_file(self, container_id: str, env_file: str) -> None:
        try:
            exec_id = self.util.api.exec_create(
                container_id, ["/bin/sh", "-c", f"rm -f {env_file}"], stdout=False, stderr=False, user="root")["Id"]
            self.util.api.exec_start(exec_id, detach=True)
        except APIError as e:
            logger.debug("Failed to remove environment file", container=container_id, path=env_file, error=str(e))

    def _attach(self, exec_id: str, cmd: ExecContext) -> None:
        run_ctx = cmd.run_ctx
        stdout: TextIO = run_ctx.stdout or sys.stdout
        stderr: TextIO = run_ctx.stderr or sys.stderr
        stdin: Optional[TextIO] = None
        if not cmd.service_cmd:
            stdin = run_ctx.stdin or sys.stdin
        if not run_ctx.tty:
            stdout = PrefixWriter(stdout, run_ctx.prefix)
            stderr = PrefixWriter(stderr, run_ctx.prefix)
            stdin = None

        if stdin is not None and not cmd.do_not_attach_stdin:
            self._interactive(exec_id, stdin, stdout)
            return

        if run_ctx.tty:
            for chunk in self.util.api.exec_start(exec_id, tty=True, stream=True):
                write_text(stdout, chunk)
            return
        for out, err in self.util.api.exec_start(exec_id, stream=True, demux=True):
            write_text(stdout, out)
            write_text(stderr, err)

    def _interactive(self, exec_id: str, stdin: TextIO, stdout: TextIO) -> None:
        """Relays a TTY session over the exec socket while following terminal resizes."""
        sock = self.util.api.exec_start(exec_id, tty=True, socket=True)
        done = threading.Event()
        with ErrGroup(max_workers=2, fail_fast=True) as group:
            group.go(self._relay, sock, stdin, stdout, done)
            group.go(self._watch_resize, exec_id, done)

    def _relay(self, sock, stdin: TextIO, stdout: TextIO, done: threading.Event) -> None:
        raw = getattr(sock, "_sock", sock)

        def pump_input() -> None:
            try:
                for line in iter(stdin.readline, ""):
                    raw.sendall(line.encode("utf-8"))
            except OSError as e:
                logger.debug("Stopped forwarding stdin", error=str(e))

        threading.Thread(target=pump_input, daemon=True).start()
        try:
            while True:
                data = raw.recv(4096)
                if not data:
                    return
                write_text(stdout, data)
        finally:
            done.set()
            sock.close()

    def _watch_resize(self, exec_id: str, done: threading.Event) -> None:
        last = None
        while not done.is_set():
            size = shutil.get_terminal_size()
            if size != last:
                try:
                    self.util.api.exec_resize(exec_id, height=size.lines, width=size.columns)
                except APIError as e:
                    logger.debug("Failed to resize exec TTY", exec_id=exec_id, error=str(e))
                last = size
            done.wait(RESIZE_POLL_INTERVAL)
