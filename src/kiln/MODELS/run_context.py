"""
Per-invocation run and exec contexts.
"""
import copy
import io
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, TextIO

from ..logger import logger

GATEWAY_HOSTNAME = "gateway"
HOST_SYSTEM_HOSTNAME = "host.docker.internal"


@dataclass
class RunContext:
    """
    Settings of one run invocation: user, working directory, I/O streams and hooks.
    Not persisted; cloned whenever a sub-operation needs another user or directory.
    """
    user: str = ""
    work_dir: str = ""
    prefix: str = ""
    stdout: TextIO = field(default_factory=lambda: sys.stdout)
    stderr: TextIO = field(default_factory=lambda: sys.stderr)
    stdin: Optional[TextIO] = None
    env: List[str] = field(default_factory=list)
    silent: bool = False
    debug: bool = False
    tty: bool = False
    detached: bool = False
    error_on_exit_code: bool = True
    current_os: str = ""
    current_ci: str = ""
    run_before_exec: Optional[Callable[[str], None]] = None
    run_after_exec: Optional[Callable[[str], None]] = None

    def clone(self) -> "RunContext":
        other = copy.copy(self)
        other.env = list(self.env)
        return other

    def clone_as(self, user: str, work_dir: str) -> "RunContext":
        other = self.clone()
        other.user = user
        other.work_dir = work_dir
        return other

    def is_debug(self) -> bool:
        return self.debug and not self.silent

    def os_name(self) -> str:
        """Host OS name in Go/Docker notation (linux, darwin, windows)."""
        if self.current_os:
            return self.current_os
        if sys.platform.startswith("linux"):
            return "linux"
        if sys.platform == "darwin":
            return "darwin"
        if sys.platform.startswith("win"):
            return "windows"
        return sys.platform

    def is_linux(self) -> bool:
        return self.os_name() == "linux"

    def is_macos(self) -> bool:
        return self.os_name() == "darwin"

    def hostname_of_host(self) -> str:
        """Hostname a container uses to reach the host system."""
        if self.is_linux():
            return GATEWAY_HOSTNAME
        return HOST_SYSTEM_HOSTNAME

    def home_dir(self) -> str:
        if self.user in ("", "root"):
            return "/root"
        return f"/home/{self.user}"

    def verbose_flag(self, flag: str) -> str:
        return flag if self.debug else ""

    def cmd_suffix(self) -> str:
        """Output redirect appended to service commands unless debugging."""
        if self.is_debug():
            return ""
        return "> /dev/null 2>&1"

    def env_map(self) -> Dict[str, str]:
        result = {}
        for entry in self.env:
            key, _, value = entry.partition("=")
            result[key] = value
        return result

    def debug_log(self, message: str, **kwargs) -> None:
        if self.is_debug():
            logger.debug(message, prefix=self.prefix, **kwargs)

    def warn(self, message: str, **kwargs) -> None:
        """Best-effort failures: a warning in debug mode, debug level otherwise."""
        if self.is_debug():
            logger.warning(message, prefix=self.prefix, **kwargs)
        else:
            logger.debug(message, prefix=self.prefix, **kwargs)


@dataclass
class ExecContext:
    """
    A single command to execute in a container, with its run context.
    """
    run_ctx: RunContext
    command: str
    service_cmd: bool = False
    ignore_errors: bool = False
    detach: bool = False
    do_not_attach_stdin: bool = False
    do_not_attach_stdout: bool = False

    @classmethod
    def svc_command(cls, run_ctx: RunContext, command: str) -> "ExecContext":
        return cls(
            run_ctx=run_ctx,
            command=command,
            service_cmd=True,
            do_not_attach_stdin=True,
            do_not_attach_stdout=True,
        )

    @classmethod
    def svc_command_detached(cls, run_ctx: RunContext, command: str) -> "ExecContext":
        """Fire-and-forget service command; nothing is attached and stderr is discarded."""
        clone = run_ctx.clone()
        clone.stdin = None
        clone.stderr = io.StringIO()
        return cls(
            run_ctx=clone,
            command=command,
            service_cmd=True,
            detach=True,
            do_not_attach_stdin=True,
            do_not_attach_stdout=True,
        )

    def __str__(self) -> str:
        return f"as user '{self.run_ctx.user}', exec (service={self.service_cmd}): '{self.command}'"


@dataclass
class ExecResult:
    exit_code: int = 0
    env: List[str] = field(default_factory=list)
