"""
Process-wide settings, read from the environment and an optional ``.env`` file.
"""
import os
import platform
import tempfile
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
}


def detect_host_arch() -> str:
    """Docker platform name of the current machine architecture."""
    arch = platform.machine().lower()
    return ARCH_MAP.get(arch, arch)


class Settings(BaseModel):
    """
    Settings consumed by the engine. Every field maps to one environment variable.
    """
    log_level: str = "INFO"
    stop_timeout: int = 1
    host_arch: str = ""
    temp_dir: str = ""
    ci_name: str = ""
    docker_host: str = ""
    ssh_auth_sock: str = ""

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> "Settings":
        """
        Builds settings from environment variables.

        :param env: Mapping to read instead of ``os.environ``; no ``.env`` file is loaded when given.
        :param dotenv_path: Explicit ``.env`` file location.
        :return: A Settings instance.
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ
        return cls(
            log_level=env.get("KILN_LOG_LEVEL", "INFO"),
            stop_timeout=int(env.get("KILN_STOP_TIMEOUT", "1")),
            host_arch=env.get("KILN_HOST_ARCH") or detect_host_arch(),
            temp_dir=env.get("KILN_TEMP_DIR") or tempfile.gettempdir(),
            ci_name=env.get("KILN_CI_NAME", ""),
            docker_host=env.get("DOCKER_HOST", ""),
            ssh_auth_sock=env.get("SSH_AUTH_SOCK", ""),
        )

    def is_remote_daemon(self) -> bool:
        """True when DOCKER_HOST points to anything but a local unix socket."""
        return bool(self.docker_host) and not self.docker_host.startswith("unix:")
