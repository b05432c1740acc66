"""
Exception hierarchy raised by the container execution engine.
"""
from typing import Optional


class KilnError(Exception):
    """Base class for every error raised by kiln."""


class DaemonError(KilnError):
    """
    A Docker daemon API call failed during create/start/exec/build/push.
    """
    def __init__(self, message: str, run_id: Optional[str] = None):
        if run_id:
            message = f"{message} (run: {run_id})"
        super().__init__(message)
        self.run_id = run_id


class DaemonStreamError(KilnError):
    """An ``error`` field was received on a daemon message stream."""


class ImagePullError(DaemonError):
    pass


class BuildError(DaemonError):
    pass


class PushError(DaemonError):
    pass


class CommandFailedError(KilnError):
    """
    A command executed inside a container finished with a nonzero exit code.
    """
    def __init__(self, command: str, exit_code: int, container_id: str = "", run_id: str = ""):
        message = f"command '{command}' failed: exit code: {exit_code}"
        if container_id or run_id:
            message = f"{message} (container: {container_id}, run: {run_id})"
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.container_id = container_id
        self.run_id = run_id


class ExitCodeError(CommandFailedError):
    """The container's default command exited with a nonzero code."""


class InvalidVolumeError(KilnError, ValueError):
    pass


class MissingVolumeError(KilnError):
    """A named volume expected to exist on the daemon was not found."""
    def __init__(self, name: str):
        super().__init__(f"volume {name} does not exist")
        self.name = name
