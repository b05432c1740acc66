"""
Volume model: a host path mapped into a container path with a mode.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ..errors import InvalidVolumeError


class VolumeMode(str, Enum):
    """
    Mount modes accepted after the container path of a volume definition.
    """
    RW = "rw"
    RO = "ro"
    DELEGATED = "delegated"
    CACHED = "cached"
    CONSISTENT = "consistent"
    DEFAULT = ""

    def is_rw(self) -> bool:
        return self is not VolumeMode.RO


class VolumeApproach(str, Enum):
    """
    How host content reaches a container. Selected once per session.
    """
    BIND = "bind"
    COPY = "copy"
    ADD = "add"
    EXTERNAL = "external"
    VOLUME = "volume"


def fnv1a_32(value: str) -> int:
    h = 0x811C9DC5
    for byte in value.encode("utf-8"):
        h ^= byte
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


class Volume(BaseModel):
    """
    Immutable mapping of a host path (or named volume) to a container path.
    """
    model_config = ConfigDict(frozen=True)

    name: str = ""
    host_path: str = ""
    cont_path: str
    mode: VolumeMode = VolumeMode.DEFAULT

    @classmethod
    def parse(cls, definition: str) -> "Volume":
        """
        Parses ``host:container[:mode]``.

        Args:
            definition: Volume definition as given on a command line.

        Returns:
            The parsed Volume.
        """
        parts = definition.split(":")
        if len(parts) < 2 or len(parts) > 3 or not parts[0] or not parts[1]:
            raise InvalidVolumeError(f"invalid volume definition: {definition!r}")
        mode = VolumeMode.DEFAULT
        if len(parts) == 3:
            try:
                mode = VolumeMode(parts[2])
            except ValueError:
                raise InvalidVolumeError(f"invalid volume mode {parts[2]!r} in {definition!r}") from None
        return cls(host_path=parts[0], cont_path=parts[1], mode=mode)

    def is_rw(self) -> bool:
        return self.mode.is_rw()

    @property
    def consistency(self) -> Optional[str]:
        """Bind consistency understood by Docker Desktop, if any."""
        if self.mode in (VolumeMode.DELEGATED, VolumeMode.CACHED, VolumeMode.CONSISTENT):
            return self.mode.value
        return None

    def name_or_path_to_name(self, prefix: str) -> str:
        """Volume name if set, otherwise the prefix followed by a hash of the host path."""
        if self.name:
            return self.name
        return f"{prefix}{fnv1a_32(self.host_path)}"

    def bind_spec(self) -> str:
        """``source:target[:mode]`` string for the daemon's Binds list."""
        source = self.name or self.host_path
        if self.mode is VolumeMode.DEFAULT:
            return f"{source}:{self.cont_path}"
        return f"{source}:{self.cont_path}:{self.mode.value}"

    def __str__(self) -> str:
        return self.bind_spec()
