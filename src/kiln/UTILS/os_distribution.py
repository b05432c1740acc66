"""
Classification of a container's OS distribution from ``/etc/os-release``.
"""
import re
from typing import Dict

ALPINE = "alpine"
CENTOS = "centos"
UBUNTU = "ubuntu"
DEBIAN = "debian"
RHEL = "rhel"
FEDORA = "fedora"
UNKNOWN = "unknown"

DEBIAN_FAMILY = (DEBIAN, UBUNTU)
RHEL_FAMILY = (RHEL, CENTOS, FEDORA)

PACKAGE_ALTERNATIVES: Dict[str, Dict[str, str]] = {
    "openssh-client": {RHEL: "openssh", CENTOS: "openssh", FEDORA: "openssh"},
}

_OS_RELEASE_ID = re.compile(r'^ID="?(\w+)"?', re.MULTILINE)


class OSDistribution:
    """
    A detected distribution. Anything not identified from os-release is ``unknown``
    and treated as not Linux based.
    """
    def __init__(self, name: str = UNKNOWN):
        self.name = name

    @classmethod
    def from_os_release(cls, content: str) -> "OSDistribution":
        match = _OS_RELEASE_ID.search(content or "")
        if not match:
            return cls(UNKNOWN)
        return cls(match.group(1))

    def is_linux_based(self) -> bool:
        return self.name != UNKNOWN

    def install_package_commands(self, package: str, cmd_suffix: str = "") -> str:
        """
        Shell snippet installing ``package`` with the distribution's package manager.
        Never fails: every step ends with ``|| true``.

        :param package: Package name, translated for distributions naming it differently.
        :param cmd_suffix: Redirect appended to every step.
        """
        package = PACKAGE_ALTERNATIVES.get(package, {}).get(self.name, package)
        if self.name == ALPINE:
            return f"apk add --update {package} {cmd_suffix} || true"
        if self.name in RHEL_FAMILY:
            return (
                f"yum makecache {cmd_suffix} || true; yum -y install {package} {cmd_suffix} || true; "
                f"dnf install -y {package} {cmd_suffix} || true; "
                f"microdnf install -y {package} {cmd_suffix} || true"
            )
        # Debian family and anything unrecognised
        return (
            f"apt-get update {cmd_suffix} || true; "
            f"apt-get install --no-install-recommends -y {package} {cmd_suffix} || true"
        )

    def __eq__(self, other) -> bool:
        return isinstance(other, OSDistribution) and other.name == self.name

    def __hash__(self) -> int:
        return hash(self.name)

    def __repr__(self) -> str:
        return f"OSDistribution({self.name})"


UNKNOWN_DISTRIBUTION = OSDistribution(UNKNOWN)
