"""
Port helpers: free port discovery and port specification parsing.
"""
import socket
from typing import Dict, List, Tuple

from docker.utils.ports import build_port_bindings


def get_free_port() -> int:
    """
    Finds a free TCP port on all interfaces.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('', 0))
        return s.getsockname()[1]


def is_port_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(('', port))
            return True
        except OSError:
            return False


def normalize_port_spec(spec: str) -> str:
    """
    Converts the long syntax ``target=80,published=8080,protocol=udp`` into the short
    ``8080:80/udp`` form. Short specs are returned unchanged.
    """
    if "=" not in spec:
        return spec
    params = {}
    for pair in spec.split(","):
        key, _, value = pair.partition("=")
        params[key.strip().lower()] = value.strip()
    if "target" not in params:
        raise ValueError(f"invalid port specification {spec!r}: missing target")
    result = params["target"]
    if params.get("published"):
        result = f"{params['published']}:{result}"
    if params.get("protocol"):
        result = f"{result}/{params['protocol']}"
    return result


def parse_port_specs(specs: List[str]) -> Tuple[List[Tuple[int, str]], Dict[str, list]]:
    """
    Parses port specifications for container creation.

    Args:
        specs: Port specs in short (``[ip:]host:container[/proto]``) or long syntax.

    Returns:
        Exposed ports as ``(port, protocol)`` tuples and the host port bindings.
    """
    normalized = [normalize_port_spec(spec) for spec in specs]
    bindings = build_port_bindings(normalized)
    exposed = []
    for key in bindings:
        port, _, proto = str(key).partition("/")
        exposed.append((int(port), proto or "tcp"))
    return exposed, bindings
