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
TCP listener relaying every connection to a unix socket or another TCP address.

Used to expose the SSH agent socket to containers on macOS and a remote Docker daemon
to containers running Docker-in-Docker.
"""

import socket
import threading
from dataclasses import dataclass
from typing import List, Optional

import psutil

from ..logger import logger
from .port_finder import get_free_port

BUFFER_SIZE = 64 * 1024


@dataclass
class ExternalIP:
    ip: str
    interface: str


def get_external_ips() -> List[ExternalIP]:
    """
    IPv4 addresses of interfaces that are up, excluding loopback and docker bridges.
    """
    stats = psutil.net_if_stats()
    ips = []
    for name, addresses in psutil.net_if_addrs().items():
        stat = stats.get(name)
        if stat is None or not stat.isup:
            continue
        if name.startswith("docker") or name == "lo":
            continue
        for address in addresses:
            if address.family != socket.AF_INET or address.address.startswith("127."):
                continue
            ips.append(ExternalIP(ip=address.address, interface=name))
    if not ips:
        raise OSError("no external network interfaces found")
    return ips



def _pump(source: socket.socket, target: socket.socket) -> None:
    try:
        while True:
            data = source.recv(BUFFER_SIZE)
            if not data:
                break
            target.sendall(data)
    except OSError:
        pass
    finally:
        try:
            target.shutdown(socket.SHUT_WR)
        except OSError:
            pass


class SocketProxy:
    """
    Accepts TCP connections on ``0.0.0.0:<port>`` and relays them to ``address``.

    Args:
        network: ``unix`` or ``tcp``.
        address: Socket path for unix, ``host:port`` for tcp.
    """
    _port_lock = threading.Lock()

    def __init__(self, network: str, address: str):
        self.network = network
        self.address = address
        self.port = 0
        self._server: Optional[socket.socket] = None
        self._stopped = threading.Event()

    @classmethod
    def tcp(cls, address: str) -> "SocketProxy":
        return cls("tcp", address)

    @classmethod
    def unix(cls, path: str) -> "SocketProxy":
        return cls("unix", path)

    def _dial(self) -> socket.socket:
        if self.network == "unix":
            conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            conn.connect(self.address)
            return conn
        host, _, port = self.address.rpartition(":")
        return socket.create_connection((host, int(port)))

    def start(self, bind_port: int = 0) -> int:
        """
        Starts listening in a background thread and returns the bound port.
        """
        with self._port_lock:
            if bind_port == 0:
                bind_port = get_free_port()
            server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server.bind(("0.0.0.0", bind_port))
            server.listen(16)
        self._server = server
        self.port = bind_port
        threading.Thread(target=self._serve, daemon=True).start()
        logger.debug("Socket proxy started", port=bind_port, network=self.network, target=self.address)
        return bind_port

    def _serve(self) -> None:
        while not self._stopped.is_set():
            try:
                client, _ = self._server.accept()
            except OSError:
                return
            try:
                upstream = self._dial()
            except OSError as e:
                logger.warning("Socket proxy failed to reach target", target=self.address, error=str(e))
                client.close()
                continue
            threading.Thread(target=_pump, args=(client, upstream), daemon=True).start()
            threading.Thread(target=_pump, args=(upstream, client), daemon=True).start()

    def stop(self) -> None:
        self._stopped.set()
        if self._server is not None:
            self._server.close()
            self._server = None
