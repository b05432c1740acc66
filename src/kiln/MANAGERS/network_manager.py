"""
Network management for run containers: the per-run bridge network and the cleanup
of every network labeled with a run id.
"""
from dataclasses import dataclass
from typing import List

from ..logger import logger
from ..MODELS.labels import LABEL_CONFIG_HASH, LABEL_RUN_ID
from ..UTILS.docker_util import DockerUtil


@dataclass
class NetworkData:
    id: str = ""
    gateway: str = ""


class NetworkManager:
    """
    Creates and removes the networks owned by a run.
    """
    def __init__(self, util: DockerUtil):
        """
        Initializes the network manager.

        :param util: Docker helpers.
        """
        self.util = util

    def create_for_container(self, run_id: str, config_hash: str, container_id: str) -> NetworkData:
        """
        Creates an attachable bridge network named after the run and connects the container.

        :param run_id: Run identifier, used as network name and label.
        :param config_hash: Session config hash, added as a label.
        :param container_id: Container to connect.
        :return: Network id and the gateway address of its first IPAM config.
        """
        api = self.util.api
        network_id = api.create_network(
            run_id,
            driver="bridge",
            attachable=True,
            labels={LABEL_RUN_ID: run_id, LABEL_CONFIG_HASH: config_hash},
        )["Id"]
        api.connect_container_to_network(container_id, network_id)
        info = api.inspect_network(network_id, verbose=True)
        configs = (info.get("IPAM") or {}).get("Config") or []
        if not configs:
            raise RuntimeError(f"created network doesn't contain IPAM info: {network_id}")
        logger.debug("Created network", network=network_id, container=container_id)
        return NetworkData(id=network_id, gateway=configs[0].get("Gateway", ""))

    def networks_of_run(self, run_id: str) -> List[str]:
        return [network["Id"] for network in self.util.find_networks_by_label(LABEL_RUN_ID, run_id)]

    def cleanup_run_networks(self, run_id: str) -> None:
        """Disconnects all containers from each network of the run and removes it."""
        for network_id in self.networks_of_run(run_id):
            logger.debug("Removing network", network=network_id, run_id=run_id)
            self.util.remove_network(network_id)
