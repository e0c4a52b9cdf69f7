"""
Network planning for services: which runtime networks each service joins,
host port allocation and service discovery variables.
"""
import threading
from typing import Dict, List, Optional

from ..errors import ContainerRuntimeError
from ..MODELS.manifest import Manifest, ServiceSpec
from ..MODELS.runtime_handle import NetworkBinding
from ..UTILS.port_finder import get_free_port, is_port_free


class NetworkManager:
    """
    Decides how the services of a manifest are networked together.
    """
    def __init__(self, manifest: Manifest):
        """
        Initializes the network manager.

        :param manifest: The validated manifest.
        """
        self.manifest = manifest
        self.service_ports: Dict[str, Dict[int, int]] = {}  # service_name -> {container_port: host_port}
        self._lock = threading.Lock()

    def runtime_name(self, network: str) -> str:
        """
        Name of a manifest network in the runtime. Project networks are
        prefixed with the project name; external networks keep their own name.
        """
        if self.manifest.is_external_network(network):
            return network
        return f"{self.manifest.name}_{network}"

    def runtime_networks(self) -> List[str]:
        """
        Runtime names of every network the stack uses.
        """
        return [self.runtime_name(net) for net in self.manifest.network_names()]

    def bindings(self, service: ServiceSpec) -> List[NetworkBinding]:
        """
        Network attachments for a service. The service name is its DNS alias on every network.
        """
        return [
            NetworkBinding(network=self.runtime_name(net), aliases=[service.name])
            for net in service.network_names()
        ]

    def peers(self, name: str) -> List[str]:
        """
        Services sharing at least one network with the given service, in declaration order.
        """
        own = set(self.manifest.services[name].network_names())
        return [
            other for other, svc in self.manifest.services.items()
            if other != name and own & set(svc.network_names())
        ]

    def allocate_ports(self, service: ServiceSpec) -> Dict[int, int]:
        """
        Allocates host ports for a service. Published ports must be free;
        unpublished ones get an ephemeral port.

        :param service: The service definition.
        :return: Mapping from container port to allocated host port.
        :raises ContainerRuntimeError: If a published host port is already taken.
        """
        mappings = {}
        for port in service.ports:
            if port.host is None:
                allocated = get_free_port(port.protocol)
            elif is_port_free(port.host, port.protocol, port.host_ip):
                allocated = port.host
            else:
                raise ContainerRuntimeError(service.name, f"host port {port.host}/{port.protocol} is already in use")
            mappings[port.container] = allocated

        with self._lock:
            self.service_ports[service.name] = mappings
        return mappings

    def release_ports(self, name: str) -> None:
        with self._lock:
            self.service_ports.pop(name, None)

    def get_service_discovery_env(self, name: str) -> Dict[str, str]:
        """
        Generates environment variables for reaching the peers of a service.
        Example: DB_HOST=127.0.0.1, DB_PORT=5432
        """
        env = {}
        with self._lock:
            for peer in self.peers(name):
                prefix = peer.upper().replace('-', '_').replace('.', '_')
                env[f"{prefix}_HOST"] = "127.0.0.1"
                port = self._first_port(peer)
                if port is not None:
                    env[f"{prefix}_PORT"] = str(port)
        return env

    def _first_port(self, name: str) -> Optional[int]:
        allocated = self.service_ports.get(name)
        if allocated:
            return next(iter(allocated.values()))
        for port in self.manifest.services[name].ports:
            if port.host is not None:
                return port.host
        return None

    def get_host_port(self, service_name: str, container_port: int) -> Optional[int]:
        """
        Returns the host port for a given service and container port.
        """
        return self.service_ports.get(service_name, {}).get(container_port)
