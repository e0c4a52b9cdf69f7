"""
Capability interface every container runtime driver implements.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..MODELS.manifest import Manifest, ServiceSpec
from ..MODELS.runtime_handle import NetworkBinding, NetworkHandle, RuntimeHandle

PROJECT_LABEL = "io.convoy.project"
SERVICE_LABEL = "io.convoy.service"


def container_name(project: str, service: str) -> str:
    """
    Runtime name of the single instance of a service.
    """
    return f"{project}-{service}-1"


class RuntimeDriver(ABC):
    """
    Boundary adapter to an external container runtime.

    Drivers hold no orchestration logic. Every failure is raised as
    ContainerRuntimeError tagged with the service it concerns, and every
    method may block, so the orchestrator calls them from worker threads.
    """

    @abstractmethod
    def create_network(self, name: str, driver: Optional[str] = None, external: bool = False,
                       labels: Optional[Dict[str, str]] = None) -> NetworkHandle:
        """
        Creates a network, or reuses an existing one with the same name.
        External networks are only looked up.
        """

    @abstractmethod
    def remove_network(self, handle: NetworkHandle) -> None:
        """
        Removes a network. Removing a network that is already gone is not an error.
        """

    @abstractmethod
    def create_volume(self, name: str, driver: Optional[str] = None, external: bool = False,
                      labels: Optional[Dict[str, str]] = None) -> str:
        """
        Creates a named volume unless it already exists. Returns its runtime name.
        """

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        pass

    @abstractmethod
    def create_container(self, manifest: Manifest, service: ServiceSpec,
                         bindings: List[NetworkBinding]) -> RuntimeHandle:
        """
        Creates, but does not start, the container of a service attached to the given networks.
        """

    @abstractmethod
    def start(self, handle: RuntimeHandle) -> None:
        pass

    @abstractmethod
    def stop(self, handle: RuntimeHandle, timeout: float) -> None:
        """
        Asks the container to stop, killing it once ``timeout`` seconds have passed.
        """

    @abstractmethod
    def remove(self, handle: RuntimeHandle, force: bool = False) -> None:
        """
        Removes a container. ``force`` kills it first if it is still running.
        """

    @abstractmethod
    def exists(self, handle: RuntimeHandle) -> bool:
        """
        True while the runtime still knows the container, running or not.
        """

    @abstractmethod
    def is_running(self, handle: RuntimeHandle) -> bool:
        """
        True while the runtime reports the container process alive.
        """

    @abstractmethod
    def find_container(self, project: str, service: str) -> Optional[RuntimeHandle]:
        """
        Looks up the container of a service when no session recorded its handle.
        """

    def volume_name(self, manifest: Manifest, volume: str) -> str:
        """
        Runtime name of a manifest volume. Project volumes are prefixed with the project name.
        """
        spec = manifest.volumes.get(volume)
        if spec is not None and spec.external:
            return volume
        return f"{manifest.name}_{volume}"
