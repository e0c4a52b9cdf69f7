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
Typed, immutable representation of a multi-service manifest.
"""
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_NETWORK = "default"

_FROZEN = ConfigDict(frozen=True, extra="forbid")


def _freeze(model: BaseModel, *fields: str) -> None:
    # Frozen models still hold mutable dicts; swap them for read-only views
    for name in fields:
        object.__setattr__(model, name, MappingProxyType(dict(getattr(model, name))))


class PortMapping(BaseModel):
    """
    A port published by a service. ``host`` is None for ports that are
    exposed to the runtime but not bound on the host.
    """
    model_config = _FROZEN

    container: int = Field(gt=0, lt=65536)
    host: Optional[int] = Field(default=None, gt=0, lt=65536)
    host_ip: Optional[str] = None
    protocol: str = "tcp"

    def __str__(self) -> str:
        if self.host is None:
            return f"{self.container}/{self.protocol}"
        return f"{self.host}:{self.container}/{self.protocol}"


class BuildSpec(BaseModel):
    """
    Build context of a service. Convoy does not build images; services
    with a build context run the image tagged ``<project>-<service>``.
    """
    model_config = _FROZEN

    context: str
    dockerfile: Optional[str] = None


class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume or host path and a service path.
    A mount without a source is an anonymous volume owned by the container.
    """
    model_config = _FROZEN

    source: Optional[str] = None
    target: str
    read_only: bool = False

    @property
    def is_bind(self) -> bool:
        """True when the source is a host path rather than a named volume."""
        return self.source is not None and self.source.startswith(('.', '/', '~'))

    @property
    def is_anonymous(self) -> bool:
        return self.source is None


class NetworkSpec(BaseModel):
    model_config = _FROZEN

    name: str
    driver: Optional[str] = None
    external: bool = False


class VolumeSpec(BaseModel):
    model_config = _FROZEN

    name: str
    driver: Optional[str] = None
    external: bool = False


class ServiceSpec(BaseModel):
    """
    The full definition of a single service.
    """
    model_config = _FROZEN

    name: str
    image: Optional[str] = None
    build: Optional[BuildSpec] = None

    # Execution
    command: Tuple[str, ...] = ()

    # Environment
    environment: Dict[str, str] = {}

    # Networking
    ports: Tuple[PortMapping, ...] = ()
    networks: Tuple[str, ...] = ()

    # Storage
    volumes: Tuple[VolumeMount, ...] = ()

    # Lifecycle
    depends_on: Tuple[str, ...] = ()
    stop_grace_period: Optional[float] = Field(default=None, ge=0)

    # Metadata
    labels: Dict[str, str] = {}

    @model_validator(mode="after")
    def _check_service(self) -> "ServiceSpec":
        if (self.image is None) == (self.build is None):
            raise ValueError(f"service '{self.name}' must define exactly one of 'image' or 'build'")

        seen = set()
        for port in self.ports:
            key = (port.container, port.protocol)
            if key in seen:
                raise ValueError(f"service '{self.name}' maps container port {port.container}/{port.protocol} more than once")
            seen.add(key)

        if len(set(self.depends_on)) != len(self.depends_on):
            raise ValueError(f"service '{self.name}' lists a dependency more than once")
        _freeze(self, 'environment', 'labels')
        return self

    def image_reference(self, project: str) -> str:
        """
        Image the runtime should run for this service.
        """
        if self.image is not None:
            return self.image
        return f"{project}-{self.name}"

    def network_names(self) -> List[str]:
        """
        Networks this service joins; services declaring none join the default network.
        """
        return list(self.networks) if self.networks else [DEFAULT_NETWORK]


class Manifest(BaseModel):
    """
    Complete, validated declaration of a multi-service stack.
    Service order is declaration order and is used for tie-breaking.
    """
    model_config = _FROZEN

    name: str
    services: Dict[str, ServiceSpec]
    networks: Dict[str, NetworkSpec] = {}
    volumes: Dict[str, VolumeSpec] = {}

    @model_validator(mode="after")
    def _check_references(self) -> "Manifest":
        host_ports: Dict[Tuple[Optional[str], int, str], str] = {}

        for name, svc in self.services.items():
            if svc.name != name:
                raise ValueError(f"service key '{name}' does not match service name '{svc.name}'")

            for dep in svc.depends_on:
                if dep not in self.services:
                    raise ValueError(f"service '{name}' depends on undefined service '{dep}'")

            for net in svc.networks:
                if net != DEFAULT_NETWORK and net not in self.networks:
                    raise ValueError(f"service '{name}' refers to undefined network '{net}'")

            for mount in svc.volumes:
                if not mount.is_bind and not mount.is_anonymous and mount.source not in self.volumes:
                    raise ValueError(f"service '{name}' refers to undefined volume '{mount.source}'")

            for port in svc.ports:
                if port.host is None:
                    continue
                # An unspecified host IP binds every interface, so it collides with any IP.
                for (ip, number, proto), owner in host_ports.items():
                    if number == port.host and proto == port.protocol and (
                        ip is None or port.host_ip is None or ip == port.host_ip
                    ):
                        raise ValueError(
                            f"host port {port.host}/{port.protocol} is published by both '{owner}' and '{name}'"
                        )
                host_ports[(port.host_ip, port.host, port.protocol)] = name
        _freeze(self, 'services', 'networks', 'volumes')
        return self

    def network_names(self) -> List[str]:
        """
        Every network the stack uses, declared ones first, then the implicit default.
        """
        names = list(self.networks)
        if DEFAULT_NETWORK not in names and any(
            DEFAULT_NETWORK in svc.network_names() for svc in self.services.values()
        ):
            names.append(DEFAULT_NETWORK)
        return names

    def is_external_network(self, name: str) -> bool:
        spec = self.networks.get(name)
        return bool(spec and spec.external)
