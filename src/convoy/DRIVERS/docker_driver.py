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
Runtime driver for the Docker Engine, talking to the daemon socket through the Docker SDK.
"""
import logging
import os
from contextlib import contextmanager
from typing import Dict, List, Optional

import docker
import requests
from docker import DockerClient
from docker.errors import DockerException, NotFound

from ..errors import ContainerRuntimeError
from ..MODELS.manifest import Manifest, ServiceSpec
from ..MODELS.runtime_handle import NetworkBinding, NetworkHandle, RuntimeHandle
from .base import PROJECT_LABEL, SERVICE_LABEL, RuntimeDriver, container_name

LOG = logging.getLogger(__name__)


@contextmanager
def _runtime_call(service: Optional[str]):
    """
    Re-raises Docker SDK and transport errors as ContainerRuntimeError for the given service.
    """
    try:
        yield
    except (DockerException, requests.exceptions.RequestException) as e:
        raise ContainerRuntimeError(service, e) from e


class DockerDriver(RuntimeDriver):
    """
    Drives containers, networks and volumes on a Docker Engine.
    Uses the low-level API client so that network aliases can be set at creation time.
    """

    def __init__(self, client: Optional[DockerClient] = None):
        """
        Initialize the driver.

        Args:
            client: A connected DockerClient. Defaults to one built from the environment
                (DOCKER_HOST and friends) on first use.
        """
        self._client = client

    @property
    def client(self) -> DockerClient:
        if self._client is None:
            with _runtime_call(None):
                self._client = docker.from_env()
        return self._client

    @property
    def api(self):
        return self.client.api

    def create_network(self, name: str, driver: Optional[str] = None, external: bool = False,
                       labels: Optional[Dict[str, str]] = None) -> NetworkHandle:
        with _runtime_call(None):
            existing = [n for n in self.api.networks(names=[name]) if n.get('Name') == name]
            if existing:
                LOG.debug("Reusing network %s", name)
                return NetworkHandle(id=existing[0]['Id'], name=name, created=False)
            if external:
                raise ContainerRuntimeError(None, f"external network {name} not found")

            LOG.info("Creating network %s", name)
            result = self.api.create_network(name, driver=driver or 'bridge', labels=labels or {})
            return NetworkHandle(id=result['Id'], name=name, created=True)

    def remove_network(self, handle: NetworkHandle) -> None:
        with _runtime_call(None):
            try:
                LOG.info("Removing network %s", handle.name)
                self.api.remove_network(handle.id)
            except NotFound:
                LOG.debug("Network %s already removed", handle.name)

    def create_volume(self, name: str, driver: Optional[str] = None, external: bool = False,
                      labels: Optional[Dict[str, str]] = None) -> str:
        with _runtime_call(None):
            try:
                self.api.inspect_volume(name)
                LOG.debug("Reusing volume %s", name)
                return name
            except NotFound:
                if external:
                    raise ContainerRuntimeError(None, f"external volume {name} not found")
            LOG.info("Creating volume %s", name)
            self.api.create_volume(name, driver=driver or 'local', labels=labels or {})
            return name

    def remove_volume(self, name: str) -> None:
        with _runtime_call(None):
            try:
                self.api.remove_volume(name)
            except NotFound:
                LOG.debug("Volume %s already removed", name)

    def create_container(self, manifest: Manifest, service: ServiceSpec,
                         bindings: List[NetworkBinding]) -> RuntimeHandle:
        name = container_name(manifest.name, service.name)
        labels = dict(service.labels)
        labels[PROJECT_LABEL] = manifest.name
        labels[SERVICE_LABEL] = service.name

        port_bindings = {}
        for port in service.ports:
            key = f"{port.container}/{port.protocol}"
            if port.host is None:
                port_bindings[key] = None
            elif port.host_ip:
                port_bindings[key] = (port.host_ip, port.host)
            else:
                port_bindings[key] = port.host

        binds = {}
        for mount in service.volumes:
            if mount.is_anonymous:
                continue
            if mount.is_bind:
                source = os.path.abspath(os.path.expanduser(mount.source))
            else:
                source = self.volume_name(manifest, mount.source)
            binds[source] = {'bind': mount.target, 'mode': 'ro' if mount.read_only else 'rw'}

        with _runtime_call(service.name):
            first, rest = bindings[0], bindings[1:]
            host_config = self.api.create_host_config(port_bindings=port_bindings, binds=binds)
            networking_config = self.api.create_networking_config({
                first.network: self.api.create_endpoint_config(aliases=first.aliases),
            })

            LOG.info("[%s] Creating container %s", service.name, name)
            result = self.api.create_container(
                service.image_reference(manifest.name),
                command=list(service.command) or None,
                name=name,
                environment=dict(service.environment),
                volumes=[m.target for m in service.volumes if m.is_anonymous] or None,
                labels=labels,
                ports=[(p.container, p.protocol) for p in service.ports],
                host_config=host_config,
                networking_config=networking_config,
            )
            handle = RuntimeHandle(id=result['Id'], service=service.name, name=name)

            for binding in rest:
                self.api.connect_container_to_network(handle.id, binding.network, aliases=binding.aliases)
            return handle

    def start(self, handle: RuntimeHandle) -> None:
        with _runtime_call(handle.service):
            LOG.info("[%s] Starting container %s", handle.service, handle)
            self.api.start(handle.id)

    def stop(self, handle: RuntimeHandle, timeout: float) -> None:
        # The daemon sends SIGKILL itself once the grace period is over.
        with _runtime_call(handle.service):
            LOG.info("[%s] Stopping container %s", handle.service, handle)
            self.api.stop(handle.id, timeout=int(timeout))

    def remove(self, handle: RuntimeHandle, force: bool = False) -> None:
        with _runtime_call(handle.service):
            try:
                LOG.info("[%s] Removing container %s%s", handle.service, handle, " (forced)" if force else "")
                self.api.remove_container(handle.id, force=force)
            except NotFound:
                LOG.debug("[%s] Container %s already removed", handle.service, handle)

    def exists(self, handle: RuntimeHandle) -> bool:
        with _runtime_call(handle.service):
            try:
                self.api.inspect_container(handle.id)
            except NotFound:
                return False
            return True

    def is_running(self, handle: RuntimeHandle) -> bool:
        with _runtime_call(handle.service):
            try:
                state = self.api.inspect_container(handle.id)['State']
            except NotFound:
                return False
            return bool(state.get('Running'))

    def find_container(self, project: str, service: str) -> Optional[RuntimeHandle]:
        with _runtime_call(service):
            found = self.api.containers(all=True, filters={
                'label': [f"{PROJECT_LABEL}={project}", f"{SERVICE_LABEL}={service}"],
            })
        if not found:
            return None
        names = found[0].get('Names') or []
        name = names[0].lstrip('/') if names else None
        return RuntimeHandle(id=found[0]['Id'], service=service, name=name)
