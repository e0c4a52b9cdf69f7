"""
Pytest configuration and fixtures for convoy tests.
"""
import itertools
import threading

import pytest

from convoy.DRIVERS.base import RuntimeDriver, container_name
from convoy.errors import ContainerRuntimeError
from convoy.MODELS.runtime_handle import NetworkHandle, RuntimeHandle
from convoy.PARSERS.manifest_parser import ManifestParser


class FakeDriver(RuntimeDriver):
    """
    In-memory runtime that records every call and fails on demand.
    """
    def __init__(self):
        self.lock = threading.Lock()
        self.calls = []
        self.containers = {}
        self.networks = {}
        self.volumes = set()
        self.existing_networks = set()
        self.fail_create = set()
        self.fail_start = set()
        self.fail_stop = set()
        self.fail_remove = set()
        self.never_ready = set()
        self.hang_stop = set()
        self.unblock = threading.Event()
        self.on_start = None
        self._ids = itertools.count(1)

    def _record(self, op, name):
        with self.lock:
            self.calls.append((op, name))

    def ops(self, op):
        """Names passed to the given operation, in call order."""
        return [name for recorded, name in self.calls if recorded == op]

    def index(self, op, name):
        return self.calls.index((op, name))

    def create_network(self, name, driver=None, external=False, labels=None):
        self._record('create_network', name)
        if name in self.networks or name in self.existing_networks:
            return NetworkHandle(id=name, name=name, created=False)
        if external:
            raise ContainerRuntimeError(None, f"external network {name} not found")
        self.networks[name] = labels
        return NetworkHandle(id=name, name=name, created=True)

    def remove_network(self, handle):
        self._record('remove_network', handle.name)
        self.networks.pop(handle.name, None)

    def create_volume(self, name, driver=None, external=False, labels=None):
        self._record('create_volume', name)
        self.volumes.add(name)
        return name

    def remove_volume(self, name):
        self._record('remove_volume', name)
        self.volumes.discard(name)

    def create_container(self, manifest, service, bindings):
        self._record('create', service.name)
        if service.name in self.fail_create:
            raise ContainerRuntimeError(service.name, "image not found")
        handle = RuntimeHandle(id=f"c{next(self._ids)}", service=service.name,
                               name=container_name(manifest.name, service.name))
        with self.lock:
            self.containers[handle.id] = {
                'service': service.name,
                'running': False,
                'networks': [b.network for b in bindings],
            }
        return handle

    def start(self, handle):
        self._record('start', handle.service)
        if self.on_start:
            self.on_start(handle.service)
        if handle.service in self.fail_start:
            raise ContainerRuntimeError(handle.service, "exited with code 1")
        with self.lock:
            if handle.id not in self.containers:
                raise ContainerRuntimeError(handle.service, f"no such container {handle.id}")
            self.containers[handle.id]['running'] = True

    def stop(self, handle, timeout):
        self._record('stop', handle.service)
        if handle.service in self.hang_stop:
            self.unblock.wait(10)
        if handle.service in self.fail_stop:
            raise ContainerRuntimeError(handle.service, "stop timed out")
        with self.lock:
            if handle.id in self.containers:
                self.containers[handle.id]['running'] = False

    def remove(self, handle, force=False):
        self._record('remove_forced' if force else 'remove', handle.service)
        if handle.service in self.fail_remove:
            raise ContainerRuntimeError(handle.service, "device or resource busy")
        with self.lock:
            container = self.containers.get(handle.id)
            if container and container['running'] and not force:
                raise ContainerRuntimeError(handle.service, "container is running")
            self.containers.pop(handle.id, None)

    def exists(self, handle):
        with self.lock:
            return handle.id in self.containers

    def is_running(self, handle):
        if handle.service in self.never_ready:
            return False
        with self.lock:
            return self.containers.get(handle.id, {}).get('running', False)

    def find_container(self, project, service):
        with self.lock:
            for container_id, container in self.containers.items():
                if container['service'] == service:
                    return RuntimeHandle(id=container_id, service=service,
                                         name=container_name(project, service))
        return None

    def running_services(self):
        with self.lock:
            return sorted(c['service'] for c in self.containers.values() if c['running'])


@pytest.fixture
def fake_driver():
    """In-memory runtime driver."""
    driver = FakeDriver()
    yield driver
    driver.unblock.set()


@pytest.fixture
def build_manifest(tmp_path):
    """
    Builds a validated manifest from a services mapping, with no environment interpolation context.
    """
    def build(services, **top_level):
        data = {'name': 'test', 'services': services}
        data.update(top_level)
        return ManifestParser(context={}).parse_data(data, base_dir=str(tmp_path))
    return build


@pytest.fixture
def web_stack(build_manifest):
    """db and cache with no dependencies, web depending on both."""
    return build_manifest({
        'db': {'image': 'postgres:16'},
        'cache': {'image': 'redis:7'},
        'web': {'image': 'nginx:latest', 'depends_on': ['db', 'cache'], 'ports': ['8080:80']},
    })
