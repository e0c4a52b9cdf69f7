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
Runtime driver that runs each service as a native process on the local host,
with log redirection, service discovery variables and process-tree shutdown.
"""
import logging
import os
import shutil
import subprocess
import threading
from typing import Dict, List, Optional

import psutil

from ..errors import ContainerRuntimeError
from ..MANAGERS.network_manager import NetworkManager
from ..MODELS.manifest import Manifest, ServiceSpec
from ..MODELS.runtime_handle import NetworkBinding, NetworkHandle, RuntimeHandle
from .base import RuntimeDriver, container_name

LOG = logging.getLogger(__name__)


class ProcessDriver(RuntimeDriver):
    """
    Runs the ``command`` of every service as a local process.

    Networks are bookkeeping only: processes share the host network and find
    their peers through <SERVICE>_HOST / <SERVICE>_PORT variables. Named volumes
    are directories under the state directory. PID files make containers
    discoverable from a later invocation.
    """
    def __init__(self, manifest: Manifest, base_dir: str = ".", state_dir: str = ".convoy"):
        """
        Initializes the process driver.

        :param manifest: The manifest whose services this driver runs.
        :param base_dir: Working directory of the services.
        :param state_dir: Directory, relative to base_dir, for logs, PID files and volumes.
        """
        self.manifest = manifest
        self.base_dir = os.path.abspath(base_dir)
        self.state_root = os.path.join(self.base_dir, state_dir)
        self.log_dir = os.path.join(self.state_root, "logs")
        self.pid_dir = os.path.join(self.state_root, "pids")
        self.volumes_root = os.path.join(self.state_root, "volumes")
        self.network_manager = NetworkManager(manifest)

        self.networks: Dict[str, NetworkHandle] = {}
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def create_network(self, name: str, driver: Optional[str] = None, external: bool = False,
                       labels: Optional[Dict[str, str]] = None) -> NetworkHandle:
        with self._lock:
            if name in self.networks or external:
                return NetworkHandle(id=name, name=name, created=False)
            handle = NetworkHandle(id=name, name=name, created=True)
            self.networks[name] = handle
            return handle

    def remove_network(self, handle: NetworkHandle) -> None:
        with self._lock:
            self.networks.pop(handle.name, None)

    def create_volume(self, name: str, driver: Optional[str] = None, external: bool = False,
                      labels: Optional[Dict[str, str]] = None) -> str:
        path = os.path.join(self.volumes_root, name)
        if external and not os.path.isdir(path):
            raise ContainerRuntimeError(None, f"external volume {name} not found")
        os.makedirs(path, exist_ok=True)
        return name

    def remove_volume(self, name: str) -> None:
        shutil.rmtree(os.path.join(self.volumes_root, name), ignore_errors=True)

    def create_container(self, manifest: Manifest, service: ServiceSpec,
                         bindings: List[NetworkBinding]) -> RuntimeHandle:
        if not service.command:
            raise ContainerRuntimeError(service.name, "no command specified, nothing to run")
        self.network_manager.allocate_ports(service)
        os.makedirs(self.log_dir, exist_ok=True)
        os.makedirs(self.pid_dir, exist_ok=True)
        name = container_name(manifest.name, service.name)
        return RuntimeHandle(id=name, service=service.name, name=name)

    def start(self, handle: RuntimeHandle) -> None:
        """
        Starts the process of a service in its own session so the whole tree can be signalled.
        """
        service = self.manifest.services[handle.service]
        if self.is_running(handle):
            return

        env = os.environ.copy()
        env.update(self.network_manager.get_service_discovery_env(service.name))
        env.update(service.environment)

        log_path = os.path.join(self.log_dir, f"{service.name}.log")
        LOG.info("[%s] Starting command: %s", service.name, ' '.join(service.command))
        try:
            with open(log_path, 'a') as log_handle:
                process = subprocess.Popen(
                    service.command,
                    env=env,
                    cwd=self.base_dir,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    # Avoid shell=True for security reasons (CWE-78)
                    shell=False,
                )
        except OSError as e:
            raise ContainerRuntimeError(service.name, f"failed to start: {e}") from e

        with self._lock:
            self._processes[handle.id] = process
        try:
            started = psutil.Process(process.pid).create_time()
        except psutil.NoSuchProcess:
            started = 0.0
        # The start time tells our process apart from a later one that reuses the PID
        with open(self._pid_path(handle), 'w') as f:
            f.write(f"{process.pid} {started}")

    def stop(self, handle: RuntimeHandle, timeout: float) -> None:
        """
        Sends SIGTERM to the process tree, followed by SIGKILL for whatever outlives the timeout.
        """
        process = self._process(handle)
        if process is None:
            return

        LOG.info("[%s] Stopping process %s...", handle.service, process.pid)
        try:
            tree = [process] + process.children(recursive=True)
        except psutil.NoSuchProcess:
            return
        for proc in tree:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(tree, timeout=timeout)
        if alive:
            LOG.warning("[%s] Process did not terminate within %ss, killing...", handle.service, timeout)
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            _, alive = psutil.wait_procs(alive, timeout=5)
            if alive:
                raise ContainerRuntimeError(handle.service, f"processes {[p.pid for p in alive]} survived SIGKILL")
        self._reap(handle)

    def remove(self, handle: RuntimeHandle, force: bool = False) -> None:
        if self.is_running(handle):
            if not force:
                raise ContainerRuntimeError(handle.service, f"{handle} is still running")
            self.stop(handle, timeout=0)
        self._reap(handle)
        try:
            os.remove(self._pid_path(handle))
        except FileNotFoundError:
            pass
        self.network_manager.release_ports(handle.service)

    def exists(self, handle: RuntimeHandle) -> bool:
        # A process container is only a name; start always spawns a fresh process
        return True

    def is_running(self, handle: RuntimeHandle) -> bool:
        """
        Checks whether the service process exists and is not a zombie.
        """
        process = self._process(handle)
        if process is None:
            return False
        try:
            return process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def find_container(self, project: str, service: str) -> Optional[RuntimeHandle]:
        name = container_name(project, service)
        handle = RuntimeHandle(id=name, service=service, name=name)
        if os.path.exists(self._pid_path(handle)):
            return handle
        return None

    def _pid_path(self, handle: RuntimeHandle) -> str:
        return os.path.join(self.pid_dir, f"{handle.id}.pid")

    def _process(self, handle: RuntimeHandle) -> Optional[psutil.Process]:
        """
        Resolves the live process of a handle from the PID file.
        Returns None when the PID now belongs to a process we did not start.
        """
        try:
            with open(self._pid_path(handle)) as f:
                pid, started = f.read().split()
            pid, started = int(pid), float(started)
        except (FileNotFoundError, ValueError):
            return None
        try:
            process = psutil.Process(pid)
            if abs(process.create_time() - started) > 0.01:
                LOG.warning("[%s] PID %s was reused by another process, ignoring it", handle.service, pid)
                return None
            return process
        except psutil.NoSuchProcess:
            return None

    def _reap(self, handle: RuntimeHandle) -> None:
        # Collect the exit status of children we spawned so they do not linger as zombies
        with self._lock:
            process = self._processes.pop(handle.id, None)
        if process is not None:
            try:
                process.wait(timeout=1)
            except subprocess.TimeoutExpired:
                LOG.debug("[%s] Process %s not reaped yet", handle.service, process.pid)
