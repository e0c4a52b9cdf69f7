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
Per-run lifecycle state of every service in a project.
"""
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from ..errors import InvalidTransition
from .runtime_handle import NetworkHandle, RuntimeHandle


class ServiceStatus(str, Enum):
    """
    Lifecycle status of a service within a session.
    """
    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


# Pending -> Stopping adopts a container found by lookup when no session was recorded.
_TRANSITIONS = {
    ServiceStatus.PENDING: {ServiceStatus.STARTING, ServiceStatus.FAILED, ServiceStatus.STOPPING},
    ServiceStatus.STARTING: {ServiceStatus.RUNNING, ServiceStatus.FAILED},
    ServiceStatus.RUNNING: {ServiceStatus.STOPPING, ServiceStatus.FAILED},
    ServiceStatus.STOPPING: {ServiceStatus.STOPPED, ServiceStatus.FAILED},
    ServiceStatus.STOPPED: {ServiceStatus.STARTING, ServiceStatus.STOPPING, ServiceStatus.PENDING},
    ServiceStatus.FAILED: {ServiceStatus.STARTING, ServiceStatus.STOPPING, ServiceStatus.PENDING},
}


class ServiceRecord(BaseModel):
    status: ServiceStatus = ServiceStatus.PENDING
    handle: Optional[RuntimeHandle] = None
    error: Optional[str] = None


class SessionState(BaseModel):
    """
    Tracks, per service, the current status and runtime handle, plus the
    stage order and networks of the last successful ``up``.

    Only the orchestrator mutates a session, and only from the thread that
    drives the run. Sessions are plain objects so several runs can coexist.
    """
    project: str
    services: Dict[str, ServiceRecord] = {}
    stages: List[List[str]] = []
    networks: Dict[str, NetworkHandle] = {}
    volumes: List[str] = []

    def record(self, name: str) -> ServiceRecord:
        """
        Returns the record for a service, creating a Pending one if needed.
        """
        if name not in self.services:
            self.services[name] = ServiceRecord()
        return self.services[name]

    def status(self, name: str) -> ServiceStatus:
        return self.record(name).status

    def handle(self, name: str) -> Optional[RuntimeHandle]:
        return self.record(name).handle

    def transition(self, name: str, status: ServiceStatus,
                   handle: Optional[RuntimeHandle] = None,
                   error: Optional[str] = None) -> ServiceRecord:
        """
        Moves a service to a new status.

        :param name: The service name.
        :param status: The target status.
        :param handle: Runtime handle to attach, if the transition produced one.
        :param error: Failure description, kept on the record until the next start.
        :raises InvalidTransition: If the state machine does not allow the move.
        """
        record = self.record(name)
        if status not in _TRANSITIONS[record.status]:
            raise InvalidTransition(f"service '{name}' cannot go from {record.status.value} to {status.value}")
        record.status = status
        if handle is not None:
            record.handle = handle
        if status == ServiceStatus.STARTING:
            record.error = None
        if error is not None:
            record.error = error
        return record

    def release(self, name: str) -> None:
        """
        Drops the runtime handle of a service once its container is gone.
        """
        self.record(name).handle = None

    def handles(self) -> Dict[str, RuntimeHandle]:
        """
        All runtime handles currently referenced by the session.
        """
        return {name: rec.handle for name, rec in self.services.items() if rec.handle is not None}

    def running(self) -> List[str]:
        return [name for name, rec in self.services.items() if rec.status == ServiceStatus.RUNNING]

    def clear(self) -> None:
        """
        Forgets handles, stage order and networks after a full teardown.
        """
        for rec in self.services.values():
            rec.handle = None
        self.stages = []
        self.networks = {}
        self.volumes = []
