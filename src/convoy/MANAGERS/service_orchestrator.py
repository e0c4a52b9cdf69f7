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
Orchestration of multiple services: staged startup, failure rollback and teardown.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from tenacity import Retrying, retry_if_result, stop_after_delay, wait_fixed

from ..DRIVERS.base import PROJECT_LABEL, RuntimeDriver
from ..errors import (
    ContainerRuntimeError, ConvoyError, OrchestrationCancelled, OrchestrationError,
)
from ..MODELS.manifest import Manifest
from ..MODELS.runtime_handle import NetworkHandle, RuntimeHandle
from ..MODELS.session_state import ServiceStatus, SessionState
from ..RUNNERS.dependency_resolver import DependencyResolver
from .network_manager import NetworkManager

LOG = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT = 10.0


@dataclass
class _Outcome:
    """
    Result of one worker task, handed back to the orchestrating thread.
    """
    name: str
    handle: Optional[RuntimeHandle] = None
    error: Optional[Exception] = None
    removed: bool = False
    warnings: List[Exception] = field(default_factory=list)


@dataclass
class TeardownReport:
    """
    Outcome of ``down`` or ``stop``. Failures are collected, not raised.
    """
    stopped: List[str] = field(default_factory=list)
    warnings: List[Exception] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


class ServiceOrchestrator:
    """
    Orchestrates the services of a manifest against a runtime driver.

    Services start stage by stage: members of a stage start concurrently on a
    bounded worker pool and the next stage begins only once every member is
    running. Workers never touch the session; their outcomes are applied by
    the calling thread after each stage barrier.
    """
    def __init__(self, manifest: Manifest, driver: RuntimeDriver,
                 resolver: Optional[DependencyResolver] = None,
                 max_workers: Optional[int] = None,
                 readiness_timeout: float = 30.0,
                 poll_interval: float = 0.5,
                 stop_margin: float = 10.0):
        """
        Initializes the orchestrator.

        :param manifest: The validated manifest.
        :param driver: Runtime driver the services run on.
        :param resolver: Dependency resolver, mostly for tests.
        :param max_workers: Size of the worker pool. Defaults to the number of services, capped at 32.
        :param readiness_timeout: Seconds a started service has to be reported running.
        :param poll_interval: Seconds between readiness polls.
        :param stop_margin: Extra seconds past the stop grace period before a stuck
            stop is abandoned in favour of a forced removal.
        """
        self.manifest = manifest
        self.driver = driver
        self.resolver = resolver or DependencyResolver()
        self.network_manager = NetworkManager(manifest)
        self.max_workers = max_workers or min(32, max(1, len(manifest.services)))
        self.readiness_timeout = readiness_timeout
        self.poll_interval = poll_interval
        self.stop_margin = stop_margin

    def new_session(self) -> SessionState:
        return SessionState(project=self.manifest.name)

    def up(self, session: SessionState, services: Optional[Iterable[str]] = None,
           cancel_event: Optional[threading.Event] = None) -> List[List[str]]:
        """
        Starts services in dependency order. Services the session already has
        running are left alone, so running ``up`` twice is harmless.

        :param session: Session to record progress in.
        :param services: Only start these services and their dependencies.
        :param cancel_event: When set, the run stops after the current stage and tears down.
        :return: The stages that were started.
        :raises ManifestError: If the selection is invalid or dependencies are cyclic.
            Nothing has touched the runtime at that point.
        :raises OrchestrationError: If a service failed to start. Everything this run
            brought up has been torn down before the error is raised.
        """
        stages = self.resolver.resolve(self.manifest, services)
        LOG.info("Starting services in stages: %s", " -> ".join(f"[{', '.join(s)}]" for s in stages))

        pool = self._pool()
        try:
            try:
                self._create_networks(session)
                self._create_volumes(session)
            except ContainerRuntimeError as e:
                # Networks may still serve services started by an earlier run
                warnings = [] if session.handles() else self._release_networks(session)
                raise OrchestrationError(e, warnings) from e

            for index, stage in enumerate(stages):
                if cancel_event is not None and cancel_event.is_set():
                    self._abort(session, stages[:index], pool, None)

                for name in stage:
                    self._forget_lost_container(session, name)
                pending = [name for name in stage if not self._already_running(session, name)]
                for name in pending:
                    session.transition(name, ServiceStatus.STARTING)

                futures = {name: pool.submit(self._launch, name, session.handle(name)) for name in pending}
                outcomes, _, interrupted = self._join(futures)

                failures = []
                for name in pending:
                    outcome = outcomes[name]
                    if outcome.error is None:
                        session.transition(name, ServiceStatus.RUNNING, handle=outcome.handle)
                        LOG.info("Service %s is running.", name)
                    else:
                        session.transition(name, ServiceStatus.FAILED, handle=outcome.handle, error=str(outcome.error))
                        LOG.error("Service %s failed to start: %s", name, outcome.error)
                        failures.append(outcome.error)

                if failures:
                    self._abort(session, stages[:index + 1], pool, failures[0], failures[1:])
                if interrupted or (cancel_event is not None and cancel_event.is_set()):
                    self._abort(session, stages[:index + 1], pool, None)
        finally:
            pool.shutdown(wait=False)

        self._record_stages(session, stages)
        return stages

    def down(self, session: SessionState, timeout: Optional[float] = None,
             remove_volumes: bool = False) -> TeardownReport:
        """
        Stops and removes every service in reverse dependency order, then removes
        the project networks. Failures are recorded and do not stop the teardown.

        :param session: Session recorded by ``up``. Containers it does not know
            about are looked up in the runtime.
        :param timeout: Stop grace period overriding each service's stop_grace_period.
        :param remove_volumes: Also remove the project's named volumes.
        :return: What was stopped and every error met on the way.
        """
        stages = session.stages or self.resolver.resolve(self.manifest)
        report = TeardownReport()

        for stage in stages:
            for name in stage:
                if session.handle(name) is not None:
                    continue
                try:
                    found = self.driver.find_container(self.manifest.name, name)
                except ContainerRuntimeError as e:
                    report.warnings.append(e)
                    continue
                if found is not None:
                    LOG.debug("Found unrecorded container %s for service %s", found, name)
                    session.record(name).handle = found

        pool = self._pool()
        try:
            stopped, warnings = self._teardown(session, stages, pool, timeout)
        finally:
            pool.shutdown(wait=False)
        report.stopped.extend(stopped)
        report.warnings.extend(warnings)

        if not session.handles():
            report.warnings.extend(self._release_networks(session, all_project_networks=True))
            if remove_volumes:
                report.warnings.extend(self._remove_volumes())
            session.clear()

        for warning in report.warnings:
            LOG.warning("Teardown: %s", warning)
        return report

    def stop(self, session: SessionState, timeout: Optional[float] = None) -> TeardownReport:
        """
        Stops running services in reverse dependency order without removing them.
        """
        stages = session.stages or self.resolver.resolve(self.manifest)
        report = TeardownReport()

        pool = self._pool()
        try:
            for stage in self.resolver.teardown_stages(stages):
                targets = [n for n in stage
                           if session.handle(n) is not None and session.status(n) == ServiceStatus.RUNNING]
                for name in targets:
                    session.transition(name, ServiceStatus.STOPPING)
                futures = {name: pool.submit(self._halt, name, session.handle(name), timeout) for name in targets}
                outcomes, unfinished, _ = self._join(futures, self._stage_deadline(targets, timeout))

                for name in targets:
                    outcome = outcomes.get(name)
                    if outcome is None:
                        error = ContainerRuntimeError(name, "did not stop in time")
                    else:
                        error = outcome.error
                    if error is None:
                        session.transition(name, ServiceStatus.STOPPED)
                        report.stopped.append(name)
                    else:
                        session.transition(name, ServiceStatus.FAILED, error=str(error))
                        report.warnings.append(error)
        finally:
            pool.shutdown(wait=False)

        for warning in report.warnings:
            LOG.warning("Stop: %s", warning)
        return report

    def start(self, session: SessionState) -> List[List[str]]:
        """
        Starts services stopped by ``stop``, in dependency order, reusing their containers.

        :raises ConvoyError: If a service has no container to start.
        :raises OrchestrationError: If a service failed to start. Nothing is torn down.
        """
        stages = session.stages or self.resolver.resolve(self.manifest)
        missing = [name for stage in stages for name in stage if session.handle(name) is None]
        if missing:
            raise ConvoyError(f"no containers for services {', '.join(missing)}; run 'up' first")

        pool = self._pool()
        try:
            for stage in stages:
                pending = [name for name in stage if not self._already_running(session, name)]
                for name in pending:
                    session.transition(name, ServiceStatus.STARTING)
                futures = {name: pool.submit(self._launch, name, session.handle(name)) for name in pending}
                outcomes, _, _ = self._join(futures)

                failures = []
                for name in pending:
                    outcome = outcomes[name]
                    if outcome.error is None:
                        session.transition(name, ServiceStatus.RUNNING)
                    else:
                        session.transition(name, ServiceStatus.FAILED, error=str(outcome.error))
                        failures.append(outcome.error)
                if failures:
                    raise OrchestrationError(failures[0], failures[1:]) from failures[0]
        finally:
            pool.shutdown(wait=False)
        return stages

    def ps(self, session: SessionState) -> Dict[str, str]:
        """
        Returns the status of all services.

        :return: Service names and their statuses.
        """
        return {name: session.status(name).value for name in self.manifest.services}

    def _pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="convoy")

    def _launch(self, name: str, handle: Optional[RuntimeHandle]) -> _Outcome:
        """
        Worker task: finds or creates the container, starts it and waits until it runs.
        """
        service = self.manifest.services[name]
        try:
            if handle is None:
                handle = self.driver.find_container(self.manifest.name, name)
                if handle is not None:
                    LOG.info("Reusing container %s for service %s.", handle, name)
            if handle is None:
                handle = self.driver.create_container(self.manifest, service, self.network_manager.bindings(service))
            self.driver.start(handle)
            self._wait_running(name, handle)
            return _Outcome(name, handle)
        except ContainerRuntimeError as e:
            return _Outcome(name, handle, e)
        except Exception as e:
            return _Outcome(name, handle, ContainerRuntimeError(name, e))

    def _wait_running(self, name: str, handle: RuntimeHandle) -> None:
        """
        Polls the driver until the service is reported alive.
        Errors from the driver are not retried.
        """
        retryer = Retrying(
            stop=stop_after_delay(self.readiness_timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda alive: not alive),
            retry_error_callback=lambda state: False,
        )
        if not retryer(self.driver.is_running, handle):
            raise ContainerRuntimeError(name, f"not running {self.readiness_timeout}s after start")

    def _dismantle(self, name: str, handle: RuntimeHandle, timeout: Optional[float]) -> _Outcome:
        """
        Worker task: stops then removes a container. A failed stop escalates to a forced removal.
        """
        outcome = _Outcome(name, handle)
        force = False
        try:
            self.driver.stop(handle, self._stop_timeout(name, timeout))
        except Exception as e:
            outcome.warnings.append(self._tag(name, e))
            force = True
        try:
            self.driver.remove(handle, force=force)
            outcome.removed = True
        except Exception as e:
            outcome.warnings.append(self._tag(name, e))
        return outcome

    def _halt(self, name: str, handle: RuntimeHandle, timeout: Optional[float]) -> _Outcome:
        try:
            self.driver.stop(handle, self._stop_timeout(name, timeout))
            return _Outcome(name, handle)
        except Exception as e:
            return _Outcome(name, handle, self._tag(name, e))

    def _teardown(self, session: SessionState, stages: List[List[str]], pool: ThreadPoolExecutor,
                  timeout: Optional[float] = None) -> Tuple[List[str], List[Exception]]:
        """
        Stops and removes, stage by stage in reverse, every service of ``stages``
        that holds a runtime handle.

        :return: Services removed, and the errors met.
        """
        removed: List[str] = []
        warnings: List[Exception] = []

        for stage in self.resolver.teardown_stages(stages):
            targets = [name for name in stage if session.handle(name) is not None]
            for name in targets:
                LOG.info("Stopping service: %s...", name)
                session.transition(name, ServiceStatus.STOPPING)

            futures = {name: pool.submit(self._dismantle, name, session.handle(name), timeout) for name in targets}
            outcomes, unfinished, _ = self._join(futures, self._stage_deadline(targets, timeout))

            for name in unfinished:
                # The stop call is stuck; kill the container from here and move on.
                error = ContainerRuntimeError(name, "did not stop within its grace period, forcing removal")
                warnings.append(error)
                try:
                    self.driver.remove(session.handle(name), force=True)
                    outcomes[name] = _Outcome(name, session.handle(name), removed=True)
                except Exception as e:
                    outcomes[name] = _Outcome(name, session.handle(name), warnings=[self._tag(name, e)])

            for name in targets:
                outcome = outcomes[name]
                warnings.extend(outcome.warnings)
                if outcome.removed:
                    session.transition(name, ServiceStatus.STOPPED)
                    session.release(name)
                    removed.append(name)
                else:
                    session.transition(name, ServiceStatus.FAILED,
                                       error=str(outcome.warnings[-1]) if outcome.warnings else None)
        return removed, warnings

    def _abort(self, session: SessionState, stages: List[List[str]], pool: ThreadPoolExecutor,
               primary: Optional[Exception], other_failures: Optional[List[Exception]] = None) -> None:
        """
        Tears down what the failed or cancelled run started and raises.
        The primary failure is raised; other start failures of the stage and
        teardown errors are attached as warnings.
        """
        if primary is None:
            LOG.warning("Cancelled, tearing down started services...")
        else:
            LOG.error("Aborting: %s. Tearing down started services...", primary)

        _, teardown_warnings = self._teardown(session, self._abort_stages(session, stages), pool)
        warnings = list(other_failures or []) + teardown_warnings
        if not session.handles():
            warnings.extend(self._release_networks(session))
            session.clear()
        for warning in warnings:
            LOG.warning("Teardown: %s", warning)

        if primary is None:
            raise OrchestrationCancelled(warnings)
        raise OrchestrationError(primary, warnings) from primary

    def _join(self, futures: Dict[str, Future], timeout: Optional[float] = None
              ) -> Tuple[Dict[str, _Outcome], List[str], bool]:
        """
        Barrier: waits for every task of a stage.
        An interrupt is noted but the wait continues, so in-flight runtime calls settle first.

        :return: Outcomes of finished tasks, names of tasks still running at the
            deadline, and whether an interrupt arrived.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        interrupted = False
        not_done = set(futures.values())
        while not_done:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                _, not_done = wait(not_done, timeout=remaining)
            except KeyboardInterrupt:
                interrupted = True
                continue
            if deadline is not None and time.monotonic() >= deadline:
                break

        outcomes = {name: future.result() for name, future in futures.items() if future.done()}
        unfinished = [name for name in futures if name not in outcomes]
        return outcomes, unfinished, interrupted

    def _abort_stages(self, session: SessionState, stages: List[List[str]]) -> List[List[str]]:
        """
        The stages an abort tears down: ``stages`` plus every service still
        holding a container that depends on one of them, so nothing is left
        running without its dependencies.
        """
        targets = {name for stage in stages for name in stage}
        targets |= {name for name in self.resolver.dependents(self.manifest, targets)
                    if session.handle(name) is not None}
        stages = self.resolver.resolve(self.manifest, targets)
        return [[name for name in stage if name in targets] for stage in stages if set(stage) & targets]

    def _forget_lost_container(self, session: SessionState, name: str) -> None:
        """
        Drops a recorded handle whose container the runtime no longer knows,
        so that the service gets a new container.
        """
        handle = session.handle(name)
        if handle is None:
            return
        try:
            if self.driver.exists(handle):
                return
        except ContainerRuntimeError as e:
            LOG.warning("Cannot inspect %s: %s", name, e)
            return
        LOG.warning("Container %s of service %s is gone, creating a new one.", handle, name)
        session.release(name)

    def _already_running(self, session: SessionState, name: str) -> bool:
        """
        True if the session has the service running and the runtime agrees.
        A recorded service the runtime lost is marked failed so it can be started again.
        """
        if session.status(name) != ServiceStatus.RUNNING:
            return False
        handle = session.handle(name)
        try:
            if handle is not None and self.driver.is_running(handle):
                LOG.info("Service %s is already running.", name)
                return True
        except ContainerRuntimeError as e:
            LOG.warning("Cannot inspect %s: %s", name, e)
        session.transition(name, ServiceStatus.FAILED, error="no longer running")
        return False

    def _create_networks(self, session: SessionState) -> None:
        for net in self.manifest.network_names():
            spec = self.manifest.networks.get(net)
            runtime_name = self.network_manager.runtime_name(net)
            handle = self.driver.create_network(
                runtime_name,
                driver=spec.driver if spec else None,
                external=bool(spec and spec.external),
                labels={PROJECT_LABEL: self.manifest.name},
            )
            if runtime_name not in session.networks:
                session.networks[runtime_name] = handle

    def _create_volumes(self, session: SessionState) -> None:
        for volume, spec in self.manifest.volumes.items():
            runtime_name = self.driver.create_volume(
                self.driver.volume_name(self.manifest, volume),
                driver=spec.driver,
                external=spec.external,
                labels={PROJECT_LABEL: self.manifest.name},
            )
            if runtime_name not in session.volumes:
                session.volumes.append(runtime_name)

    def _release_networks(self, session: SessionState, all_project_networks: bool = False) -> List[Exception]:
        """
        Removes networks the session created. With ``all_project_networks`` and no
        recorded networks, removes every non-external network of the manifest.
        """
        handles = [h for h in session.networks.values() if h.created]
        if all_project_networks and not session.networks:
            handles = [
                NetworkHandle(id=self.network_manager.runtime_name(net), name=self.network_manager.runtime_name(net))
                for net in self.manifest.network_names() if not self.manifest.is_external_network(net)
            ]

        warnings = []
        for handle in handles:
            try:
                self.driver.remove_network(handle)
            except ContainerRuntimeError as e:
                warnings.append(e)
        session.networks = {}
        return warnings

    def _remove_volumes(self) -> List[Exception]:
        warnings = []
        for volume, spec in self.manifest.volumes.items():
            if spec.external:
                continue
            try:
                self.driver.remove_volume(self.driver.volume_name(self.manifest, volume))
            except ContainerRuntimeError as e:
                warnings.append(e)
        return warnings

    def _record_stages(self, session: SessionState, stages: List[List[str]]) -> None:
        """
        Merges the started stages into the session's stage order. Starting a
        subset and then the rest must still tear everything down on ``down``.
        """
        if not session.stages:
            session.stages = [list(stage) for stage in stages]
            return
        started = {name for stage in stages for name in stage} | {
            name for stage in session.stages for name in stage
        }
        session.stages = self.resolver.resolve(self.manifest, started)

    def _stop_timeout(self, name: str, timeout: Optional[float]) -> float:
        if timeout is not None:
            return timeout
        grace = self.manifest.services[name].stop_grace_period
        return DEFAULT_STOP_TIMEOUT if grace is None else grace

    def _stage_deadline(self, names: List[str], timeout: Optional[float]) -> Optional[float]:
        if not names:
            return None
        return max(self._stop_timeout(name, timeout) for name in names) + self.stop_margin

    @staticmethod
    def _tag(name: str, error: Exception) -> ContainerRuntimeError:
        if isinstance(error, ContainerRuntimeError):
            return error
        return ContainerRuntimeError(name, error)
